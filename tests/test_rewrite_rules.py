import dataclasses
import io
from pathlib import Path

import pytest

import doc2md.core as core


class _FakeImage:
    def __init__(self, data: bytes, content_type: str = "image/png", fail: bool = False):
        self._data = data
        self.content_type = content_type
        self.alt_text = None
        self._fail = fail

    def open(self):
        if self._fail:
            raise OSError("broken image part")
        return io.BytesIO(self._data)


def test_headings_and_paragraphs_flatten_to_atx():
    md = core.flatten_html("<h1>Intro</h1><p>Hello</p><h2>Part</h2><ul><li>one</li></ul>")
    assert "# Intro" in md
    assert "## Part" in md
    assert "- one" in md


def test_note_blocks_become_fenced():
    md = core.flatten_html('<p>Before</p><div class="note">Keep goggles on</div><p>After</p>')
    assert ":::note\nKeep goggles on\n:::" in md
    assert md.index("Before") < md.index(":::note") < md.index("After")


def test_callout_and_admonition_classes_match_by_substring():
    md = core.flatten_html('<div class="callout-box">A</div><div class="admonition warning">B</div>')
    assert ":::note\nA\n:::" in md
    assert ":::note\nB\n:::" in md


def test_plain_div_is_not_fenced():
    md = core.flatten_html('<div class="sidebar">Plain</div>')
    assert ":::" not in md
    assert "Plain" in md


def test_subscript_and_superscript_rules():
    md = core.flatten_html("<p>H<sub>2</sub>O and x<sup>2</sup></p>")
    assert "H_2_O" in md
    assert "x^2^" in md


def test_tables_pass_through_as_pipe_tables():
    html = (
        "<p>Before</p>"
        "<table><tr><td><p>Element</p></td><td><p>Formula</p></td></tr>"
        "<tr><td><p>Water</p></td><td><p>H<sub>2</sub>O</p></td></tr>"
        "<tr><td><p>Only</p></td></tr></table>"
        "<p>After</p>"
    )
    md = core.flatten_html(html)
    assert core.TABLE_PLACEHOLDER_PREFIX not in md
    assert "| Element | Formula |\n| --- | --- |\n| Water | H_2_O |\n| Only |  |" in md
    assert md.index("Before") < md.index("| Element") < md.index("After")


def test_table_cells_escape_pipes():
    md = core.flatten_html("<table><tr><td>a|b</td></tr></table>")
    assert "| a\\|b |" in md


def test_captured_image_src_becomes_placeholder():
    placeholders = {"./images/doc-image-1.png": "![Image 1](./images/doc-image-1.png)"}
    md = core.flatten_html('<p><img alt="A beaker" src="./images/doc-image-1.png" /></p>', placeholders)
    assert md.strip() == "![Image 1](./images/doc-image-1.png)"


def test_image_without_src_is_dropped():
    md = core.flatten_html('<p>Text</p><p><img alt="gone" /></p>')
    assert "gone" not in md
    assert "![" not in md


def test_image_extension_for_known_and_unknown_subtypes():
    assert core.image_extension_for("image/png") == "png"
    assert core.image_extension_for("jpeg") == "jpeg"
    assert core.image_extension_for("image/svg+xml") == "svg"
    assert core.image_extension_for("image/x-emf") == "emf"
    assert core.image_extension_for("image/x-unknown") == core.DEFAULT_IMAGE_EXTENSION
    assert core.image_extension_for(None) == core.DEFAULT_IMAGE_EXTENSION


def test_image_sink_assigns_dense_ordinals_in_call_order(tmp_path):
    sink = core.ImageSink(tmp_path, "doc")

    first = sink.capture_image(b"one", "image/png")
    second = sink.capture_image(b"two", "image/jpeg")
    third = sink.capture_image(b"three", None)

    assert first == "![Image 1](./images/doc-image-1.png)"
    assert second == "![Image 2](./images/doc-image-2.jpeg)"
    assert third == "![Image 3](./images/doc-image-3.png)"
    assert [r.ordinal for r in sink.images] == [1, 2, 3]
    assert sink.images[1].path == tmp_path / "images" / "doc-image-2.jpeg"
    assert not (tmp_path / "images").exists()


def test_image_sink_convert_image_returns_img_attributes(tmp_path):
    sink = core.ImageSink(tmp_path, "doc")

    attrs = sink.convert_image(_FakeImage(b"png-bytes"))

    assert attrs == {"src": "./images/doc-image-1.png", "alt": "Image 1"}
    assert sink.placeholders == {"./images/doc-image-1.png": "![Image 1](./images/doc-image-1.png)"}
    assert sink.images[0].payload == b"png-bytes"


def test_unreadable_image_keeps_its_ordinal_and_warns_on_persist(tmp_path):
    sink = core.ImageSink(tmp_path, "doc")

    sink.convert_image(_FakeImage(b"", fail=True))
    sink.convert_image(_FakeImage(b"good", content_type="image/gif"))
    warnings = sink.persist()

    assert [r.ordinal for r in sink.images] == [1, 2]
    assert len(warnings) == 1
    assert "doc-image-1.png" in warnings[0]
    assert (tmp_path / "images" / "doc-image-2.gif").read_bytes() == b"good"
    assert not (tmp_path / "images" / "doc-image-1.png").exists()


def test_persist_failure_is_reported_as_warning(tmp_path):
    (tmp_path / "images").write_text("not a directory", encoding="utf-8")
    sink = core.ImageSink(tmp_path, "doc")
    sink.capture_image(b"one", "png")
    sink.capture_image(b"two", "png")

    warnings = sink.persist()

    assert len(warnings) == 2
    assert all(w.startswith("Failed to write image") for w in warnings)


def test_formula_shaped_document_names_keep_their_image_links(tmp_path):
    for document_name in ("lab-H2O", "X_1_data"):
        sink = core.ImageSink(tmp_path, document_name)
        attrs = sink.convert_image(_FakeImage(b"png-bytes"))
        html = f'<p>Water is H<sub>2</sub>O</p><p><img alt="{attrs["alt"]}" src="{attrs["src"]}" /></p>'

        md = core.postprocess_markdown(core.flatten_html(html, sink.placeholders))

        placeholder = f"![Image 1](./images/{document_name}-image-1.png)"
        assert md == "Water is H_2O\n\n" + placeholder
        assert md.endswith(sink.images[0].placeholder)


def test_image_records_are_frozen(tmp_path):
    sink = core.ImageSink(tmp_path, "doc")
    sink.capture_image(b"one", "image/png")

    with pytest.raises(dataclasses.FrozenInstanceError):
        sink.images[0].filename = "other.png"
