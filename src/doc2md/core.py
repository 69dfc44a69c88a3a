"""Core pipeline for doc2md."""

from __future__ import annotations

import io
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .frontmatter import add_frontmatter_to_markdown

LOG = logging.getLogger("doc2md")

EXIT_FAILURE = 1
EXIT_INVALID_ARGS = 6

DOCX_SUFFIX = ".docx"
IMAGES_SUBDIR = "images"
DEFAULT_IMAGE_EXTENSION = "png"
SKIPPED_DIR_NAMES = {".git", "node_modules"}

IMAGE_SUBTYPE_EXTENSIONS = {
    "png": "png",
    "jpeg": "jpeg",
    "jpg": "jpg",
    "gif": "gif",
    "bmp": "bmp",
    "tiff": "tiff",
    "webp": "webp",
    "svg+xml": "svg",
    "x-emf": "emf",
    "x-wmf": "wmf",
}

STYLE_MAP = "\n".join(
    [
        "p[style-name='Heading 1'] => h1:fresh",
        "p[style-name='Heading 2'] => h2:fresh",
        "p[style-name='Heading 3'] => h3:fresh",
        "p[style-name='Heading 4'] => h4:fresh",
        "p[style-name='Heading 5'] => h5:fresh",
        "p[style-name='Heading 6'] => h6:fresh",
        "p[style-name='Note'] => div.note:fresh",
        "p[style-name='Equation'] => span.equation:fresh",
    ]
)

NOTE_CLASS_MARKERS = ("note", "callout", "admonition")
TABLE_PLACEHOLDER_PREFIX = "DOC2MD-TABLE-PLACEHOLDER-"

BLANK_RUN_HTML_RE = re.compile(r"\n\s*\n\s*\n")
EQUATION_SPAN_RE = re.compile(r'<span class="equation">([^<]+)</span>')

BLANK_RUN_RE = re.compile(r"\n{3,}")
HEADING_AFTER_TEXT_RE = re.compile(r"(?<=[^\n])\n(?=#{1,6} )")
HEADING_LINE_RE = re.compile(r"(?m)^(#{1,6} [^\n]*)\n(?=[^\n])")
TABLE_LINE_RE = re.compile(r"(?m)^(\|[^\n]*\|)\n(?=[^|\n])")
SUBSCRIPT_ARTIFACT_RE = re.compile(r"([A-Z][a-z]?)_(\d+)_(?!\d)")
CHEMICAL_FORMULA_RE = re.compile(r"(?<![$/])\b([A-Z][a-z]?)(\d+)([A-Z][a-z]?\d*)+\b(?!\$)")
LINK_TARGET_RE = re.compile(r"(\]\([^)\n]*\))")

H1_RE = re.compile(r"(?m)^#\s+(.+)$")
ANY_HEADING_RE = re.compile(r"(?m)^#{1,6}\s+(.+)$")


class InputValidationError(ValueError):
    pass


class ConversionError(RuntimeError):
    pass


@dataclass(frozen=True)
class ConversionRequest:
    payload: bytes
    source_name: str
    output_dir: Path
    extract_images: bool = True
    preserve_styles: bool = True

    @property
    def document_name(self) -> str:
        return Path(self.source_name).stem


@dataclass(frozen=True)
class ImageRecord:
    ordinal: int
    payload: Optional[bytes]
    filename: str
    path: Path
    placeholder: str
    content_type: Optional[str] = None

    @property
    def src(self) -> str:
        return f"./{IMAGES_SUBDIR}/{self.filename}"


@dataclass(frozen=True)
class ConversionResult:
    markdown: str
    images: Tuple[ImageRecord, ...]
    warnings: Tuple[str, ...]
    metadata: Mapping[str, str]


@dataclass
class ConversionOptions:
    output_dir: Optional[Path] = None
    output_file: Optional[Path] = None
    extract_images: bool = True
    preserve_styles: bool = True
    frontmatter: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentOutcome:
    success: bool
    input_file: Path
    output_file: Optional[Path] = None
    images_extracted: int = 0
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class BatchResult:
    results: List[DocumentOutcome]
    summary: Dict[str, Any]


@dataclass
class MarkdownTable:
    index: int
    placeholder: str
    md: str
    rows: List[List[str]]


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_doc2md_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool = False) -> None:
    _configure_doc2md_logger(_resolve_log_level(verbose, debug))


# ---------------------------------------------------------------------------
# Image capture
# ---------------------------------------------------------------------------


def image_extension_for(content_subtype: Optional[str]) -> str:
    if not content_subtype:
        return DEFAULT_IMAGE_EXTENSION
    subtype = content_subtype.strip().lower()
    if "/" in subtype:
        subtype = subtype.split("/", 1)[1]
    return IMAGE_SUBTYPE_EXTENSIONS.get(subtype, DEFAULT_IMAGE_EXTENSION)


class ImageSink:
    """Collects embedded images for a single conversion.

    Ordinals follow call order, which mammoth guarantees to be document
    order. Nothing touches the filesystem until :meth:`persist` runs.
    """

    def __init__(self, output_dir: Path, document_name: str) -> None:
        self.output_dir = Path(output_dir)
        self.document_name = document_name
        self.images: List[ImageRecord] = []
        self.placeholders: Dict[str, str] = {}

    @property
    def images_dir(self) -> Path:
        return self.output_dir / IMAGES_SUBDIR

    def capture_image(self, payload: Optional[bytes], content_subtype: Optional[str]) -> str:
        ordinal = len(self.images) + 1
        filename = f"{self.document_name}-image-{ordinal}.{image_extension_for(content_subtype)}"
        placeholder = f"![Image {ordinal}](./{IMAGES_SUBDIR}/{filename})"
        record = ImageRecord(
            ordinal=ordinal,
            payload=payload,
            filename=filename,
            path=self.images_dir / filename,
            placeholder=placeholder,
            content_type=content_subtype,
        )
        self.images.append(record)
        self.placeholders[record.src] = placeholder
        LOG.debug("Captured image %d as %s", ordinal, filename)
        return placeholder

    def convert_image(self, image: Any) -> Dict[str, str]:
        content_type = getattr(image, "content_type", None)
        payload: Optional[bytes]
        try:
            with image.open() as image_bytes:
                payload = image_bytes.read()
        except (OSError, KeyError) as exc:
            LOG.warning("Unable to read embedded image (%s): %s", content_type, exc)
            payload = None
        self.capture_image(payload, content_type)
        record = self.images[-1]
        return {"src": record.src, "alt": f"Image {record.ordinal}"}

    def persist(self) -> List[str]:
        warnings: List[str] = []
        for record in self.images:
            if record.payload is None:
                message = f"Image {record.ordinal} ({record.filename}) has no readable data; not written"
                LOG.warning(message)
                warnings.append(message)
                continue
            try:
                record.path.parent.mkdir(parents=True, exist_ok=True)
                record.path.write_bytes(record.payload)
            except OSError as exc:
                message = f"Failed to write image {record.filename}: {exc}"
                LOG.warning(message)
                warnings.append(message)
                continue
            LOG.debug("Wrote image %s", record.path)
        return warnings


# ---------------------------------------------------------------------------
# HTML -> Markdown rewrite rules
# ---------------------------------------------------------------------------


def _sanitize_table_cell(text: str) -> str:
    cleaned = text.replace("\n", " ").strip()
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = cleaned.replace("|", "\\|")
    return cleaned


def _build_markdown_converter_class():
    try:
        from markdownify import MarkdownConverter  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"markdownify not available: {exc}") from exc

    class DocumentMarkdownConverter(MarkdownConverter):
        def __init__(self, placeholders: Optional[Mapping[str, str]] = None, **options: Any) -> None:
            options.setdefault("heading_style", "ATX")
            options.setdefault("bullets", "-")
            super().__init__(**options)
            self.placeholders = dict(placeholders or {})

        def convert_div(self, el, text, parent_tags):
            classes = " ".join(el.get("class") or [])
            if any(marker in classes for marker in NOTE_CLASS_MARKERS):
                return "\n:::note\n" + text.strip() + "\n:::\n\n"
            if "_inline" in parent_tags:
                return " " + text.strip() + " "
            text = text.strip()
            return f"\n\n{text}\n\n" if text else ""

        def convert_sub(self, el, text, parent_tags):
            return f"_{text}_" if text else ""

        def convert_sup(self, el, text, parent_tags):
            return f"^{text}^" if text else ""

        def convert_img(self, el, text, parent_tags):
            src = el.get("src") or ""
            if not src:
                return ""
            placeholder = self.placeholders.get(src)
            if placeholder is not None:
                return placeholder
            return super().convert_img(el, text, parent_tags)

    return DocumentMarkdownConverter


def build_markdown_converter(placeholders: Optional[Mapping[str, str]] = None) -> Any:
    converter_cls = _build_markdown_converter_class()
    return converter_cls(placeholders=placeholders)


def html_table_to_markdown(table, converter) -> Tuple[str, List[List[str]]]:
    rows: List[List[str]] = []
    for row in table.find_all("tr"):
        cells = row.find_all(["th", "td"])
        if not cells:
            continue
        rows.append([_sanitize_table_cell(converter.convert(cell.decode_contents())) for cell in cells])

    if not rows:
        return "", []

    max_cols = max(len(r) for r in rows)
    padded = [r + [""] * (max_cols - len(r)) for r in rows]
    header = padded[0]
    body = padded[1:]

    md_lines = [
        "| " + " | ".join(header) + " |",
        "| " + " | ".join(["---"] * max_cols) + " |",
    ]
    for row in body:
        md_lines.append("| " + " | ".join(row) + " |")

    return "\n".join(md_lines), padded


def extract_tables_from_html(soup, converter) -> List[MarkdownTable]:
    outputs: List[MarkdownTable] = []
    # Nested tables are flattened into their outer table's cells.
    tables = [t for t in soup.find_all("table") if t.find_parent("table") is None]
    for idx, table in enumerate(tables, start=1):
        md, rows = html_table_to_markdown(table, converter)
        placeholder = f"{TABLE_PLACEHOLDER_PREFIX}{idx:03d}"
        placeholder_tag = soup.new_tag("p")
        placeholder_tag.string = placeholder
        table.replace_with(placeholder_tag)
        outputs.append(MarkdownTable(index=idx, placeholder=placeholder, md=md, rows=rows))
    return outputs


def replace_table_placeholders(md_text: str, tables: List[MarkdownTable]) -> str:
    if not tables:
        return md_text

    table_by_placeholder = {table.placeholder: table for table in tables}
    output: List[str] = []
    for line in md_text.splitlines():
        table = table_by_placeholder.get(line.strip())
        if table is None:
            output.append(line)
        elif table.md:
            output.append(table.md)
    return "\n".join(output)


def flatten_html(html: str, placeholders: Optional[Mapping[str, str]] = None) -> str:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    converter = build_markdown_converter(placeholders)
    soup = BeautifulSoup(html, "html.parser")
    tables = extract_tables_from_html(soup, converter)
    md_text = converter.convert_soup(soup)
    return replace_table_placeholders(md_text, tables)


# ---------------------------------------------------------------------------
# Pre/post processing
# ---------------------------------------------------------------------------


def collapse_html_whitespace(html: str) -> str:
    return BLANK_RUN_HTML_RE.sub("\n\n", html)


def replace_equation_spans(html: str) -> str:
    return EQUATION_SPAN_RE.sub(r"$\1$", html)


def preprocess_html(html: str) -> str:
    html = collapse_html_whitespace(html)
    return replace_equation_spans(html)


def collapse_blank_lines(md_text: str) -> str:
    return BLANK_RUN_RE.sub("\n\n", md_text)


def space_before_headings(md_text: str) -> str:
    return HEADING_AFTER_TEXT_RE.sub("\n\n", md_text)


def space_after_headings(md_text: str) -> str:
    return HEADING_LINE_RE.sub(r"\1\n\n", md_text)


def space_after_tables(md_text: str) -> str:
    return TABLE_LINE_RE.sub(r"\1\n\n", md_text)


def _outside_link_targets(md_text: str, rewrite: Callable[[str], str]) -> str:
    # Odd-indexed parts are "](target)" spans and stay untouched.
    parts = LINK_TARGET_RE.split(md_text)
    return "".join(part if idx % 2 else rewrite(part) for idx, part in enumerate(parts))


def canonicalize_subscripts(md_text: str) -> str:
    """Turn ``H_2_O`` (the sub rule applied to a formula) into ``H_2O``."""
    return _outside_link_targets(md_text, lambda text: SUBSCRIPT_ARTIFACT_RE.sub(r"\1_\2", text))


def wrap_chemical_formulas(md_text: str) -> str:
    """Wrap formula-shaped tokens such as ``H2O`` in inline math.

    Shape-based only: ``A1B2`` is wrapped too. Tokens already touching a
    ``$`` are left alone so the pass can be repeated safely, and link
    targets are never rewritten.
    """
    return _outside_link_targets(
        md_text, lambda text: CHEMICAL_FORMULA_RE.sub(lambda m: f"${m.group(0)}$", text)
    )


def postprocess_markdown(md_text: str) -> str:
    md_text = collapse_blank_lines(md_text)
    md_text = space_before_headings(md_text)
    md_text = space_after_headings(md_text)
    md_text = space_after_tables(md_text)
    md_text = canonicalize_subscripts(md_text)
    md_text = wrap_chemical_formulas(md_text)
    return md_text.strip()


# ---------------------------------------------------------------------------
# Titles, paths and validation
# ---------------------------------------------------------------------------


def extract_title(md_text: str) -> Optional[str]:
    for pattern in (H1_RE, ANY_HEADING_RE):
        match = pattern.search(md_text or "")
        if match:
            return match.group(1).strip()
    return None


def extract_title_from_filename(filename: str | Path) -> str:
    stem = Path(filename).stem
    spaced = re.sub(r"[-_]", " ", stem)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def generate_output_path(input_path: Path, output_dir: Optional[Path] = None) -> Path:
    input_path = Path(input_path)
    target_dir = Path(output_dir) if output_dir else input_path.parent
    return target_dir / f"{input_path.stem}.md"


def format_file_size(size: int) -> str:
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(max(size, 0))
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    return f"{round(value, 2):g} {units[idx]}"


def validate_input_file(path: Path) -> None:
    path = Path(path)
    if not path.exists() or not path.is_file():
        raise InputValidationError(f"File not found: {path}")
    if path.suffix.lower() != DOCX_SUFFIX:
        raise InputValidationError(f"Invalid file type. Expected .docx file, got: {path.suffix or '(none)'}")
    if not os.access(path, os.R_OK):
        raise InputValidationError(f"File is not readable: {path}")


def _iter_docx_files(directory: Path) -> Iterable[Path]:
    for entry in sorted(directory.iterdir()):
        if entry.is_dir():
            if entry.name in SKIPPED_DIR_NAMES:
                continue
            yield from _iter_docx_files(entry)
        elif entry.suffix.lower() == DOCX_SUFFIX and not entry.name.startswith("~$"):
            yield entry.resolve()


def find_docx_files(input_path: Path) -> List[Path]:
    input_path = Path(input_path)
    if input_path.is_dir():
        return list(_iter_docx_files(input_path))
    validate_input_file(input_path)
    return [input_path.resolve()]


def create_conversion_summary(results: List[DocumentOutcome]) -> Dict[str, Any]:
    total = len(results)
    successful = sum(1 for r in results if r.success)
    failed = total - successful
    rate = (successful / total * 100.0) if total else 0.0
    return {
        "total": total,
        "successful": successful,
        "failed": failed,
        "success_rate": f"{rate:.1f}",
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _run_mammoth(request: ConversionRequest, sink: Optional[ImageSink]) -> Tuple[str, List[str]]:
    try:
        import mammoth  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"mammoth not available: {exc}") from exc

    kwargs: Dict[str, Any] = {}
    if request.preserve_styles:
        kwargs["style_map"] = STYLE_MAP
    if sink is not None:
        kwargs["convert_image"] = mammoth.images.img_element(sink.convert_image)
    else:
        kwargs["convert_image"] = mammoth.images.img_element(lambda image: {})

    try:
        result = mammoth.convert_to_html(io.BytesIO(request.payload), **kwargs)
    except Exception as exc:
        raise ConversionError(f"Failed to convert document {request.source_name}: {exc}") from exc

    warnings = [str(getattr(message, "message", message)) for message in result.messages]
    return result.value, warnings


def run_conversion(request: ConversionRequest) -> ConversionResult:
    """Run every stage for an already-loaded document payload."""
    output_dir = Path(request.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    sink: Optional[ImageSink] = None
    if request.extract_images:
        sink = ImageSink(output_dir, request.document_name)
        sink.images_dir.mkdir(parents=True, exist_ok=True)

    html, warnings = _run_mammoth(request, sink)
    LOG.debug("mammoth produced %d characters of HTML (%d warning(s))", len(html), len(warnings))

    html = preprocess_html(html)
    md_text = flatten_html(html, sink.placeholders if sink is not None else None)
    md_text = postprocess_markdown(md_text)

    images: List[ImageRecord] = []
    if sink is not None:
        warnings.extend(sink.persist())
        images = list(sink.images)
        if images:
            LOG.info("Extracted %d image(s) to %s", len(images), sink.images_dir)

    return ConversionResult(
        markdown=md_text,
        images=tuple(images),
        warnings=tuple(warnings),
        metadata=MappingProxyType(
            {
                "original_file": request.source_name,
                "converted_at": datetime.now(timezone.utc).isoformat(),
            }
        ),
    )


def convert_docx_to_markdown(
    input_path: Path,
    output_dir: Optional[Path] = None,
    extract_images: bool = True,
    preserve_styles: bool = True,
) -> ConversionResult:
    input_path = Path(input_path)
    try:
        payload = input_path.read_bytes()
    except OSError as exc:
        raise InputValidationError(f"File is not readable: {input_path}: {exc}") from exc

    request = ConversionRequest(
        payload=payload,
        source_name=input_path.name,
        output_dir=Path(output_dir) if output_dir else input_path.parent,
        extract_images=extract_images,
        preserve_styles=preserve_styles,
    )
    return run_conversion(request)


def convert_document(input_path: Path, options: Optional[ConversionOptions] = None) -> DocumentOutcome:
    options = options or ConversionOptions()
    input_path = Path(input_path)

    validate_input_file(input_path)
    LOG.info("Converting: %s", input_path.name)

    output_dir = Path(options.output_dir) if options.output_dir else input_path.parent
    result = convert_docx_to_markdown(
        input_path,
        output_dir=output_dir,
        extract_images=options.extract_images,
        preserve_styles=options.preserve_styles,
    )

    frontmatter = dict(options.frontmatter or {})
    title = frontmatter.get("title") or extract_title(result.markdown) or extract_title_from_filename(input_path)
    frontmatter["title"] = title
    final_md = add_frontmatter_to_markdown(result.markdown, frontmatter)

    output_path = Path(options.output_file) if options.output_file else generate_output_path(input_path, output_dir)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(final_md, encoding="utf-8")
    LOG.info("Wrote %s", output_path)

    return DocumentOutcome(
        success=True,
        input_file=input_path,
        output_file=output_path,
        images_extracted=len(result.images),
        warnings=list(result.warnings),
        metadata=dict(result.metadata),
    )


def convert_multiple_documents(
    input_files: List[Path], options: Optional[ConversionOptions] = None
) -> BatchResult:
    options = options or ConversionOptions()
    results: List[DocumentOutcome] = []
    LOG.info("Converting %d document(s)", len(input_files))

    for input_file in input_files:
        try:
            outcome = convert_document(input_file, options)
        except Exception as exc:
            LOG.warning("%s: %s", Path(input_file).name, exc)
            outcome = DocumentOutcome(success=False, input_file=Path(input_file), error=str(exc))
        else:
            LOG.info("%s -> %s", Path(input_file).name, outcome.output_file.name if outcome.output_file else "")
        results.append(outcome)

    summary = create_conversion_summary(results)
    LOG.info("Conversion complete: %d/%d successful", summary["successful"], summary["total"])
    return BatchResult(results=results, summary=summary)
