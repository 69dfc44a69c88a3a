"""YAML frontmatter for converted Markdown documents."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

DEFAULT_TITLE = "Untitled"
RECOGNIZED_KEYS = ("title", "section", "chapter", "objectives")
CUSTOM_FIELDS_KEYS = ("customFields", "custom_fields")

FRONTMATTER_RE = re.compile(r"^---\n(.*?)\n?---\n\n", re.DOTALL)


class _QuotedStr(str):
    pass


class _FrontmatterDumper(yaml.SafeDumper):
    # Indent block sequences under their key ("  - item").
    def increase_indent(self, flow: bool = False, indentless: bool = False):
        return super().increase_indent(flow, False)


def _represent_quoted(dumper: yaml.SafeDumper, data: _QuotedStr):
    return dumper.represent_scalar("tag:yaml.org,2002:str", str(data), style='"')


_FrontmatterDumper.add_representer(_QuotedStr, _represent_quoted)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return True
    return False


def _quote_strings(value: Any) -> Any:
    if isinstance(value, str):
        return _QuotedStr(value)
    if isinstance(value, (list, tuple)):
        return [_quote_strings(item) for item in value]
    if isinstance(value, Mapping):
        return {key: _quote_strings(item) for key, item in value.items()}
    return value


def generate_frontmatter(fields: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Build the ordered frontmatter mapping.

    Recognized keys come first in the order title, section, chapter,
    objectives; empty ones are dropped. Any other key, including the
    entries of a ``customFields`` mapping, follows in caller order.
    """
    fields = dict(fields or {})
    frontmatter: Dict[str, Any] = {"title": fields.get("title") or DEFAULT_TITLE}
    for key in RECOGNIZED_KEYS[1:]:
        value = fields.get(key)
        if _is_empty(value):
            continue
        frontmatter[key] = list(value) if key == "objectives" else value

    for key, value in fields.items():
        if key in RECOGNIZED_KEYS:
            continue
        if key in CUSTOM_FIELDS_KEYS and isinstance(value, Mapping):
            for custom_key, custom_value in value.items():
                frontmatter.setdefault(custom_key, custom_value)
            continue
        frontmatter[key] = value
    return frontmatter


def frontmatter_to_yaml(frontmatter: Mapping[str, Any]) -> str:
    body = yaml.dump(
        {key: _quote_strings(value) for key, value in frontmatter.items()},
        Dumper=_FrontmatterDumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
        indent=2,
        width=float("inf"),
    )
    return f"---\n{body}---\n\n"


def add_frontmatter_to_markdown(markdown: str, fields: Optional[Mapping[str, Any]] = None) -> str:
    return frontmatter_to_yaml(generate_frontmatter(fields)) + markdown


def parse_frontmatter(markdown: str) -> Tuple[Optional[Dict[str, Any]], str]:
    match = FRONTMATTER_RE.match(markdown or "")
    if not match:
        return None, markdown
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return None, markdown
    if not isinstance(data, dict):
        return None, markdown
    return data, markdown[match.end() :]


def merge_frontmatter(existing: Mapping[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    merged = {**existing, **updates}
    if updates.get("objectives"):
        merged["objectives"] = list(existing.get("objectives") or []) + list(updates["objectives"])
    return merged
