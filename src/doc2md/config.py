"""Configuration files and option merging for doc2md."""

from __future__ import annotations

import copy
import json
from numbers import Number
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .core import ConversionOptions

DEFAULT_CONFIG_NAMES = (
    ".doc2mdrc.json",
    ".doc2mdrc.yaml",
    ".doc2mdrc.yml",
    "doc2md.config.json",
    "doc2md.config.yaml",
    "doc2md.config.yml",
)

EXAMPLE_CONFIG: Dict[str, Any] = {
    "outputDir": "./output",
    "extractImages": True,
    "frontmatter": {
        "chapter": 1,
        "section": "1.1",
        "objectives": [
            "Example objective 1",
            "Example objective 2",
        ],
    },
}


def load_config(path: Path) -> Dict[str, Any]:
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in {".json", ".yaml", ".yml"}:
        raise ValueError(f"Unsupported config file format: {suffix or '(none)'}")
    if not path.exists():
        raise ValueError(f"Config file not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw) if suffix == ".json" else yaml.safe_load(raw)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Failed to load config {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def find_default_config(directory: Optional[Path] = None) -> Optional[Path]:
    base = Path(directory) if directory is not None else Path.cwd()
    for name in DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def _drop_none(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def merge_options(config: Optional[Mapping[str, Any]] = None, cli: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    config = dict(config or {})
    cli = _drop_none(cli or {})
    merged = {**config, **cli}
    merged["frontmatter"] = {
        **_drop_none(config.get("frontmatter") or {}),
        **_drop_none(cli.get("frontmatter") or {}),
    }
    return merged


def validate_config(config: Mapping[str, Any]) -> None:
    errors = []
    frontmatter = config.get("frontmatter") or {}
    if not isinstance(frontmatter, Mapping):
        errors.append("frontmatter must be a mapping")
        frontmatter = {}

    chapter = frontmatter.get("chapter")
    if chapter is not None and (isinstance(chapter, bool) or not isinstance(chapter, Number)):
        errors.append("Chapter must be a number")

    objectives = frontmatter.get("objectives")
    if objectives is not None and not isinstance(objectives, list):
        errors.append("Objectives must be an array")

    output_dir = config.get("outputDir")
    if output_dir is not None and not isinstance(output_dir, str):
        errors.append("outputDir must be a string")

    if errors:
        raise ValueError("Config validation failed:\n" + "\n".join(errors))


def build_conversion_options(config: Mapping[str, Any]) -> ConversionOptions:
    validate_config(config)
    output_dir = config.get("outputDir")
    output_file = config.get("outputFile")
    return ConversionOptions(
        output_dir=Path(output_dir).expanduser() if output_dir else None,
        output_file=Path(output_file).expanduser() if output_file else None,
        extract_images=bool(config.get("extractImages", True)),
        preserve_styles=bool(config.get("preserveStyles", True)),
        frontmatter=dict(config.get("frontmatter") or {}),
    )


def get_example_config() -> Dict[str, Any]:
    return copy.deepcopy(EXAMPLE_CONFIG)


def write_example_config(directory: Path, fmt: str = "json") -> Path:
    fmt = fmt.lower()
    if fmt not in {"json", "yaml"}:
        raise ValueError(f"Unsupported config format: {fmt}")
    target = Path(directory) / (".doc2mdrc.yaml" if fmt == "yaml" else ".doc2mdrc.json")
    example = get_example_config()
    if fmt == "yaml":
        text = yaml.safe_dump(example, indent=2, sort_keys=False, allow_unicode=True)
    else:
        text = json.dumps(example, ensure_ascii=False, indent=2) + "\n"
    target.write_text(text, encoding="utf-8")
    return target
