"""Command-line interface for doc2md."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .version import __version__


def _get_usage() -> str:
    return (
        f"doc2md {__version__}\n"
        "Usage:\n"
        "  doc2md [--help] [--version|--ver]\n"
        "  doc2md convert INPUT [options]\n"
        "  doc2md init [--format json|yaml]\n\n"
        "Convert options:\n"
        "  -o, --output DIR             Output directory for converted files\n"
        "  -c, --config FILE            Config file path (JSON or YAML)\n"
        "  -t, --title TITLE            Document title for frontmatter\n"
        "  -s, --section SECTION        Section number (e.g. \"1.3\")\n"
        "  --chapter N                  Chapter number\n"
        "  --objectives ITEMS           Comma-separated list of objectives\n"
        "  --no-images                  Skip image extraction\n"
        "  -b, --batch                  Batch mode for multiple files\n"
        "  -v, --verbose                Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("command", nargs="?")
    parser.add_argument("input", nargs="?")
    parser.add_argument("--help", "-h", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--output", "-o", help="Output directory for converted files")
    parser.add_argument("--config", "-c", help="Config file path (JSON or YAML)")
    parser.add_argument("--title", "-t", help="Document title for frontmatter")
    parser.add_argument("--section", "-s", help="Section number")
    parser.add_argument("--chapter", help="Chapter number")
    parser.add_argument("--objectives", help="Comma-separated list of objectives")
    parser.add_argument("--no-images", action="store_true", help="Skip image extraction")
    parser.add_argument("--batch", "-b", action="store_true", help="Batch mode for multiple files")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    parser.add_argument("--format", "-f", default="json", help="Config format for init (json or yaml)")
    return parser


def _parse_chapter(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid value for --chapter: {value!r} is not a number") from None


def _parse_objectives(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    items = [item.strip() for item in value.split(",")]
    return [item for item in items if item] or None


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "outputDir": args.output,
        "extractImages": False if args.no_images else None,
        "frontmatter": {
            "title": args.title,
            "section": args.section,
            "chapter": _parse_chapter(args.chapter),
            "objectives": _parse_objectives(args.objectives),
        },
    }


def _run_init(args: argparse.Namespace) -> int:
    from . import config as config_mod

    try:
        target = config_mod.write_example_config(Path.cwd(), args.format)
    except (ValueError, OSError) as exc:
        print(f"Unable to write config: {exc}", file=sys.stderr)
        return 6
    print(f"Created {target.name}")
    print("Edit this file to customize your conversion settings")
    return 0


def _run_convert(args: argparse.Namespace) -> int:
    from . import config as config_mod
    from . import core

    if not args.input:
        print(_get_usage())
        print("An INPUT file or directory is required for convert", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    core.setup_logging(args.verbose, args.debug)

    try:
        config_path = Path(args.config).expanduser() if args.config else config_mod.find_default_config()
        file_config = config_mod.load_config(config_path) if config_path else {}
        if config_path:
            core.LOG.info("Using config file: %s", config_path)
        merged = config_mod.merge_options(file_config, _cli_overrides(args))
        options = config_mod.build_conversion_options(merged)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    try:
        input_files = core.find_docx_files(Path(args.input).expanduser())
    except core.InputValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return core.EXIT_FAILURE

    if not input_files:
        print("No .docx files found", file=sys.stderr)
        return core.EXIT_FAILURE

    if len(input_files) == 1 and not args.batch:
        source = input_files[0]
        core.LOG.info("Input size: %s", core.format_file_size(source.stat().st_size))
        try:
            outcome = core.convert_document(source, options)
        except Exception as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return core.EXIT_FAILURE

        print("Conversion successful")
        print(f"Input:  {outcome.input_file}")
        print(f"Output: {outcome.output_file}")
        if outcome.images_extracted:
            print(f"Images: {outcome.images_extracted} extracted")
        if outcome.warnings and args.verbose:
            print("Warnings:")
            for warning in outcome.warnings:
                print(f"  - {warning}")
        return 0

    print(f"Found {len(input_files)} file(s) to convert")
    batch = core.convert_multiple_documents(input_files, options)
    summary = batch.summary
    print(f"Total:        {summary['total']}")
    print(f"Successful:   {summary['successful']}")
    print(f"Failed:       {summary['failed']}")
    print(f"Success rate: {summary['success_rate']}%")
    if summary["failed"] and args.verbose:
        print("Failed files:")
        for outcome in batch.results:
            if not outcome.success:
                print(f"  - {outcome.input_file.name}: {outcome.error}")
    return core.EXIT_FAILURE if summary["failed"] else 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    if args.command == "init":
        return _run_init(args)

    if args.command == "convert":
        return _run_convert(args)

    print(_get_usage())
    print(f"Unknown command: {args.command}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
