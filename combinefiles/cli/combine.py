#!/usr/bin/env python3
"""
combinefiles – command line entry point.

Merges the files below SOURCE into one token-bounded text file (or pages of
one). Options given on the command line override values from --config.

Exit codes: 0 ok, 1 budget exhausted under the exclude policy (or canceled),
2 configuration error, 3 output could not be written.
"""
import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from .. import __version__
from ..core.config import CombineConfig, ConfigError, load_config
from ..core.fs_scan import ORDER_STRATEGIES
from ..core.pipeline import run_combine
from ..core.sinks import SinkError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BUDGET = 1
EXIT_CONFIG = 2
EXIT_SINK = 3


def _err(msg: str) -> None:
    print(f"[combinefiles] {msg}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="combinefiles",
        description="Merge source files into token-bounded text bundles.",
    )
    parser.add_argument("source", nargs="?", default=None, help="Directory to scan (default: current directory)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", help="YAML config file")

    scan = parser.add_argument_group("selection")
    scan.add_argument("--no-recursive", dest="recursive", action="store_false", default=None,
                      help="Only direct children of SOURCE")
    scan.add_argument("--files", nargs="+", default=None, help="Explicit files instead of scanning SOURCE")
    scan.add_argument("--file-list", help="Text file with one path per line")
    scan.add_argument("-e", "--ext", dest="extensions", action="append", default=None,
                      help="Extension whitelist, repeatable or comma separated (e.g. .py,.md)")
    scan.add_argument("--exclude-path", dest="exclude_paths", action="append", default=None)
    scan.add_argument("--exclude-file", dest="exclude_files", action="append", default=None)
    scan.add_argument("--exclude-pattern", dest="exclude_patterns", action="append", default=None,
                      help="Regex matched against the absolute path")
    scan.add_argument("--min-size", help="e.g. 1KB")
    scan.add_argument("--max-size", help="e.g. 10MB")
    scan.add_argument("--min-date", help="YYYY-MM-DD")
    scan.add_argument("--max-date", help="YYYY-MM-DD")
    scan.add_argument("--exclude-auto-generated", action="store_true", default=None)
    scan.add_argument("--order", choices=ORDER_STRATEGIES, default=None)

    budget = parser.add_argument_group("budget")
    budget.add_argument("-p", "--policy", choices=("exclude", "partial", "paginate"), default=None)
    budget.add_argument("--max-total-tokens", type=int, default=None)
    budget.add_argument("--max-tokens-per-page", type=int, default=None)
    budget.add_argument("--max-tokens-per-file", type=int, default=None)
    budget.add_argument("--max-lines", dest="max_lines_per_file", type=int, default=None)

    out = parser.add_argument_group("output")
    out.add_argument("--list-only", action="store_true", default=None, help="Headers only, no content")
    out.add_argument("-o", "--output", dest="output_file", default=None)
    out.add_argument("--console", dest="output_to_console", action="store_true", default=None,
                     help="Write to stdout instead of a file")
    out.add_argument("--no-page-marker", dest="page_end_marker", action="store_false", default=None)
    out.add_argument("--base-dir", default=None, help="Headers show paths relative to this directory")
    out.add_argument("--log-level", choices=("DEBUG", "INFO", "WARNING", "ERROR"), default=None)
    out.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level DEBUG")
    return parser


def _read_file_list(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip() and not line.lstrip().startswith("#")]
    except OSError as e:
        raise ConfigError(f"file_list: cannot read {path}: {e}") from e


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    keys = (
        "recursive", "extensions", "exclude_paths", "exclude_files", "exclude_patterns",
        "min_size", "max_size", "min_date", "max_date", "exclude_auto_generated", "order",
        "policy", "max_total_tokens", "max_tokens_per_page", "max_tokens_per_file",
        "max_lines_per_file", "list_only", "output_file", "output_to_console",
        "page_end_marker", "base_dir", "log_level",
    )
    values = {k: getattr(args, k) for k in keys}
    values["source"] = args.source
    if args.verbose:
        values["log_level"] = "DEBUG"

    files: List[str] = []
    if args.file_list:
        files.extend(_read_file_list(args.file_list))
    if args.files:
        files.extend(args.files)
    if files:
        values["file_list"] = files
    return values


def resolve_config(args: argparse.Namespace) -> CombineConfig:
    base = load_config(args.config) if args.config else CombineConfig()
    return base.merged(_overrides(args)).validate()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)
    except ConfigError as e:
        _err(f"Error: {e}")
        return EXIT_CONFIG

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        stream=sys.stderr,
        format="[%(levelname)s] %(message)s",
    )

    try:
        result = run_combine(config)
    except ConfigError as e:
        _err(f"Error: {e}")
        return EXIT_CONFIG
    except SinkError as e:
        logger.error("Output failed: %s", e)
        return EXIT_SINK

    if result.outputs:
        _err(f"wrote {', '.join(result.outputs)}")
    if result.index_path:
        _err(f"index: {result.index_path}")
    if result.budget_exhausted:
        _err("token budget exhausted")

    return EXIT_OK if result.success else EXIT_BUDGET


if __name__ == "__main__":
    sys.exit(main())
