from __future__ import annotations
# -*- coding: utf-8 -*-

"""
config.py – Run parameters for one combine run.

``CombineConfig`` can be built in code, loaded from a YAML file
(``load_config``) or assembled by the CLI; ``validate()`` normalises the
loosely typed inputs (human sizes, ISO dates, comma lists) in place.
"""

import datetime
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .fs_scan import ORDER_STRATEGIES
from .merge import TruncationPolicy
from .tokens import parse_human_size

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_FILE = "CombinedFile.txt"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class ConfigError(ValueError):
    """Invalid configuration value; the message names the offending key."""


def _as_list(key: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    raise ConfigError(f"{key}: expected a list or comma separated string, got {type(value).__name__}")


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer, got a boolean")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: expected an integer, got {value!r}") from None
    if n < 0:
        raise ConfigError(f"{key}: must be >= 0 (0 = unlimited), got {n}")
    return n


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")


def _as_date(key: str, value: Any) -> Optional[datetime.date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key}: expected an ISO date (YYYY-MM-DD), got {value!r}") from None


def _as_size(key: str, value: Any) -> int:
    try:
        return parse_human_size(value)
    except ValueError as e:
        raise ConfigError(f"{key}: {e}") from None


@dataclass
class CombineConfig:
    source: str = "."
    recursive: bool = True
    file_list: List[str] = field(default_factory=list)
    extensions: List[str] = field(default_factory=list)

    exclude_paths: List[str] = field(default_factory=list)
    exclude_files: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)

    min_size: Any = 0
    max_size: Any = 0
    min_date: Any = None
    max_date: Any = None
    exclude_auto_generated: bool = False
    order: str = "discovery"

    policy: Any = TruncationPolicy.INCLUDE_PARTIAL
    max_total_tokens: int = 0
    max_tokens_per_page: int = 0
    max_tokens_per_file: int = 0
    max_lines_per_file: int = 0
    list_only: bool = False

    output_file: Optional[str] = DEFAULT_OUTPUT_FILE
    output_to_console: bool = False
    page_end_marker: bool = True
    base_dir: Optional[str] = None
    log_level: str = "INFO"

    def validate(self) -> "CombineConfig":
        """Coerces and checks every field. Raises ConfigError; returns self."""
        if not self.source or not str(self.source).strip():
            raise ConfigError("source: must not be empty")
        self.source = str(self.source)
        self.recursive = _as_bool("recursive", self.recursive)

        for key in ("file_list", "extensions", "exclude_paths", "exclude_files", "exclude_patterns"):
            setattr(self, key, _as_list(key, getattr(self, key)))
        for raw in self.exclude_patterns:
            try:
                re.compile(raw)
            except re.error as e:
                raise ConfigError(f"exclude_patterns: invalid regex {raw!r}: {e}") from None

        self.min_size = _as_size("min_size", self.min_size)
        self.max_size = _as_size("max_size", self.max_size)
        if self.max_size and self.min_size > self.max_size:
            raise ConfigError("max_size: must not be smaller than min_size")

        self.min_date = _as_date("min_date", self.min_date)
        self.max_date = _as_date("max_date", self.max_date)
        if self.min_date and self.max_date and self.min_date > self.max_date:
            raise ConfigError("max_date: must not be before min_date")

        self.exclude_auto_generated = _as_bool("exclude_auto_generated", self.exclude_auto_generated)
        if self.order not in ORDER_STRATEGIES:
            raise ConfigError(f"order: unknown strategy {self.order!r} (expected one of {', '.join(ORDER_STRATEGIES)})")

        try:
            self.policy = TruncationPolicy.parse(self.policy)
        except ValueError as e:
            raise ConfigError(f"policy: {e}") from None

        for key in ("max_total_tokens", "max_tokens_per_page", "max_tokens_per_file", "max_lines_per_file"):
            setattr(self, key, _as_int(key, getattr(self, key)))

        self.list_only = _as_bool("list_only", self.list_only)
        self.output_to_console = _as_bool("output_to_console", self.output_to_console)
        self.page_end_marker = _as_bool("page_end_marker", self.page_end_marker)
        if not self.output_to_console and not self.output_file:
            raise ConfigError("output_file: required unless output_to_console is set")

        level = str(self.log_level or "INFO").upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"log_level: expected one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")
        self.log_level = level
        return self

    @property
    def resolved_base_dir(self) -> str:
        return os.path.abspath(self.base_dir or os.getcwd())

    @property
    def output_path(self) -> Optional[str]:
        """Absolute output file, or None when writing to the console."""
        if self.output_to_console or not self.output_file:
            return None
        if os.path.isabs(self.output_file):
            return self.output_file
        return os.path.join(self.resolved_base_dir, self.output_file)

    def merged(self, overrides: Mapping[str, Any]) -> "CombineConfig":
        """Copy with non-None overrides applied (CLI values win over file values)."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"{sorted(unknown)[0]}: unknown configuration key")
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)


def config_from_mapping(data: Mapping[str, Any]) -> CombineConfig:
    if not isinstance(data, Mapping):
        raise ConfigError("config: top level must be a mapping")
    known = {f.name for f in fields(CombineConfig)}
    for key in data:
        if key not in known:
            raise ConfigError(f"{key}: unknown configuration key")
    return CombineConfig(**dict(data)).validate()


def load_config(path: str) -> CombineConfig:
    """Reads a YAML config file. Missing keys keep their defaults."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data: Optional[Dict[str, Any]] = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"config: cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"config: malformed YAML in {path}: {e}") from e

    logger.debug("Loaded config %s", path)
    return config_from_mapping(data or {})
