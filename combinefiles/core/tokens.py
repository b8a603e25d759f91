from __future__ import annotations
# -*- coding: utf-8 -*-

"""
tokens.py – Token, byte and size helpers shared by both mergers.

A "token" here is the system's own unit: a maximal run of non-whitespace
characters in a line. It is not meant to match any real LLM tokenizer.
"""

import os
import re

SIZE_UNITS = ("B", "KB", "MB", "GB")

_SIZE_RE = re.compile(r"^(\d+)\s*(KB|MB|GB)$", re.IGNORECASE)


def count_tokens(line: str) -> int:
    if not line or line.isspace():
        return 0
    return len(line.split())


def line_byte_size(line: str) -> int:
    """Approximate on-disk size of an emitted line (UTF-8 plus line terminator)."""
    return len(line.encode("utf-8", errors="replace")) + len(os.linesep)


def human_size(n: float) -> str:
    size = float(n)
    idx = 0
    while size >= 1024 and idx < len(SIZE_UNITS) - 1:
        size /= 1024
        idx += 1
    return "{0:.1f} {1}".format(size, SIZE_UNITS[idx])


def parse_human_size(text) -> int:
    """
    "10MB" -> 10485760, "2048" -> 2048, "" -> 0.
    Raises ValueError for anything else.
    """
    if text is None:
        return 0
    if isinstance(text, int):
        if text < 0:
            raise ValueError(f"Negative size: {text}")
        return text
    s = str(text).strip().upper()
    if not s:
        return 0
    if s.isdigit():
        return int(s)

    m = _SIZE_RE.match(s)
    if not m:
        raise ValueError(f"Unrecognized size format: {text!r}")

    value = int(m.group(1))
    unit = m.group(2).upper()
    return value * (1024 ** SIZE_UNITS.index(unit))
