from __future__ import annotations
# -*- coding: utf-8 -*-

"""
sinks.py – Output destinations owned by a merger.

A sink is written line by line and must be closed exactly once. Closing a
console sink only flushes; the stream itself belongs to the process.
"""

import logging
import sys
from typing import Optional, TextIO

logger = logging.getLogger(__name__)


class SinkError(RuntimeError):
    """An output destination could not be created or written. Fatal for the run."""


class OutputSink:
    name = "sink"

    def write_line(self, text: str = "") -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def closed(self) -> bool:
        return False


class ConsoleSink(OutputSink):
    name = "<stdout>"

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream
        self._closed = False

    @property
    def stream(self) -> TextIO:
        # Resolved lazily so pytest's capsys replacement of sys.stdout is honoured.
        return self._stream if self._stream is not None else sys.stdout

    def write_line(self, text: str = "") -> None:
        if self._closed:
            raise SinkError("write to closed console sink")
        try:
            self.stream.write(text + "\n")
        except OSError as e:
            raise SinkError(f"Cannot write to console: {e}") from e

    def flush(self) -> None:
        try:
            self.stream.flush()
        except OSError as e:
            raise SinkError(f"Cannot flush console: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class FileSink(OutputSink):
    """UTF-8 text file, truncated on open. Newlines follow the platform convention."""

    def __init__(self, path: str) -> None:
        self.name = str(path)
        try:
            self._fh: Optional[TextIO] = open(self.name, "w", encoding="utf-8")
        except OSError as e:
            raise SinkError(f"Cannot create output file {self.name}: {e}") from e
        logger.debug("Opened output file %s", self.name)

    def write_line(self, text: str = "") -> None:
        if self._fh is None:
            raise SinkError(f"write to closed output file {self.name}")
        try:
            self._fh.write(text + "\n")
        except OSError as e:
            raise SinkError(f"Cannot write to {self.name}: {e}") from e

    def flush(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.flush()
        except OSError as e:
            raise SinkError(f"Cannot flush {self.name}: {e}") from e

    def close(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.close()
        except OSError as e:
            raise SinkError(f"Cannot close {self.name}: {e}") from e

    @property
    def closed(self) -> bool:
        return self._fh is None


def open_sink(output_file: Optional[str], stream: Optional[TextIO] = None) -> OutputSink:
    """File sink for a path, console sink for None."""
    if output_file:
        return FileSink(output_file)
    return ConsoleSink(stream)
