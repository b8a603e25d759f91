from __future__ import annotations
# -*- coding: utf-8 -*-

"""
paginate.py – Paginated merger.

Same streaming as the single-pass merger, but tokens are accounted per page.
Pages are written to ``<stem>_001<ext>``, ``<stem>_002<ext>``, ... next to the
base output; a run producing more than one page also gets ``<stem>_index.txt``.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, TextIO

from .merge import (
    HEADER_CONTENT,
    HEADER_LIST_ONLY,
    READ_ERROR_MARKER,
    STOP_FILE_TOKENS,
    STOP_LINES,
    FileTruncationInfo,
    MergerBase,
    RunState,
    measure_tokens,
)
from .sinks import ConsoleSink, FileSink, OutputSink, SinkError
from .tokens import count_tokens, human_size

logger = logging.getLogger(__name__)

PAGE_END_MARKER = "### Fine pagina {n} ###"
INDEX_HEADER = "### Indice delle pagine generate ###"
INDEX_LINE = "{n:03d}: {name} ({size})"


def page_file_name(base_output: str, number: int) -> str:
    directory = os.path.dirname(base_output)
    stem, ext = os.path.splitext(os.path.basename(base_output))
    return os.path.join(directory, f"{stem}_{number:03d}{ext}")


def index_file_name(base_output: str) -> str:
    directory = os.path.dirname(base_output)
    stem = os.path.splitext(os.path.basename(base_output))[0]
    return os.path.join(directory, f"{stem}_index.txt")


@dataclass
class Page:
    number: int
    sink: OutputSink
    path: Optional[str] = None
    tokens: int = 0


@dataclass
class PaginationResult:
    pages: List[str] = field(default_factory=list)
    page_count: int = 0
    index_path: Optional[str] = None


class PaginatedFileMerger(MergerBase):
    """
    Writes files into token-bounded pages.

    A file that would overflow a non-empty page but fits on a fresh one is
    moved to the next page as a whole. Larger files are split line by line;
    the header is repeated on every page the file continues on. A single line
    larger than the page budget still lands on a page of its own.
    """

    def __init__(
        self,
        base_output: Optional[str],
        max_tokens_per_page: int,
        max_lines_per_file: int = 0,
        max_tokens_per_file: int = 0,
        list_only: bool = False,
        base_dir: Optional[str] = None,
        stream: Optional[TextIO] = None,
        page_end_marker: bool = True,
        state: Optional[RunState] = None,
    ) -> None:
        super().__init__(
            max_lines_per_file=max_lines_per_file,
            max_tokens_per_file=max_tokens_per_file,
            list_only=list_only,
            base_dir=base_dir,
            state=state,
        )
        if max_tokens_per_page <= 0:
            raise ValueError("max_tokens_per_page must be > 0 for pagination")
        self.base_output = os.path.abspath(base_output) if base_output else None
        self.max_tokens_per_page = max_tokens_per_page
        self.page_end_marker = page_end_marker
        self._stream_target = stream

        self.closed_pages: List[Page] = []
        self._result: Optional[PaginationResult] = None
        self._page: Page = self._open_page(1)

    @property
    def current_page(self) -> Page:
        return self._page

    # --- page lifecycle ---

    def _open_page(self, number: int) -> Page:
        if self.base_output:
            path = page_file_name(self.base_output, number)
            page = Page(number=number, sink=FileSink(path), path=path)
            logger.info("Opened page %d: %s", number, path)
        else:
            page = Page(number=number, sink=ConsoleSink(self._stream_target))
            logger.debug("Started console page %d", number)
        return page

    def _close_page(self) -> None:
        page = self._page
        if self.page_end_marker:
            page.sink.write_line()
            page.sink.write_line(PAGE_END_MARKER.format(n=page.number))
        page.sink.flush()
        page.sink.close()
        self.closed_pages.append(page)
        logger.info("Closed page %d (%d tokens)", page.number, page.tokens)

    def _next_page(self) -> None:
        self._close_page()
        self._page = self._open_page(self._page.number + 1)

    def _write(self, text: str = "") -> None:
        self._page.sink.write_line(text)

    # --- merging ---

    def merge_file(self, path: str) -> bool:
        """Always True: pagination never stops a run early."""
        path = os.path.abspath(str(path)) if path else path
        fingerprint = self._prepare(path)
        if fingerprint is None:
            return True

        rel = self.relative(path)
        if self.list_only:
            self.state.fingerprints.add(fingerprint)
            self._write(HEADER_LIST_ONLY.format(rel=rel))
            self.state.files_merged += 1
            return True

        if self._page.tokens > 0:
            try:
                needed = measure_tokens(path, self.max_lines_per_file)
            except OSError as e:
                self._skip_error(path, f"cannot read: {e}")
                return True
            if self.max_tokens_per_file:
                needed = min(needed, self.max_tokens_per_file)
            if needed <= self.max_tokens_per_page < self._page.tokens + needed:
                logger.debug("%s (%d tokens) starts on a new page", rel, needed)
                self._next_page()

        self._stream(path, rel, fingerprint)
        return True

    def _stream(self, path: str, rel: str, fingerprint: str) -> None:
        info = FileTruncationInfo()
        try:
            fh = open(path, "r", encoding="utf-8", errors="replace")
        except OSError as e:
            self._skip_error(path, f"cannot open: {e}")
            return

        header_on_page = False
        with fh:
            try:
                info.total_bytes = os.fstat(fh.fileno()).st_size
            except OSError:
                info.total_bytes = None

            self.state.fingerprints.add(fingerprint)
            try:
                for raw in fh:
                    line = raw.rstrip("\r\n")
                    if self.max_lines_per_file and info.emitted_lines >= self.max_lines_per_file:
                        info.stop_reason = STOP_LINES
                        break
                    tokens = count_tokens(line)
                    if self.max_tokens_per_file and info.emitted_tokens + tokens > self.max_tokens_per_file:
                        info.stop_reason = STOP_FILE_TOKENS
                        break
                    if self._page.tokens > 0 and self._page.tokens + tokens > self.max_tokens_per_page:
                        self._next_page()
                        header_on_page = False
                    if not header_on_page:
                        self._write(HEADER_CONTENT.format(rel=rel))
                        header_on_page = True
                    self._write(line)
                    self._page.tokens += tokens
                    info.record(line, tokens)
            except OSError as e:
                if not header_on_page:
                    self._write(HEADER_CONTENT.format(rel=rel))
                self.state.tokens_used += info.emitted_tokens
                self._write(READ_ERROR_MARKER.format(rel=rel, reason=e))
                self._write()
                self._skip_error(path, f"read failed after {info.emitted_lines} line(s): {e}")
                self.last_file = info
                return

        if not header_on_page:
            # Empty file, or nothing fit under the per-file limits.
            self._write(HEADER_CONTENT.format(rel=rel))
        self.state.tokens_used += info.emitted_tokens
        if info.stopped_early:
            self._write(info.footer())
            self.state.files_truncated += 1
            logger.debug("Truncated %s (%s)", rel, info.stop_reason)
        self._write()
        self._page.sink.flush()
        self.state.files_merged += 1
        self.last_file = info

    # --- finishing ---

    def finalize_pages(self) -> PaginationResult:
        """Closes the last page and writes the index when more than one page exists."""
        if self._result is not None:
            return self._result
        if self._closed:
            raise SinkError("merger is already closed")
        self._closed = True
        self._close_page()

        result = PaginationResult(page_count=len(self.closed_pages))
        if self.base_output:
            result.pages = [p.path for p in self.closed_pages if p.path]
            if len(self.closed_pages) > 1:
                result.index_path = self._write_index()
        self._result = result
        logger.info("Pagination finished: %d page(s)", result.page_count)
        return result

    def _write_index(self) -> str:
        index_path = index_file_name(self.base_output or "")
        sink = FileSink(index_path)
        try:
            sink.write_line(INDEX_HEADER)
            sink.write_line()
            for page in self.closed_pages:
                if not page.path or not os.path.exists(page.path):
                    continue
                size = human_size(os.path.getsize(page.path))
                sink.write_line(INDEX_LINE.format(n=page.number, name=os.path.basename(page.path), size=size))
        finally:
            sink.close()
        logger.info("Wrote page index: %s", index_path)
        return index_path

    def close(self) -> None:
        if self._result is None and not self._closed:
            self.finalize_pages()

    def __enter__(self) -> "PaginatedFileMerger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        if self._closed:
            return
        self._closed = True
        try:
            self._page.sink.close()
        except SinkError as e:
            logger.error("Closing page %d after a failure also failed: %s", self._page.number, e)
