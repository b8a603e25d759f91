from __future__ import annotations
# -*- coding: utf-8 -*-

"""
merge.py – Single-pass merger.

Streams candidate files line by line into one output sink under a global
token budget. What happens when the budget runs out is decided by a
truncation strategy picked once at construction:

  exclude  – a file either fits completely or is not written at all; the
             first file that does not fit ends the run.
  partial  – the overflowing file is written up to the budget, followed by
             a truncation footer; every later file is skipped.

Files whose full-content SHA-256 was already emitted in this run are
skipped silently (hard links, copies).
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple

from .fs_scan import compute_sha256
from .sinks import OutputSink, SinkError
from .tokens import count_tokens, line_byte_size

logger = logging.getLogger(__name__)

HEADER_CONTENT = "### Contenuto di {rel} ###"
HEADER_LIST_ONLY = "### {rel} ###"
TRUNCATION_FOOTER = "### FILE TRONCATO: {processed}/{total}  Righe {lines} ###"
READ_ERROR_MARKER = "[ERROR: impossibile leggere {rel} - {reason}]"

# Why a file stopped early.
STOP_LINES = "lines"
STOP_FILE_TOKENS = "file-tokens"
STOP_BUDGET = "budget"


class TruncationPolicy(str, enum.Enum):
    EXCLUDE_COMPLETELY = "exclude"
    INCLUDE_PARTIAL = "partial"
    PAGINATE_OUTPUT = "paginate"

    @classmethod
    def parse(cls, value: Any) -> "TruncationPolicy":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("_", "").replace("-", "")
        aliases = {
            "exclude": cls.EXCLUDE_COMPLETELY,
            "excludecompletely": cls.EXCLUDE_COMPLETELY,
            "partial": cls.INCLUDE_PARTIAL,
            "includepartial": cls.INCLUDE_PARTIAL,
            "paginate": cls.PAGINATE_OUTPUT,
            "paginateoutput": cls.PAGINATE_OUTPUT,
        }
        if key not in aliases:
            raise ValueError(f"Unknown truncation policy: {value!r} (expected exclude|partial|paginate)")
        return aliases[key]


@dataclass
class FileTruncationInfo:
    total_bytes: Optional[int] = None
    emitted_bytes: int = 0
    emitted_lines: int = 0
    emitted_tokens: int = 0
    stop_reason: Optional[str] = None

    @property
    def stopped_early(self) -> bool:
        return self.stop_reason is not None

    @property
    def was_truncated(self) -> bool:
        # Byte counts are approximate (see line_byte_size); stop_reason is authoritative.
        return self.total_bytes is not None and self.emitted_bytes < self.total_bytes

    def record(self, line: str, tokens: int) -> None:
        self.emitted_bytes += line_byte_size(line)
        self.emitted_lines += 1
        self.emitted_tokens += tokens

    def footer(self) -> str:
        total = "?" if self.total_bytes is None else self.total_bytes
        return TRUNCATION_FOOTER.format(
            processed=self.emitted_bytes, total=total, lines=self.emitted_lines
        )


@dataclass
class RunState:
    """Everything a run accumulates. Pass the same instance to keep counting across mergers."""

    tokens_used: int = 0
    fingerprints: Set[str] = field(default_factory=set)
    budget_violated: bool = False

    files_merged: int = 0
    files_truncated: int = 0
    duplicates: List[str] = field(default_factory=list)
    error_skips: List[Tuple[str, str]] = field(default_factory=list)
    budget_skips: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "tokens_used": self.tokens_used,
            "files_merged": self.files_merged,
            "files_truncated": self.files_truncated,
            "duplicates": len(self.duplicates),
            "skipped_errors": len(self.error_skips),
            "skipped_budget": len(self.budget_skips),
            "budget_violated": self.budget_violated,
        }


class TokenLimit(NamedTuple):
    tokens: int
    # True when the binding limit is the run budget (or the caller's cap),
    # False when it is only the configured per-file ceiling.
    trips_budget: bool


def relative_label(path: str, base_dir: str) -> str:
    try:
        return os.path.relpath(path, base_dir)
    except ValueError:
        # Different drive on Windows.
        return path


def measure_tokens(path: str, max_lines: int = 0) -> int:
    """Tokens that streaming ``path`` would emit under a line cap (no budget)."""
    total = 0
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        for n, raw in enumerate(fh):
            if max_lines and n >= max_lines:
                break
            total += count_tokens(raw)
    return total


class MergerBase:
    """Dedup, header and streaming plumbing shared by both mergers."""

    def __init__(
        self,
        max_lines_per_file: int = 0,
        max_tokens_per_file: int = 0,
        list_only: bool = False,
        base_dir: Optional[str] = None,
        state: Optional[RunState] = None,
    ) -> None:
        if max_lines_per_file < 0 or max_tokens_per_file < 0:
            raise ValueError("Per-file limits must be >= 0 (0 = unlimited)")
        self.max_lines_per_file = max_lines_per_file
        self.max_tokens_per_file = max_tokens_per_file
        self.list_only = list_only
        self.base_dir = os.path.abspath(base_dir or os.getcwd())
        self.state = state if state is not None else RunState()
        self.last_file: Optional[FileTruncationInfo] = None
        self._closed = False

    # --- bookkeeping ---

    def relative(self, path: str) -> str:
        return relative_label(path, self.base_dir)

    def _skip_error(self, path: str, reason: str) -> None:
        logger.warning("skip-error %s: %s", self.relative(path), reason)
        self.state.error_skips.append((path, reason))

    def _skip_budget(self, path: str, reason: str) -> None:
        logger.info("skip-budget %s: %s", self.relative(path), reason)
        self.state.budget_skips.append(path)

    def _fingerprint(self, path: str) -> Optional[str]:
        """SHA-256 of the file, or None after logging when it cannot be hashed."""
        try:
            return compute_sha256(path)
        except OSError as e:
            self._skip_error(path, f"cannot compute hash: {e}")
            return None

    def _prepare(self, path: str) -> Optional[str]:
        """
        Common pre-checks. Returns the fingerprint when the file should be
        processed, None when it was skipped (unhashable or duplicate).
        """
        if not path:
            raise ValueError("path must not be empty")
        if self._closed:
            raise SinkError("merger is already closed")

        fingerprint = self._fingerprint(path)
        if fingerprint is None:
            return None
        if fingerprint in self.state.fingerprints:
            logger.debug("Skipped duplicate: %s", self.relative(path))
            self.state.duplicates.append(path)
            return None
        return fingerprint

    # --- sink hooks ---

    def _write(self, text: str = "") -> None:
        raise NotImplementedError


class _ExcludeCompletely:
    policy = TruncationPolicy.EXCLUDE_COMPLETELY

    def after_violation(self, merger: "FileMerger", path: str) -> bool:
        merger._skip_budget(path, "run stopped, budget already exceeded")
        return False

    def merge(self, merger: "FileMerger", path: str, rel: str, fingerprint: str, cap: Optional[int]) -> bool:
        limit = merger.effective_limit(cap)
        if limit is not None:
            try:
                needed = measure_tokens(path, merger.max_lines_per_file)
            except OSError as e:
                merger._skip_error(path, f"cannot read: {e}")
                return True
            # The run budget is checked before the per-file ceiling, whichever is tighter.
            budget = merger.budget_limit(cap)
            if budget is not None and needed > budget.tokens:
                merger.state.budget_violated = True
                merger._skip_budget(path, f"needs {needed} tokens, {budget.tokens} left; run stopped")
                return False
            if needed > limit.tokens:
                merger._skip_budget(path, f"needs {needed} tokens, per-file ceiling is {limit.tokens}")
                return True

        info = merger._stream(path, rel, fingerprint, limit)
        if info is not None and info.stop_reason == STOP_BUDGET:
            # File grew between measuring and streaming.
            return False
        return True


class _IncludePartial:
    policy = TruncationPolicy.INCLUDE_PARTIAL

    def after_violation(self, merger: "FileMerger", path: str) -> bool:
        merger._skip_budget(path, "token budget exhausted")
        return True

    def merge(self, merger: "FileMerger", path: str, rel: str, fingerprint: str, cap: Optional[int]) -> bool:
        limit = merger.effective_limit(cap)
        if limit is not None and limit.trips_budget and limit.tokens <= 0:
            merger.state.budget_violated = True
            merger._skip_budget(path, "token budget exhausted")
            return True
        merger._stream(path, rel, fingerprint, limit)
        return True


_STRATEGIES = {
    TruncationPolicy.EXCLUDE_COMPLETELY: _ExcludeCompletely,
    TruncationPolicy.INCLUDE_PARTIAL: _IncludePartial,
}


class FileMerger(MergerBase):
    """
    Single-pass merger writing into one sink.

    ``merge_file`` returns False only under the exclude policy, for the call
    that exceeded the budget and every call after it. Callers should stop
    issuing files once that happens.
    """

    def __init__(
        self,
        sink: OutputSink,
        policy: TruncationPolicy = TruncationPolicy.INCLUDE_PARTIAL,
        max_total_tokens: int = 0,
        max_lines_per_file: int = 0,
        max_tokens_per_file: int = 0,
        list_only: bool = False,
        base_dir: Optional[str] = None,
        state: Optional[RunState] = None,
    ) -> None:
        super().__init__(
            max_lines_per_file=max_lines_per_file,
            max_tokens_per_file=max_tokens_per_file,
            list_only=list_only,
            base_dir=base_dir,
            state=state,
        )
        policy = TruncationPolicy.parse(policy)
        if policy not in _STRATEGIES:
            raise ValueError("PAGINATE_OUTPUT is handled by PaginatedFileMerger")
        if max_total_tokens < 0:
            raise ValueError("max_total_tokens must be >= 0 (0 = unlimited)")
        self.sink = sink
        self.policy = policy
        self.max_total_tokens = max_total_tokens
        self._strategy = _STRATEGIES[policy]()

    def __enter__(self) -> "FileMerger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        self._closed = True
        try:
            self.sink.close()
        except SinkError as e:
            logger.error("Closing %s after a failure also failed: %s", self.sink.name, e)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sink.flush()
        finally:
            self.sink.close()

    def _write(self, text: str = "") -> None:
        self.sink.write_line(text)

    def budget_limit(self, per_file_token_cap: Optional[int] = None) -> Optional[TokenLimit]:
        """The tighter of call cap and remaining budget; the limits that stop a run."""
        limits: List[TokenLimit] = []
        if self.max_total_tokens > 0:
            remaining = max(0, self.max_total_tokens - self.state.tokens_used)
            limits.append(TokenLimit(remaining, True))
        if per_file_token_cap is not None and per_file_token_cap > 0:
            limits.append(TokenLimit(per_file_token_cap, True))
        if not limits:
            return None
        return min(limits, key=lambda lim: lim.tokens)

    def effective_limit(self, per_file_token_cap: Optional[int] = None) -> Optional[TokenLimit]:
        """The tightest of call cap, per-file ceiling and remaining budget; None = unlimited."""
        limits: List[TokenLimit] = []
        budget = self.budget_limit(per_file_token_cap)
        if budget is not None:
            limits.append(budget)
        if self.max_tokens_per_file > 0:
            limits.append(TokenLimit(self.max_tokens_per_file, False))
        if not limits:
            return None
        # On ties the budget-tripping limit wins.
        return min(limits, key=lambda lim: (lim.tokens, not lim.trips_budget))

    def merge_file(self, path: str, per_file_token_cap: Optional[int] = None) -> bool:
        if not path:
            raise ValueError("path must not be empty")
        path = os.path.abspath(str(path))
        if self.state.budget_violated:
            if self._closed:
                raise SinkError("merger is already closed")
            return self._strategy.after_violation(self, path)

        fingerprint = self._prepare(path)
        if fingerprint is None:
            return True

        rel = self.relative(path)
        if self.list_only:
            self.state.fingerprints.add(fingerprint)
            self._write(HEADER_LIST_ONLY.format(rel=rel))
            self.state.files_merged += 1
            return True

        return self._strategy.merge(self, path, rel, fingerprint, per_file_token_cap)

    def _stream(self, path: str, rel: str, fingerprint: str, limit: Optional[TokenLimit]) -> Optional[FileTruncationInfo]:
        """
        Header, content lines, optional footer and the blank separator.
        Returns the per-file record, or None when the file could not be read.
        """
        info = FileTruncationInfo()
        try:
            fh = open(path, "r", encoding="utf-8", errors="replace")
        except OSError as e:
            self._skip_error(path, f"cannot open: {e}")
            return None

        with fh:
            try:
                info.total_bytes = os.fstat(fh.fileno()).st_size
            except OSError:
                info.total_bytes = None

            self.state.fingerprints.add(fingerprint)
            self._write(HEADER_CONTENT.format(rel=rel))
            try:
                for raw in fh:
                    line = raw.rstrip("\r\n")
                    if self.max_lines_per_file and info.emitted_lines >= self.max_lines_per_file:
                        info.stop_reason = STOP_LINES
                        break
                    tokens = count_tokens(line)
                    if limit is not None and info.emitted_tokens + tokens > limit.tokens:
                        info.stop_reason = STOP_BUDGET if limit.trips_budget else STOP_FILE_TOKENS
                        break
                    self._write(line)
                    info.record(line, tokens)
            except OSError as e:
                self.state.tokens_used += info.emitted_tokens
                self._write(READ_ERROR_MARKER.format(rel=rel, reason=e))
                self._write()
                self._skip_error(path, f"read failed after {info.emitted_lines} line(s): {e}")
                self.last_file = info
                return None

        self.state.tokens_used += info.emitted_tokens
        if info.stopped_early:
            self._write(info.footer())
            self.state.files_truncated += 1
            # Only budget stops trip the run; line-cap and ceiling footers may appear on any number of files.
            if info.stop_reason == STOP_BUDGET:
                self.state.budget_violated = True
                logger.info(
                    "Token budget reached in %s after %d line(s); further files are skipped",
                    rel, info.emitted_lines,
                )
            else:
                logger.debug("Truncated %s (%s)", rel, info.stop_reason)
        self._write()
        self.state.files_merged += 1
        self.last_file = info
        return info
