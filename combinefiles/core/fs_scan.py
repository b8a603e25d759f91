from __future__ import annotations
# -*- coding: utf-8 -*-

"""
fs_scan.py – Candidate discovery for a combine run.

Walks a source tree, applies the exclusion rules and returns absolute file
paths in traversal order. Also hosts the content fingerprint and the
optional post-collection filters/orderings used by the pipeline.
"""

import datetime
import hashlib
import logging
import os
import re
from typing import Iterable, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 65536
AUTO_GENERATED_MARKER = "<auto-generated"
AUTO_GENERATED_SNIFF_BYTES = 2048

ORDER_STRATEGIES = (
    "discovery",
    "alphabetical",
    "size-asc",
    "size-desc",
    "newest",
    "oldest",
    "extension",
)


def compute_sha256(path: str) -> str:
    """
    Full-content SHA-256 of a file, streamed in 64 KiB chunks.
    OSError propagates; callers decide how to treat an unhashable file.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def normalize_ext_list(extensions: Optional[Iterable[str]]) -> List[str]:
    if not extensions:
        return []
    cleaned: List[str] = []
    for raw in extensions:
        for part in str(raw).replace(";", ",").split(","):
            p = part.strip().lower()
            if not p:
                continue
            if not p.startswith("."):
                p = "." + p
            if p not in cleaned:
                cleaned.append(p)
    return cleaned


def _dir_key(path: str) -> str:
    return os.path.normcase(os.path.realpath(path))


class PathCollector:
    """
    Depth-first collector with prefix / name / regex exclusions.

    Directory links are recorded in ``reparse_points``. A link is followed
    for one hop only: links met inside an already linked subtree are not
    entered. Every real directory is entered at most once.
    """

    def __init__(
        self,
        exclude_paths: Optional[Sequence[str]] = None,
        exclude_files: Optional[Sequence[str]] = None,
        exclude_patterns: Optional[Sequence[str]] = None,
        extensions: Optional[Sequence[str]] = None,
    ) -> None:
        self.exclude_paths: List[str] = [
            os.path.normcase(os.path.abspath(p)) for p in (exclude_paths or []) if p
        ]
        self.exclude_files: Set[str] = {f for f in (exclude_files or []) if f}
        self._patterns: List[Tuple[str, "re.Pattern[str]"]] = []
        for raw in exclude_patterns or []:
            try:
                self._patterns.append((raw, re.compile(raw)))
            except re.error as e:
                raise ValueError(f"Invalid exclude pattern {raw!r}: {e}") from e
        self.extensions = normalize_ext_list(extensions)

        self.reparse_points: List[str] = []
        self.inaccessible: List[str] = []

    def exclusion_reason(self, abs_path: str) -> Optional[str]:
        """Returns why ``abs_path`` is excluded, or None. First match wins."""
        norm = os.path.normcase(abs_path)
        for prefix in self.exclude_paths:
            if norm.startswith(prefix):
                return f"path prefix {prefix}"

        name = os.path.basename(abs_path)
        if name in self.exclude_files:
            return f"file name {name}"

        for raw, rx in self._patterns:
            if rx.search(abs_path):
                return f"pattern {raw}"
        return None

    def accepts_extension(self, path: str) -> bool:
        if not self.extensions:
            return True
        return os.path.splitext(path)[1].lower() in self.extensions

    def collect(self, root: str, recursive: bool = True) -> List[str]:
        root_abs = os.path.abspath(str(root))
        self.reparse_points = []
        self.inaccessible = []

        out: List[str] = []
        self._walk(root_abs, recursive, set(), set(), out, via_link=False)
        logger.debug("Collected %d candidate(s) under %s", len(out), root_abs)
        return out

    def _walk(
        self,
        directory: str,
        recursive: bool,
        visited: Set[str],
        seen: Set[str],
        out: List[str],
        via_link: bool,
    ) -> None:
        key = _dir_key(directory)
        if key in visited:
            logger.debug("Directory already visited, not re-entering: %s", directory)
            return
        visited.add(key)

        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError as e:
            logger.warning("Cannot access directory %s: %s", directory, e)
            self.inaccessible.append(directory)
            return

        for entry in entries:
            path = os.path.join(directory, entry.name)

            reason = self.exclusion_reason(path)
            if reason:
                logger.debug("Excluded %s (%s)", path, reason)
                continue

            try:
                is_dir = entry.is_dir()
            except OSError:
                is_dir = False

            if is_dir:
                if not recursive:
                    continue
                if entry.is_symlink():
                    self.reparse_points.append(path)
                    if via_link:
                        logger.debug("Link inside linked tree, not followed: %s", path)
                        continue
                    logger.debug("Following directory link (one hop): %s", path)
                    self._walk(path, recursive, visited, seen, out, via_link=True)
                else:
                    self._walk(path, recursive, visited, seen, out, via_link)
                continue

            try:
                if not entry.is_file():
                    continue
            except OSError as e:
                logger.warning("Cannot stat %s: %s", path, e)
                continue

            if not self.accepts_extension(path):
                continue
            if path in seen:
                continue
            seen.add(path)
            out.append(path)


def normalize_exclude_paths(paths: Optional[Sequence[str]], base_dir: Optional[str] = None) -> List[str]:
    """Makes exclusion prefixes absolute; unknown directories are dropped with a warning."""
    base = os.path.abspath(base_dir or os.getcwd())
    result: List[str] = []
    for p in paths or []:
        if not p:
            continue
        candidate = p if os.path.isabs(p) else os.path.join(base, p)
        candidate = os.path.abspath(candidate)
        if os.path.isdir(candidate):
            result.append(candidate)
        else:
            logger.warning("Exclude directory not found, ignored: %s", candidate)
    return result


def resolve_file_list(
    paths: Sequence[str],
    base_dir: Optional[str] = None,
    collector: Optional[PathCollector] = None,
) -> List[str]:
    """Turns an external file list into absolute candidate paths, keeping its order."""
    base = os.path.abspath(base_dir or os.getcwd())
    out: List[str] = []
    seen: Set[str] = set()
    for p in paths:
        p = str(p).strip()
        if not p:
            continue
        candidate = os.path.abspath(p if os.path.isabs(p) else os.path.join(base, p))
        if not os.path.isfile(candidate):
            logger.warning("File from list not found: %s", candidate)
            continue
        if collector is not None:
            reason = collector.exclusion_reason(candidate)
            if reason:
                logger.debug("Excluded %s (%s)", candidate, reason)
                continue
            if not collector.accepts_extension(candidate):
                continue
        if candidate in seen:
            continue
        seen.add(candidate)
        out.append(candidate)
    return out


def _looks_auto_generated(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(AUTO_GENERATED_SNIFF_BYTES)
    except OSError as e:
        logger.warning("Cannot read %s while checking for generated code: %s", path, e)
        return False
    return AUTO_GENERATED_MARKER in head.decode("utf-8", errors="replace").lower()


def filter_candidates(
    paths: Sequence[str],
    min_size: int = 0,
    max_size: int = 0,
    min_date: Optional[datetime.date] = None,
    max_date: Optional[datetime.date] = None,
    exclude_auto_generated: bool = False,
) -> List[str]:
    """Size window, modification-date window and generated-code filter. 0/None = no bound."""
    if not (min_size or max_size or min_date or max_date or exclude_auto_generated):
        return list(paths)

    kept: List[str] = []
    for p in paths:
        try:
            st = os.stat(p)
        except OSError as e:
            logger.warning("Cannot stat %s, dropped: %s", p, e)
            continue

        if min_size and st.st_size < min_size:
            logger.debug("Filtered %s (smaller than %d bytes)", p, min_size)
            continue
        if max_size and st.st_size > max_size:
            logger.debug("Filtered %s (larger than %d bytes)", p, max_size)
            continue

        mdate = datetime.datetime.fromtimestamp(st.st_mtime).date()
        if min_date and mdate < min_date:
            logger.debug("Filtered %s (modified before %s)", p, min_date)
            continue
        if max_date and mdate > max_date:
            logger.debug("Filtered %s (modified after %s)", p, max_date)
            continue

        if exclude_auto_generated and _looks_auto_generated(p):
            logger.debug("Filtered %s (auto-generated)", p)
            continue

        kept.append(p)
    return kept


def order_candidates(paths: Sequence[str], strategy: str = "discovery") -> List[str]:
    """Stable reordering of the candidate list. Files that cannot be stat'ed sort last."""
    if strategy not in ORDER_STRATEGIES:
        raise ValueError(f"Unknown order strategy: {strategy!r}")
    if strategy == "discovery":
        return list(paths)
    if strategy == "alphabetical":
        return sorted(paths, key=lambda p: p.lower())
    if strategy == "extension":
        return sorted(paths, key=lambda p: (os.path.splitext(p)[1].lower(), p.lower()))

    def stat_key(p: str):
        try:
            st = os.stat(p)
        except OSError:
            return (1, 0.0)
        if strategy == "size-asc":
            return (0, float(st.st_size))
        if strategy == "size-desc":
            return (0, -float(st.st_size))
        if strategy == "newest":
            return (0, -st.st_mtime)
        return (0, st.st_mtime)

    return sorted(paths, key=stat_key)
