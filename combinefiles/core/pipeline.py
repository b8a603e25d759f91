from __future__ import annotations
# -*- coding: utf-8 -*-

"""
pipeline.py – One combine run: collect -> filter -> order -> merge.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TextIO

from .config import CombineConfig, ConfigError
from .fs_scan import (
    PathCollector,
    filter_candidates,
    normalize_exclude_paths,
    order_candidates,
    resolve_file_list,
)
from .merge import FileMerger, RunState, TruncationPolicy
from .paginate import PaginatedFileMerger
from .sinks import open_sink

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


@dataclass
class CombineResult:
    success: bool = True
    budget_exhausted: bool = False
    canceled: bool = False
    outputs: List[str] = field(default_factory=list)
    index_path: Optional[str] = None
    files_considered: int = 0
    state: RunState = field(default_factory=RunState)

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "budget_exhausted": self.budget_exhausted,
            "canceled": self.canceled,
            "outputs": list(self.outputs),
            "index_path": self.index_path,
            "files_considered": self.files_considered,
        }
        data.update(self.state.summary())
        return data


def _own_output_patterns(output_path: str) -> List[str]:
    """Regexes matching page files and the index a paginated run would write."""
    stem, ext = os.path.splitext(os.path.basename(output_path))
    return [
        rf"(^|[\\/]){re.escape(stem)}_\d{{3}}{re.escape(ext)}$",
        rf"(^|[\\/]){re.escape(stem)}_index\.txt$",
    ]


def collect_candidates(config: CombineConfig) -> List[str]:
    base = config.resolved_base_dir

    exclude_files = list(config.exclude_files)
    exclude_patterns = list(config.exclude_patterns)
    output_path = config.output_path
    if output_path:
        name = os.path.basename(output_path)
        if name not in exclude_files:
            exclude_files.append(name)
        if config.policy is TruncationPolicy.PAGINATE_OUTPUT:
            exclude_patterns.extend(_own_output_patterns(output_path))

    collector = PathCollector(
        exclude_paths=normalize_exclude_paths(config.exclude_paths, base),
        exclude_files=exclude_files,
        exclude_patterns=exclude_patterns,
        extensions=config.extensions,
    )

    if config.file_list:
        paths = resolve_file_list(config.file_list, base, collector)
    else:
        source = config.source if os.path.isabs(config.source) else os.path.join(base, config.source)
        source = os.path.abspath(source)
        if not os.path.isdir(source):
            raise ConfigError(f"source: directory not found: {source}")
        paths = collector.collect(source, config.recursive)
        if collector.reparse_points:
            logger.info("Met %d directory link(s) while scanning", len(collector.reparse_points))

    paths = filter_candidates(
        paths,
        min_size=config.min_size,
        max_size=config.max_size,
        min_date=config.min_date,
        max_date=config.max_date,
        exclude_auto_generated=config.exclude_auto_generated,
    )
    return order_candidates(paths, config.order)


def _canceled(should_cancel: Optional[CancelCheck]) -> bool:
    return bool(should_cancel and should_cancel())


def run_combine(
    config: CombineConfig,
    should_cancel: Optional[CancelCheck] = None,
    stream: Optional[TextIO] = None,
) -> CombineResult:
    """
    Runs a complete combine. ``should_cancel`` is polled between files; a
    canceled run still closes its outputs cleanly. SinkError propagates.
    """
    config.validate()
    candidates = collect_candidates(config)
    logger.info("%d candidate file(s)", len(candidates))

    policy = config.policy
    if policy is TruncationPolicy.PAGINATE_OUTPUT and config.max_tokens_per_page <= 0:
        logger.warning("Pagination needs max_tokens_per_page > 0; using the partial policy instead")
        policy = TruncationPolicy.INCLUDE_PARTIAL
    elif policy is not TruncationPolicy.PAGINATE_OUTPUT and config.max_tokens_per_page > 0:
        logger.warning("max_tokens_per_page is only used with the paginate policy; ignored")

    result = CombineResult(files_considered=len(candidates))
    if policy is TruncationPolicy.PAGINATE_OUTPUT:
        _run_paginated(config, candidates, result, should_cancel, stream)
    else:
        _run_single(config, policy, candidates, result, should_cancel, stream)

    s = result.state
    logger.info(
        "Merged %d file(s), %d truncated, %d duplicate(s), %d error skip(s), %d budget skip(s), %d token(s)",
        s.files_merged, s.files_truncated, len(s.duplicates), len(s.error_skips), len(s.budget_skips), s.tokens_used,
    )
    return result


def _run_single(
    config: CombineConfig,
    policy: TruncationPolicy,
    candidates: List[str],
    result: CombineResult,
    should_cancel: Optional[CancelCheck],
    stream: Optional[TextIO],
) -> None:
    output_path = config.output_path
    sink = open_sink(output_path, stream)
    try:
        merger = FileMerger(
            sink,
            policy=policy,
            max_total_tokens=config.max_total_tokens,
            max_lines_per_file=config.max_lines_per_file,
            max_tokens_per_file=config.max_tokens_per_file,
            list_only=config.list_only,
            base_dir=config.resolved_base_dir,
            state=result.state,
        )
    except Exception:
        sink.close()
        raise

    with merger:
        for path in candidates:
            if _canceled(should_cancel):
                logger.warning("Run canceled before %s", merger.relative(path))
                result.canceled = True
                break
            if not merger.merge_file(path):
                break

    if output_path:
        result.outputs.append(output_path)
    result.budget_exhausted = result.state.budget_violated
    result.success = not result.canceled and not (
        policy is TruncationPolicy.EXCLUDE_COMPLETELY and result.state.budget_violated
    )


def _run_paginated(
    config: CombineConfig,
    candidates: List[str],
    result: CombineResult,
    should_cancel: Optional[CancelCheck],
    stream: Optional[TextIO],
) -> None:
    if config.max_total_tokens:
        logger.info("max_total_tokens is not applied in paginated mode")

    with PaginatedFileMerger(
        config.output_path,
        config.max_tokens_per_page,
        max_lines_per_file=config.max_lines_per_file,
        max_tokens_per_file=config.max_tokens_per_file,
        list_only=config.list_only,
        base_dir=config.resolved_base_dir,
        stream=stream,
        page_end_marker=config.page_end_marker,
        state=result.state,
    ) as merger:
        for path in candidates:
            if _canceled(should_cancel):
                logger.warning("Run canceled before %s", merger.relative(path))
                result.canceled = True
                break
            merger.merge_file(path)
        pages = merger.finalize_pages()

    result.outputs.extend(pages.pages)
    result.index_path = pages.index_path
    result.success = not result.canceled
