from __future__ import annotations
from typing import List, Optional, Literal, Dict, Any
from pydantic import BaseModel
import uuid
from datetime import datetime, timezone


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CombineRequest(BaseModel):
    source: Optional[str] = None  # relative to the service root, or absolute inside it
    recursive: bool = True
    extensions: Optional[List[str]] = None
    exclude_paths: Optional[List[str]] = None
    exclude_files: Optional[List[str]] = None
    exclude_patterns: Optional[List[str]] = None
    min_size: Optional[str] = "0"  # human size string
    max_size: Optional[str] = "0"
    exclude_auto_generated: bool = False
    order: Literal["discovery", "alphabetical", "size-asc", "size-desc", "newest", "oldest", "extension"] = "discovery"
    policy: Literal["exclude", "partial", "paginate"] = "partial"
    max_total_tokens: int = 0
    max_tokens_per_page: int = 0
    max_tokens_per_file: int = 0
    max_lines_per_file: int = 0
    list_only: bool = False
    page_end_marker: bool = True
    output_name: str = "CombinedFile.txt"


class Job(BaseModel):
    id: str
    # 'canceling' = cancel requested, runner has not reached the next file yet
    status: Literal["queued", "running", "succeeded", "failed", "canceling", "canceled"]
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    request: CombineRequest
    source_resolved: Optional[str] = None
    output_dir: Optional[str] = None
    outputs: List[str] = []
    index_path: Optional[str] = None
    stats: Dict[str, Any] = {}
    logs: List[str] = []
    error: Optional[str] = None

    @classmethod
    def create(cls, request: CombineRequest, source_resolved: Optional[str] = None) -> "Job":
        return cls(
            id=str(uuid.uuid4()),
            status="queued",
            created_at=utc_now(),
            request=request,
            source_resolved=source_resolved,
            logs=[],
            outputs=[],
        )

    @property
    def is_active(self) -> bool:
        return self.status in ("queued", "running", "canceling")
