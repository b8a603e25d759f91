import concurrent.futures
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict

from ..core.config import CombineConfig
from ..core.pipeline import run_combine
from .jobstore import JobStore
from .models import CombineRequest, utc_now

logger = logging.getLogger(__name__)

CORE_LOGGER_NAME = "combinefiles.core"
LOG_TAIL_LINES = 200


class _JobLogHandler(logging.Handler):
    """Forwards core log records emitted on one worker thread into a job log."""

    def __init__(self, write: Callable[[str], None], thread_id: int):
        super().__init__(level=logging.INFO)
        self._write = write
        self._thread_id = thread_id
        self.setFormatter(logging.Formatter("%(levelname)s %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        if record.thread != self._thread_id:
            return
        try:
            self._write(self.format(record))
        except OSError:
            self.handleError(record)


def build_config(req: CombineRequest, source: Path, output_file: Path, output_dir: Path) -> CombineConfig:
    exclude_paths = list(req.exclude_paths or [])
    # Never ingest the service's own outputs when they live under the source.
    exclude_paths.append(str(output_dir))
    return CombineConfig(
        source=str(source),
        recursive=req.recursive,
        extensions=req.extensions or [],
        exclude_paths=exclude_paths,
        exclude_files=req.exclude_files or [],
        exclude_patterns=req.exclude_patterns or [],
        min_size=req.min_size or 0,
        max_size=req.max_size or 0,
        exclude_auto_generated=req.exclude_auto_generated,
        order=req.order,
        policy=req.policy,
        max_total_tokens=req.max_total_tokens,
        max_tokens_per_page=req.max_tokens_per_page,
        max_tokens_per_file=req.max_tokens_per_file,
        max_lines_per_file=req.max_lines_per_file,
        list_only=req.list_only,
        output_file=str(output_file),
        page_end_marker=req.page_end_marker,
        base_dir=str(source),
    ).validate()


class JobRunner:
    def __init__(self, job_store: JobStore, output_dir: Path, max_workers: int = 1):
        self.job_store = job_store
        self.output_dir = output_dir
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
        self.futures: Dict[str, concurrent.futures.Future] = {}
        # Job logs need INFO records from the core; set once, shared by all workers.
        core_logger = logging.getLogger(CORE_LOGGER_NAME)
        if core_logger.getEffectiveLevel() > logging.INFO:
            core_logger.setLevel(logging.INFO)

    def submit_job(self, job_id: str):
        job = self.job_store.get_job(job_id)
        if not job or job.status != "queued":
            return

        future = self.executor.submit(self._run_job, job_id)
        self.futures[job_id] = future
        future.add_done_callback(lambda _f: self.futures.pop(job_id, None))

    def running_jobs(self) -> int:
        return len(self.futures)

    def _finish(self, job, status: str):
        job.status = status
        job.finished_at = utc_now()
        self.job_store.update_job(job)

    def _run_job(self, job_id: str):
        job = self.job_store.start_job(job_id)
        if not job:
            return
        if job.status in ("canceled", "canceling"):
            self._finish(job, "canceled")
            return
        if job.status != "running":
            return

        def log(msg: str):
            ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
            line = f"[{ts}] {msg}"
            self.job_store.append_log_line(job.id, line)
            job.logs.append(line)
            if len(job.logs) > LOG_TAIL_LINES:
                job.logs = job.logs[-LOG_TAIL_LINES:]

        core_logger = logging.getLogger(CORE_LOGGER_NAME)
        handler = _JobLogHandler(log, threading.get_ident())
        core_logger.addHandler(handler)

        try:
            req = job.request
            if not job.source_resolved:
                raise ValueError("Internal: source_resolved missing on job")
            source = Path(job.source_resolved)
            log(f"Source: {source}")

            job_dir = self.output_dir / job.id
            job_dir.mkdir(parents=True, exist_ok=True)
            job.output_dir = str(job_dir)
            config = build_config(req, source, job_dir / req.output_name, self.output_dir)
            log(f"Policy: {config.policy.value}")

            result = run_combine(config, should_cancel=lambda: self.job_store.is_cancel_requested(job_id))

            job.outputs = list(result.outputs)
            job.index_path = result.index_path
            job.stats = result.to_dict()

            if result.canceled:
                log("Job canceled by user between files.")
                self._finish(job, "canceled")
                return

            if result.budget_exhausted:
                log("Token budget exhausted.")
            log(f"Job completed: {len(job.outputs)} output file(s).")
            self._finish(job, "succeeded")

        except Exception as e:
            job.error = str(e)
            log(f"Error: {e}")
            logger.exception("Job %s failed", job_id)
            self._finish(job, "failed")
        finally:
            core_logger.removeHandler(handler)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)
