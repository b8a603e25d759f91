import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .models import Job, utc_now

logger = logging.getLogger(__name__)

STORAGE_DIR_NAME = ".combinefiles-service"


class JobStore:
    """Jobs persisted as one JSON list; per-job logs as plain text files."""

    def __init__(self, output_dir: Path):
        self.storage_dir = output_dir / STORAGE_DIR_NAME
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_file = self.storage_dir / "jobs.json"
        self.logs_dir = self.storage_dir / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        self._jobs_cache: Dict[str, Job] = {}
        self._load()

    def _load(self):
        with self._lock:
            if not self.jobs_file.exists():
                return
            try:
                data = json.loads(self.jobs_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Cannot load jobs from %s: %s", self.jobs_file, e)
                return
            for j in data:
                try:
                    job = Job(**j)
                except ValidationError as e:
                    logger.warning("Dropping malformed job record: %s", e)
                    continue
                # A job that was active when the service stopped will never finish.
                if job.is_active:
                    job.status = "failed"
                    job.error = "Service restarted while the job was active"
                self._jobs_cache[job.id] = job

    def _save_jobs(self):
        # Must be called under lock
        tmp_file = self.jobs_file.with_suffix(".tmp")
        data = [j.model_dump() for j in self._jobs_cache.values()]
        tmp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_file.replace(self.jobs_file)

    def add_job(self, job: Job):
        with self._lock:
            self._jobs_cache[job.id] = job
            self._save_jobs()

    def update_job(self, job: Job):
        with self._lock:
            self._jobs_cache[job.id] = job
            self._save_jobs()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs_cache.get(job_id)

    def get_all_jobs(self) -> List[Job]:
        with self._lock:
            return sorted(self._jobs_cache.values(), key=lambda x: x.created_at, reverse=True)

    def start_job(self, job_id: str) -> Optional[Job]:
        """Moves a queued job to running; a job with a pending cancel keeps its status."""
        with self._lock:
            job = self._jobs_cache.get(job_id)
            if job and job.status == "queued":
                job.status = "running"
                job.started_at = utc_now()
                self._save_jobs()
            return job

    def request_cancel(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs_cache.get(job_id)
            if job and job.status in ("queued", "running"):
                job.status = "canceling"
                self._save_jobs()
            return job

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self.get_job(job_id)
        return bool(job and job.status in ("canceling", "canceled"))

    def append_log_line(self, job_id: str, line: str):
        with self._lock:
            p = self.logs_dir / f"{job_id}.log"
            with p.open("a", encoding="utf-8", errors="replace") as f:
                f.write(line + "\n")

    def read_log_lines(self, job_id: str) -> List[str]:
        with self._lock:
            p = self.logs_dir / f"{job_id}.log"
            try:
                return p.read_text(encoding="utf-8", errors="replace").splitlines()
            except FileNotFoundError:
                return []
