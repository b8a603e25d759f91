from fastapi import FastAPI, HTTPException, Query, Depends
from typing import List, Optional
from pathlib import Path
import logging

from .. import __version__
from .models import CombineRequest, Job
from .jobstore import JobStore
from .runner import JobRunner
from .auth import get_security_config, verify_token, resolve_source_dir, validate_output_name

logger = logging.getLogger(__name__)

app = FastAPI(title="combinefiles", version=__version__)


# Global State
class ServiceState:
    root: Optional[Path] = None
    output_dir: Optional[Path] = None
    job_store: Optional[JobStore] = None
    runner: Optional[JobRunner] = None


state = ServiceState()


def init_service(root: Path, token: Optional[str] = None, output_dir: Optional[Path] = None, max_workers: int = 1):
    """
    Wires store, runner and security for one service instance. ``root`` is
    the only tree jobs may read from; outputs default to ``<root>/combined``.
    """
    root = root.expanduser().resolve()
    out = (output_dir or root / "combined").expanduser().resolve()
    out.mkdir(parents=True, exist_ok=True)

    if state.runner is not None:
        state.runner.shutdown(wait=False)

    state.root = root
    state.output_dir = out
    state.job_store = JobStore(out)
    state.runner = JobRunner(state.job_store, out, max_workers=max_workers)

    sec = get_security_config()
    sec.reset()
    sec.set_token(token)
    sec.add_allowed_root(root)
    logger.info("Service root %s, outputs in %s", root, out)


def _require_state() -> ServiceState:
    if state.job_store is None or state.runner is None or state.root is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return state


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "version": __version__,
        "root": str(state.root) if state.root else None,
        "output_dir": str(state.output_dir) if state.output_dir else None,
        "auth_enabled": bool(get_security_config().token),
        "running_jobs": state.runner.running_jobs() if state.runner else 0,
    }


@app.post("/api/jobs", response_model=Job, dependencies=[Depends(verify_token)])
def create_job(request: CombineRequest):
    st = _require_state()
    source = resolve_source_dir(st.root, request.source)
    request.output_name = validate_output_name(request.output_name)

    job = Job.create(request, source_resolved=str(source))
    st.job_store.add_job(job)
    st.runner.submit_job(job.id)
    logger.info("Queued job %s for %s", job.id, source)
    return job


@app.get("/api/jobs", response_model=List[Job], dependencies=[Depends(verify_token)])
def get_jobs(status: Optional[str] = None, limit: int = Query(20, ge=1, le=500)):
    jobs = _require_state().job_store.get_all_jobs()
    if status:
        jobs = [j for j in jobs if j.status == status]
    return jobs[:limit]


@app.get("/api/jobs/{job_id}", response_model=Job, dependencies=[Depends(verify_token)])
def get_job(job_id: str):
    job = _require_state().job_store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post("/api/jobs/{job_id}/cancel", dependencies=[Depends(verify_token)])
def cancel_job(job_id: str):
    store = _require_state().job_store
    job = store.request_cancel(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    if job.status in ["succeeded", "failed", "canceled"]:
        return {"status": job.status, "message": "Job already finished"}
    return {"status": job.status}


@app.get("/api/jobs/{job_id}/logs", dependencies=[Depends(verify_token)])
def get_job_logs(job_id: str, offset: int = Query(0, ge=0)):
    store = _require_state().job_store
    if not store.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    lines = store.read_log_lines(job_id)
    return {"job_id": job_id, "offset": offset, "next_offset": len(lines), "lines": lines[offset:]}
