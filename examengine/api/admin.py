from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from rq.job import Job
from rq.exceptions import NoSuchJobError
from examengine.core.auth import require_roles
from examengine.jobs.queue import enqueue_sweep, redis

router = APIRouter()

class SweepRequest(BaseModel):
    limit: int = Field(default=500, ge=1, le=10000)

class SweepQueued(BaseModel):
    job_id: str

class SweepStatus(BaseModel):
    state: str
    checked: int
    finalized: int
    result: Optional[dict] = None

@router.post("/sessions/sweep", response_model=SweepQueued, status_code=202, dependencies=[Depends(require_roles("admin"))])
def start_sweep(payload: SweepRequest):
    job = enqueue_sweep(payload.limit)
    return SweepQueued(job_id=job.get_id())

@router.get("/sessions/sweep/status", response_model=SweepStatus, dependencies=[Depends(require_roles("admin"))])
def sweep_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError:
        raise HTTPException(404, "Job not found")
    meta = job.meta or {}
    state = meta.get("state") or job.get_status()
    return SweepStatus(
        state=str(state),
        checked=int(meta.get("checked") or 0),
        finalized=int(meta.get("finalized") or 0),
        result=job.result if state == "done" else None,
    )
