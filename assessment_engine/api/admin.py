from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
from sqlalchemy.orm import Session
from assessment_engine.core.database import get_db
from assessment_engine.core.auth import require_min_role, TokenData
from assessment_engine.core.clock import Clock, get_clock
from assessment_engine.services.lifecycle import expire_sweep

router = APIRouter()

class SweepRequest(BaseModel):
    assessment_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    enqueue: bool = False

@router.post("/expire-sessions")
def expire_sessions(payload: SweepRequest, user: TokenData = Depends(require_min_role("admin")),
                    db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    if payload.enqueue:
        # imported lazily so the API does not need Redis unless a job is queued
        from assessment_engine.jobs.queue import queue
        from assessment_engine.jobs.expiry_job import expire_sessions_job
        job = queue.enqueue(expire_sessions_job, user.tenant, payload.assessment_id, payload.limit, job_timeout=600)
        return {"job_id": job.get_id(), "queued": True}
    expired = expire_sweep(db, clock(), assessment_id=payload.assessment_id, tenant_id=user.tenant, limit=payload.limit)
    return {"expired": expired, "queued": False}
