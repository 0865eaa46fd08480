import logging
from typing import Optional
from rq import get_current_job
from assessment_engine.core.clock import utcnow
from assessment_engine.core.database import SessionLocal
from assessment_engine.services.lifecycle import expire_sweep

logger = logging.getLogger(__name__)

def expire_sessions_job(tenant_id: Optional[str] = None, assessment_id: Optional[str] = None, limit: Optional[int] = None):
    """Time out overdue sessions out of band; repeat runs are harmless."""
    job = get_current_job()
    if job:
        job.meta.update({"state": "running"}); job.save_meta()
    db = SessionLocal()
    try:
        expired = expire_sweep(db, utcnow(), assessment_id=assessment_id, tenant_id=tenant_id, limit=limit)
    except Exception:
        if job:
            job.meta.update({"state": "failed"}); job.save_meta()
        logger.exception("expiry sweep failed for tenant %s", tenant_id)
        raise
    finally:
        db.close()
    if job:
        job.meta.update({"state": "done", "expired": expired}); job.save_meta()
    return {"expired": expired}
