"""Executor Callback Routes

Called by the external PDF operation executor, authenticated with the shared
X-Executor-Token secret rather than a user JWT.

Endpoints:
- POST /api/executor/jobs/{job_id}/running - Job picked up
- POST /api/executor/jobs/{job_id}/outcome - Terminal outcome; a failure refunds the job's credits
"""

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from typing import Dict, Any
import logging

from middleware import require_executor_token, get_credit_services
from services.job_store import JobNotFound
from services.ledger_lock import ConcurrencyConflict
from services.ledger_store import PersistenceError, EntryNotFound

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/executor",
    tags=["executor"],
    dependencies=[Depends(require_executor_token)],
)


class JobOutcomeRequest(BaseModel):
    success: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("/jobs/{job_id}/running")
async def mark_job_running(job_id: str, services=Depends(get_credit_services)):
    try:
        job = await services.gateway.mark_running(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except PersistenceError as e:
        logger.error(f"Failed to mark job {job_id} running: {e}")
        raise HTTPException(status_code=503, detail="Failed to update job")
    return {"job_id": job.id, "status": job.status}


@router.post("/jobs/{job_id}/outcome")
async def report_job_outcome(
    job_id: str,
    body: JobOutcomeRequest,
    services=Depends(get_credit_services),
):
    """Record the terminal outcome. Safe to repeat; the first report wins."""
    try:
        entry = await services.gateway.report_outcome(job_id, body.success, body.metadata)
        job = await services.jobs.get(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except ConcurrencyConflict as e:
        logger.warning(f"Outcome for job {job_id}: {e.message}")
        raise HTTPException(status_code=409, detail="Credit ledger busy, retry the request")
    except (PersistenceError, EntryNotFound) as e:
        logger.error(f"Failed to settle job {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to record outcome")

    return {
        "job_id": job_id,
        "status": job.status if job else None,
        "ledger_entry": entry.model_dump(mode="json"),
    }
