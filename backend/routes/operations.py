"""Operation Catalog & Job Routes

Endpoints:
- GET /api/operations - Operation catalog with credit costs
- GET /api/operations/{operation_id}/estimate - Credits an operation would consume
- GET /api/operations/jobs - Caller's operation jobs
- GET /api/operations/jobs/{job_id} - One of the caller's jobs
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional
import logging

from middleware import CurrentUser, require_auth, get_credit_services
from models.jobs import OperationJobStatus
from services.job_store import JobNotFound
from services.operation_catalog import MAX_OPERATION_QUANTITY, normalize_action_key, normalize_quantity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/operations", tags=["operations"])


@router.get("")
async def list_operations(services=Depends(get_credit_services)):
    """Public operation catalog."""
    operations = services.catalog.list_operations()
    return {
        "operations": [op.model_dump(mode="json") for op in operations],
        "total": len(operations),
    }


@router.get("/jobs")
async def list_jobs(
    status: Optional[OperationJobStatus] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_auth),
    services=Depends(get_credit_services),
):
    try:
        jobs = await services.gateway.list_jobs(user.user_id, status=status, limit=limit, offset=offset)
        return {
            "jobs": [job.model_dump(mode="json") for job in jobs],
            "limit": limit,
            "offset": offset,
        }
    except Exception as e:
        logger.error(f"Failed to list jobs for user {user.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to list jobs")


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    user: CurrentUser = Depends(require_auth),
    services=Depends(get_credit_services),
):
    try:
        job = await services.gateway.get_job(user.user_id, job_id)
        return job.model_dump(mode="json")
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except Exception as e:
        logger.error(f"Failed to get job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get job")


@router.get("/{operation_id}/estimate")
async def estimate_cost(
    operation_id: str,
    quantity: int = Query(1, le=MAX_OPERATION_QUANTITY),
    services=Depends(get_credit_services),
):
    """Credits `quantity` units of the operation would consume. Reads nothing per user."""
    credits = services.metering.estimate_cost(operation_id, quantity)
    if credits is None:
        raise HTTPException(status_code=404, detail="Operation not found")
    return {
        "operation_id": normalize_action_key(operation_id),
        "quantity": normalize_quantity(quantity),
        "credits": credits,
    }
