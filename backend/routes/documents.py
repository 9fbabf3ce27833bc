"""Document Operation Routes

Endpoints:
- POST /api/documents/{document_id}/execute - Meter and queue a PDF operation

The route owns HTTP concerns only; validation, ownership, metering and job
creation live in OperationGateway.
"""

from fastapi import APIRouter, HTTPException, Depends, Header, status
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import logging

from middleware import CurrentUser, require_auth, get_credit_services
from models.jobs import SubmitOutcome
from services.ledger_lock import ConcurrencyConflict
from services.ledger_store import PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["documents"])


class ExecuteRequest(BaseModel):
    operation_id: Optional[str] = Field(default=None, alias="operationId")
    storage_path: Optional[str] = Field(default=None, alias="storagePath")
    secondary_storage_path: Optional[str] = Field(default=None, alias="secondaryStoragePath")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "extra": "ignore"}


SUBMIT_ERROR_STATUS = {
    SubmitOutcome.UNKNOWN_OPERATION: status.HTTP_400_BAD_REQUEST,
    SubmitOutcome.MISSING_INPUT: status.HTTP_400_BAD_REQUEST,
    SubmitOutcome.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    SubmitOutcome.ROLLED_BACK: status.HTTP_409_CONFLICT,
    SubmitOutcome.IDEMPOTENCY_MISMATCH: status.HTTP_409_CONFLICT,
}


@router.post("/{document_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_operation(
    document_id: str,
    body: ExecuteRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user: CurrentUser = Depends(require_auth),
    services=Depends(get_credit_services),
):
    """Reserve credits for an operation and queue it for the executor."""
    if not body.operation_id:
        raise HTTPException(status_code=400, detail="operationId is required")

    try:
        result = await services.gateway.submit(
            user.user_id,
            user.email,
            document_id,
            body.operation_id,
            storage_path=body.storage_path,
            secondary_storage_path=body.secondary_storage_path,
            metadata=body.metadata,
            idempotency_key=(idempotency_key or "").strip() or None,
        )
    except ConcurrencyConflict as e:
        logger.warning(f"Execute {body.operation_id} for user {user.user_id}: {e.message}")
        raise HTTPException(status_code=409, detail="Credit ledger busy, retry the request")
    except PersistenceError as e:
        logger.error(f"Execute {body.operation_id} for user {user.user_id} failed: {e}")
        raise HTTPException(status_code=503, detail="Failed to queue operation")
    except Exception as e:
        logger.error(f"Execute {body.operation_id} for user {user.user_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to queue operation")

    if result.outcome == SubmitOutcome.INSUFFICIENT_CREDITS:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "Insufficient credits",
                "code": "INSUFFICIENT_CREDITS",
                "required": result.required,
                "balance": result.balance,
            },
        )
    if not result.accepted:
        raise HTTPException(status_code=SUBMIT_ERROR_STATUS[result.outcome], detail=result.detail)

    return {
        "success": True,
        "job_id": result.job.id,
        "status": result.job.status,
        "replayed": result.outcome == SubmitOutcome.REPLAYED,
    }
