"""Credit Routes

Endpoints:
- GET /api/credits/balance - Current balance (sum of the caller's ledger)
- GET /api/credits/history - Ledger entries, most recent first
- GET /api/credits/packs - Credit packs available for purchase
- POST /api/credits/outcome - Record a client-side operation with its outcome
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import logging

from middleware import CurrentUser, require_auth, get_credit_services
from models.ledger import CREDIT_PACKS, MeteringOutcome
from services.ledger_lock import ConcurrencyConflict
from services.ledger_store import PersistenceError
from services.operation_catalog import MAX_OPERATION_QUANTITY

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credits", tags=["credits"])


class OutcomeRequest(BaseModel):
    action_key: str = Field(alias="actionKey")
    success: bool = True
    quantity: int = Field(default=1, le=MAX_OPERATION_QUANTITY)
    document_id: Optional[str] = Field(default=None, alias="documentId")

    model_config = {"populate_by_name": True, "extra": "ignore"}


@router.get("/balance")
async def get_balance(
    user: CurrentUser = Depends(require_auth),
    services=Depends(get_credit_services),
):
    try:
        balance = await services.metering.get_balance(user.user_id, user.email)
    except PersistenceError as e:
        logger.error(f"Failed to get balance for user {user.user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to get balance")
    return {
        "credit_balance": balance,
        "unlimited": services.metering.is_bypass(user.user_id, user.email),
    }


@router.get("/history")
async def get_history(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_auth),
    services=Depends(get_credit_services),
):
    """Ledger entries for the caller, newest first."""
    try:
        entries = await services.ledger.list_entries(user.user_id, limit=limit, offset=offset)
    except PersistenceError as e:
        logger.error(f"Failed to get credit history for user {user.user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to get history")
    return {
        "entries": [entry.model_dump(mode="json") for entry in entries],
        "limit": limit,
        "offset": offset,
    }


@router.get("/packs")
async def get_packs():
    return {"packs": [pack.model_dump() for pack in CREDIT_PACKS]}


@router.post("/outcome")
async def record_outcome(
    body: OutcomeRequest,
    user: CurrentUser = Depends(require_auth),
    services=Depends(get_credit_services),
):
    """Charge for an operation the client ran itself. A failure is recorded and refunded."""
    metadata = {"document_id": body.document_id} if body.document_id else None
    try:
        result = await services.metering.record_outcome(
            user.user_id,
            user.email,
            body.action_key,
            success=body.success,
            quantity=body.quantity,
            metadata=metadata,
        )
    except ConcurrencyConflict as e:
        logger.warning(f"Outcome {body.action_key} for user {user.user_id}: {e.message}")
        raise HTTPException(status_code=409, detail="Credit ledger busy, retry the request")
    except PersistenceError as e:
        logger.error(f"Failed to record outcome {body.action_key} for user {user.user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to record outcome")

    if result.outcome == MeteringOutcome.UNKNOWN_OPERATION:
        raise HTTPException(status_code=400, detail="Invalid actionKey")

    response: Dict[str, Any] = {
        "outcome": result.outcome.value,
        "entry": result.entry.model_dump(mode="json") if result.entry else None,
    }
    if result.refund:
        response["refund"] = result.refund.model_dump(mode="json")
    return response
