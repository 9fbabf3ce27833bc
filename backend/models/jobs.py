"""Operation Job Models

A job is created by the execution gateway after credits were reserved and is
driven to a terminal status by the external operation executor.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


class OperationJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (OperationJobStatus.QUEUED.value, OperationJobStatus.RUNNING.value)


class OperationJob(BaseModel):
    """Queued PDF operation awaiting the executor."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    document_id: str
    operation_id: str
    storage_path: Optional[str] = None
    secondary_storage_path: Optional[str] = None
    status: OperationJobStatus = OperationJobStatus.QUEUED

    # Debit that paid for this job
    ledger_entry_id: Optional[str] = None
    credits_charged: int = 0

    metadata: Dict[str, Any] = Field(default_factory=dict)
    outcome_metadata: Dict[str, Any] = Field(default_factory=dict)  # Reported by the executor
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    model_config = {"extra": "ignore", "use_enum_values": True}


class SubmitOutcome(str, Enum):
    """Result variants of an operation submission"""
    QUEUED = "QUEUED"
    REPLAYED = "REPLAYED"                      # Same idempotency key already queued a job
    UNKNOWN_OPERATION = "UNKNOWN_OPERATION"
    MISSING_INPUT = "MISSING_INPUT"
    FORBIDDEN = "FORBIDDEN"
    ROLLED_BACK = "ROLLED_BACK"                # Earlier attempt with this idempotency key was compensated
    IDEMPOTENCY_MISMATCH = "IDEMPOTENCY_MISMATCH"  # Key already used for a different request
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class SubmitResult(BaseModel):
    outcome: SubmitOutcome
    job: Optional[OperationJob] = None
    detail: Optional[str] = None
    balance: Optional[int] = None
    required: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.outcome in (SubmitOutcome.QUEUED, SubmitOutcome.REPLAYED)
