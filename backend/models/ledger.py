"""Credit Ledger Models

Every credit movement is one immutable ledger entry:
- Negative credits = debit (operation consumption)
- Positive credits = refund or credit pack purchase
- Zero credits = bypassed (audit trail only)

The ledger is the only source of truth for balance: Balance(user) = sum(credits).
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


# Reported balance for bypass accounts (largest integer a JS client can hold exactly)
UNLIMITED_BALANCE = 2**53 - 1


class LedgerStatus(str, Enum):
    """Outcome recorded by a ledger entry"""
    SUCCESS = "success"        # Debit for an authorized operation
    FAILED = "failed"          # Debit for an attempt that failed (always paired with a refund)
    REFUNDED = "refunded"      # Compensating credit for a failed/abandoned debit
    BYPASSED = "bypassed"      # Zero-credit audit entry for allowlisted accounts
    PURCHASED = "purchased"    # Credit pack grant


class LedgerMetadata(BaseModel):
    """Structured attributes attached to a ledger entry.

    `refund_for` links a refund to the id of the entry it compensates.
    """
    quantity: int = Field(default=1, ge=1)
    base_cost: int = Field(default=0, ge=0)
    refund_for: Optional[str] = None
    job_id: Optional[str] = None
    document_id: Optional[str] = None
    pack_id: Optional[str] = None
    purchase_reference: Optional[str] = None
    internal_admin: bool = False
    reason: Optional[str] = Field(default=None, max_length=200)

    model_config = {"extra": "forbid"}


class LedgerEntry(BaseModel):
    """One signed credit movement. Never updated or deleted once written."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    action_key: str
    credits: int
    status: LedgerStatus
    metadata: LedgerMetadata = Field(default_factory=LedgerMetadata)

    # Client-supplied key for reconciling retried reservations
    idempotency_key: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True, "extra": "ignore", "use_enum_values": True}


class MeteringOutcome(str, Enum):
    """Result variants of a metering call"""
    CHARGED = "CHARGED"
    BYPASSED = "BYPASSED"
    REPLAYED = "REPLAYED"                      # Idempotency key already charged
    REFUNDED = "REFUNDED"                      # Failed attempt recorded together with its refund
    IDEMPOTENCY_MISMATCH = "IDEMPOTENCY_MISMATCH"  # Key already used for a different operation
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    UNKNOWN_OPERATION = "UNKNOWN_OPERATION"


class MeteringResult(BaseModel):
    """What happened to a reservation or outcome recording.

    `entry` is set whenever a ledger entry was written or replayed; for
    REFUNDED it is the failed debit and `refund` its compensating credit.
    `balance` and `required` are filled for INSUFFICIENT_CREDITS.
    """
    outcome: MeteringOutcome
    entry: Optional[LedgerEntry] = None
    refund: Optional[LedgerEntry] = None
    balance: Optional[int] = None
    required: Optional[int] = None

    @property
    def authorized(self) -> bool:
        return self.outcome in (
            MeteringOutcome.CHARGED,
            MeteringOutcome.BYPASSED,
            MeteringOutcome.REPLAYED,
        )


# ============================================================================
# Credit packs (purchased through the payment provider)
# ============================================================================

class CreditPack(BaseModel):
    """Credit pack available for purchase"""
    id: str
    label: str
    price_usd: int
    credits: int

    model_config = {"frozen": True}


CREDIT_PACKS = [
    CreditPack(id="pack_small", label="Small Pack", price_usd=5, credits=50),
    CreditPack(id="pack_medium", label="Medium Pack", price_usd=10, credits=120),
    CreditPack(id="pack_large", label="Large Pack", price_usd=20, credits=280),
]


def get_credit_pack(pack_id: str) -> Optional[CreditPack]:
    return next((p for p in CREDIT_PACKS if p.id == pack_id), None)
