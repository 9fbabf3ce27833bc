"""Credit Metering Service

Gates every paid PDF operation behind the credit ledger:
- Pre-flight balance check + debit, atomic per user (UserLedgerLock)
- Outcome recording with compensating refund on failure
- Idempotent refunds (one refund per original debit)
- Credit pack grants (one grant per purchase reference)
- Bypass accounts short-circuit to zero-credit audit entries

Unknown operations and insufficient funds are result variants
(MeteringResult), never exceptions. Only persistence faults raise.
"""

import logging
from typing import Optional, Union, Dict, Any

from models.ledger import (
    LedgerEntry,
    LedgerMetadata,
    LedgerStatus,
    MeteringOutcome,
    MeteringResult,
    UNLIMITED_BALANCE,
    get_credit_pack,
)
from services.bypass_allowlist import BypassAllowlist
from services.ledger_lock import UserLedgerLock
from services.ledger_store import LedgerStore, DuplicateEntry, EntryNotFound
from services.operation_catalog import OperationCatalog, normalize_action_key, normalize_quantity

logger = logging.getLogger(__name__)

PURCHASE_ACTION_KEY = "credit_purchase"

MetadataInput = Optional[Union[LedgerMetadata, Dict[str, Any]]]


def _build_metadata(extra: MetadataInput, **fields) -> LedgerMetadata:
    """Merge caller-supplied metadata with the fields the service owns."""
    if isinstance(extra, LedgerMetadata):
        base = extra.model_dump(exclude_none=True)
    else:
        base = dict(extra or {})
    base.update(fields)
    return LedgerMetadata(**base)


def _is_refundable(entry: LedgerEntry) -> bool:
    # Only debits that moved credits out of the account
    return entry.credits < 0 and entry.status in (LedgerStatus.SUCCESS, LedgerStatus.FAILED)


class CreditMeteringService:
    """Consumption and outcome-recording protocol over the ledger."""

    def __init__(
        self,
        catalog: OperationCatalog,
        ledger: LedgerStore,
        lock: UserLedgerLock,
        allowlist: Optional[BypassAllowlist] = None,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.lock = lock
        self.allowlist = allowlist or BypassAllowlist()

    def is_bypass(self, user_id: Optional[str], user_email: Optional[str] = None) -> bool:
        return self.allowlist.is_bypass(user_id, user_email)

    def estimate_cost(self, operation_id: str, quantity=1) -> Optional[int]:
        """Credits an operation would consume, or None if it is not in the catalog."""
        return self.catalog.cost(operation_id, quantity)

    async def get_balance(self, user_id: str, user_email: Optional[str] = None) -> int:
        if self.is_bypass(user_id, user_email):
            return UNLIMITED_BALANCE
        return await self.ledger.balance(user_id)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def reserve_and_consume(
        self,
        user_id: str,
        user_email: Optional[str],
        operation_id: str,
        quantity=1,
        metadata: MetadataInput = None,
        idempotency_key: Optional[str] = None,
    ) -> MeteringResult:
        """Charge for one accepted operation attempt.

        1. Bypass identity -> zero-credit `bypassed` entry
        2. Unknown operation -> UNKNOWN_OPERATION, nothing written
        3. Under the user's lock: replay an existing idempotency key, or
           check balance (INSUFFICIENT_CREDITS writes nothing) and append the debit
        """
        action_key = normalize_action_key(operation_id) or ""
        quantity = normalize_quantity(quantity)

        if self.is_bypass(user_id, user_email):
            return await self._record_bypass(user_id, action_key, quantity, metadata, idempotency_key)

        operation = self.catalog.get_operation(action_key)
        if operation is None:
            logger.warning(f"Credit reservation for unknown operation {operation_id!r} by user {user_id}")
            return MeteringResult(outcome=MeteringOutcome.UNKNOWN_OPERATION)

        cost = operation.credit_cost * quantity

        async with self.lock.hold(user_id):
            if idempotency_key:
                existing = await self.ledger.find_by_idempotency_key(user_id, idempotency_key)
                if existing:
                    return self._replay(existing, action_key, quantity)

            balance = await self.ledger.balance(user_id)
            if balance < cost:
                logger.warning(
                    f"Insufficient credits for user {user_id}. Has {balance}, needs {cost} for {action_key}"
                )
                return MeteringResult(
                    outcome=MeteringOutcome.INSUFFICIENT_CREDITS,
                    balance=balance,
                    required=cost,
                )

            entry = LedgerEntry(
                user_id=user_id,
                action_key=action_key,
                credits=-cost,
                status=LedgerStatus.SUCCESS,
                metadata=_build_metadata(metadata, quantity=quantity, base_cost=operation.credit_cost),
                idempotency_key=idempotency_key,
            )
            await self.ledger.append(entry)

        return MeteringResult(outcome=MeteringOutcome.CHARGED, entry=entry)

    async def record_outcome(
        self,
        user_id: str,
        user_email: Optional[str],
        action_key: str,
        success: bool = True,
        quantity=1,
        metadata: MetadataInput = None,
    ) -> MeteringResult:
        """Record an operation whose charge and outcome are known together.

        Failure writes a `failed` debit and a `refunded` credit linked by
        `refund_for`, so the attempt is audited but costs nothing.
        """
        action_key = normalize_action_key(action_key) or ""
        quantity = normalize_quantity(quantity)

        if self.is_bypass(user_id, user_email):
            return await self._record_bypass(user_id, action_key, quantity, metadata)

        operation = self.catalog.get_operation(action_key)
        if operation is None:
            logger.warning(f"Outcome recorded for unknown operation {action_key!r} by user {user_id}")
            return MeteringResult(outcome=MeteringOutcome.UNKNOWN_OPERATION)

        cost = operation.credit_cost * quantity
        entry_metadata = _build_metadata(metadata, quantity=quantity, base_cost=operation.credit_cost)

        async with self.lock.hold(user_id):
            if success:
                entry = await self.ledger.append(LedgerEntry(
                    user_id=user_id,
                    action_key=action_key,
                    credits=-cost,
                    status=LedgerStatus.SUCCESS,
                    metadata=entry_metadata,
                ))
                return MeteringResult(outcome=MeteringOutcome.CHARGED, entry=entry)

            failed = await self.ledger.append(LedgerEntry(
                user_id=user_id,
                action_key=action_key,
                credits=-cost,
                status=LedgerStatus.FAILED,
                metadata=entry_metadata,
            ))
            refund = await self.refund_locked(failed, reason="operation failed")

        return MeteringResult(outcome=MeteringOutcome.REFUNDED, entry=failed, refund=refund)

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    async def refund_entry(self, entry_id: str, reason: Optional[str] = None) -> LedgerEntry:
        """Credit back a debit. Idempotent per original entry id.

        Returns the refund entry (existing or new). Entries that moved no
        credits out of the account (bypassed, zero-cost, purchases, refunds)
        are returned unchanged.
        """
        original = await self.ledger.get_entry(entry_id)
        if original is None:
            raise EntryNotFound(f"Ledger entry {entry_id} not found")

        if not _is_refundable(original):
            return original

        async with self.lock.hold(original.user_id):
            return await self.refund_locked(original, reason)

    async def refund_locked(self, original: LedgerEntry, reason: Optional[str] = None) -> LedgerEntry:
        """refund_entry for a caller already holding `original.user_id`'s ledger lock."""
        if not _is_refundable(original):
            return original

        existing = await self.ledger.find_refund_for(original.id)
        if existing:
            return existing

        refund = LedgerEntry(
            user_id=original.user_id,
            action_key=original.action_key,
            credits=-original.credits,
            status=LedgerStatus.REFUNDED,
            metadata=original.metadata.model_copy(update={"refund_for": original.id, "reason": reason}),
        )
        try:
            return await self.ledger.append(refund)
        except DuplicateEntry:
            # Unique refund_for index: another writer got there first
            existing = await self.ledger.find_refund_for(original.id)
            if existing:
                return existing
            raise

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def grant_purchase(self, user_id: str, pack_id: str, purchase_reference: str) -> LedgerEntry:
        """Append the positive entry for a purchased credit pack. Idempotent per reference."""
        pack = get_credit_pack(pack_id)
        if pack is None:
            raise ValueError(f"Unknown credit pack: {pack_id}")
        if not purchase_reference:
            raise ValueError("purchase_reference is required")

        async with self.lock.hold(user_id):
            existing = await self.ledger.find_purchase(purchase_reference)
            if existing:
                logger.info(f"Credit purchase {purchase_reference} already granted as {existing.id}")
                return existing

            entry = LedgerEntry(
                user_id=user_id,
                action_key=PURCHASE_ACTION_KEY,
                credits=pack.credits,
                status=LedgerStatus.PURCHASED,
                metadata=LedgerMetadata(pack_id=pack.id, purchase_reference=purchase_reference),
            )
            try:
                await self.ledger.append(entry)
            except DuplicateEntry:
                existing = await self.ledger.find_purchase(purchase_reference)
                if existing:
                    return existing
                raise

        logger.info(f"Granted {pack.credits} credits ({pack.id}) to user {user_id}")
        return entry

    # ------------------------------------------------------------------

    def _replay(self, existing: LedgerEntry, action_key: str, quantity: int) -> MeteringResult:
        """Hand back the entry already written under an idempotency key.

        A key reused for a different operation or quantity is a client error,
        not a retry: nothing is charged and IDEMPOTENCY_MISMATCH is returned.
        """
        if existing.action_key != action_key or existing.metadata.quantity != quantity:
            logger.warning(
                f"Idempotency key {existing.idempotency_key} for user {existing.user_id} reused: "
                f"stored {existing.action_key} x{existing.metadata.quantity}, requested {action_key} x{quantity}"
            )
            return MeteringResult(outcome=MeteringOutcome.IDEMPOTENCY_MISMATCH, entry=existing)
        logger.info(f"Replayed reservation {existing.idempotency_key} for user {existing.user_id} -> {existing.id}")
        return MeteringResult(outcome=MeteringOutcome.REPLAYED, entry=existing)

    async def _record_bypass(
        self,
        user_id: str,
        action_key: str,
        quantity: int,
        metadata: MetadataInput,
        idempotency_key: Optional[str] = None,
    ) -> MeteringResult:
        if idempotency_key:
            existing = await self.ledger.find_by_idempotency_key(user_id, idempotency_key)
            if existing:
                return self._replay(existing, action_key, quantity)

        entry = LedgerEntry(
            user_id=user_id,
            action_key=action_key,
            credits=0,
            status=LedgerStatus.BYPASSED,
            metadata=_build_metadata(metadata, quantity=quantity, base_cost=0, internal_admin=True),
            idempotency_key=idempotency_key,
        )
        try:
            await self.ledger.append(entry)
        except DuplicateEntry:
            if idempotency_key:
                existing = await self.ledger.find_by_idempotency_key(user_id, idempotency_key)
                if existing:
                    return self._replay(existing, action_key, quantity)
            raise
        return MeteringResult(outcome=MeteringOutcome.BYPASSED, entry=entry)
