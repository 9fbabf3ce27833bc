"""Credit Ledger Store

Append-only persistence of signed credit entries in the `credit_ledger`
collection. Entries are written with a single insert each and never updated
or deleted; balance is always computed from the entries.
"""
import logging
from datetime import datetime
from typing import List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from models.ledger import LedgerEntry

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class PersistenceError(Exception):
    """Durable write or read against the ledger failed. Retryable."""
    pass


class DuplicateEntry(PersistenceError):
    """A unique ledger key (idempotency key, refund link, purchase reference) already exists."""
    pass


class EntryNotFound(Exception):
    """No ledger entry with the given id."""
    pass


class LedgerStore:
    """Ledger persistence handle."""

    def __init__(self, db):
        self.db = db

    @property
    def _collection(self):
        return self.db.credit_ledger

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Persist one entry. Raises PersistenceError if the write did not complete."""
        try:
            await self._collection.insert_one(entry.model_dump(exclude_none=True))
        except DuplicateKeyError as e:
            raise DuplicateEntry(f"Ledger entry conflicts with an existing entry: {e}") from e
        except PyMongoError as e:
            logger.error(f"Ledger append failed for user {entry.user_id} ({entry.action_key}): {e}")
            raise PersistenceError("Failed to write ledger entry") from e

        logger.info(
            f"Ledger entry {entry.id}: user={entry.user_id} action={entry.action_key} "
            f"credits={entry.credits} status={entry.status}"
        )
        return entry

    async def balance(self, user_id: str) -> int:
        """Sum of credits over every entry the user owns."""
        try:
            result = await self._collection.aggregate([
                {"$match": {"user_id": user_id}},
                {"$group": {"_id": None, "total": {"$sum": "$credits"}}},
            ]).to_list(1)
        except PyMongoError as e:
            logger.error(f"Ledger balance read failed for user {user_id}: {e}")
            raise PersistenceError("Failed to read ledger balance") from e
        return int(result[0]["total"]) if result else 0

    async def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        """Most-recent-first page of the user's entries."""
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        try:
            cursor = self._collection.find(
                {"user_id": user_id},
                {"_id": 0},
            ).sort("created_at", DESCENDING).skip(offset).limit(limit)
            docs = await cursor.to_list(limit)
        except PyMongoError as e:
            logger.error(f"Ledger listing failed for user {user_id}: {e}")
            raise PersistenceError("Failed to list ledger entries") from e
        return [LedgerEntry(**doc) for doc in docs]

    async def list_debits_with_status(
        self,
        status: str,
        created_after: datetime,
        created_before: datetime,
        limit: int = 500,
    ) -> List[LedgerEntry]:
        """Debits of one status written inside a time window, oldest first (reconciliation scans)."""
        try:
            cursor = self._collection.find(
                {
                    "status": status,
                    "credits": {"$lt": 0},
                    "created_at": {"$gte": created_after, "$lt": created_before},
                },
                {"_id": 0},
            ).sort("created_at", ASCENDING).limit(limit)
            docs = await cursor.to_list(limit)
        except PyMongoError as e:
            logger.error(f"Ledger scan for {status} debits failed: {e}")
            raise PersistenceError("Failed to scan ledger") from e
        return [LedgerEntry(**doc) for doc in docs]

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        return await self._find_one({"id": entry_id})

    async def find_refund_for(self, entry_id: str) -> Optional[LedgerEntry]:
        return await self._find_one({"metadata.refund_for": entry_id})

    async def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        return await self._find_one({"user_id": user_id, "idempotency_key": idempotency_key})

    async def find_purchase(self, purchase_reference: str) -> Optional[LedgerEntry]:
        return await self._find_one({"metadata.purchase_reference": purchase_reference})

    async def _find_one(self, query: dict) -> Optional[LedgerEntry]:
        try:
            doc = await self._collection.find_one(query, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Ledger lookup failed ({query}): {e}")
            raise PersistenceError("Failed to read ledger") from e
        return LedgerEntry(**doc) if doc else None
