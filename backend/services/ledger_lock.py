"""Per-user ledger lock.

Every mutation of one user's balance (debit, failure refund, purchase grant)
runs while holding that user's lease in `credit_locks`. The lease is taken
atomically with find_one_and_update on an expired-or-free lock document, so
it serializes callers across processes; different users never contend.

A lease that outlives its holder (crashed worker) expires after
CREDIT_LOCK_LEASE_SECONDS and is considered free.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from services.ledger_store import PersistenceError

logger = logging.getLogger(__name__)

LOCK_LEASE_SECONDS = int(os.getenv("CREDIT_LOCK_LEASE_SECONDS", "30"))
LOCK_TIMEOUT_SECONDS = float(os.getenv("CREDIT_LOCK_TIMEOUT_SECONDS", "5"))
LOCK_POLL_SECONDS = 0.025


class ConcurrencyConflict(Exception):
    """The user's ledger lock could not be acquired in time. Safe to retry."""
    def __init__(self, user_id: str, waited_seconds: float):
        self.user_id = user_id
        self.waited_seconds = waited_seconds
        self.message = f"Ledger for user {user_id} is busy (waited {waited_seconds:.2f}s)"
        super().__init__(self.message)


def _lock_owner() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex[:12]}"


class UserLedgerLock:
    """Lease lock keyed by user_id."""

    def __init__(
        self,
        db,
        lease_seconds: int = LOCK_LEASE_SECONDS,
        timeout_seconds: float = LOCK_TIMEOUT_SECONDS,
        poll_seconds: float = LOCK_POLL_SECONDS,
    ):
        self.db = db
        self.lease_seconds = lease_seconds
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds

    async def try_acquire(self, user_id: str) -> Optional[str]:
        """Atomically take the lease. Returns the owner token, or None if held elsewhere."""
        now = datetime.now(timezone.utc)
        owner = _lock_owner()
        try:
            result = await self.db.credit_locks.find_one_and_update(
                {
                    "user_id": user_id,
                    "$or": [
                        {"locked_until": None},
                        {"locked_until": {"$lt": now}},
                    ],
                },
                {"$set": {
                    "locked_until": now + timedelta(seconds=self.lease_seconds),
                    "lock_owner": owner,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if result is not None:
                return owner

            # First reservation for this user: create the free lock document
            try:
                await self.db.credit_locks.update_one(
                    {"user_id": user_id},
                    {"$setOnInsert": {"user_id": user_id, "locked_until": None, "lock_owner": None}},
                    upsert=True,
                )
            except DuplicateKeyError:
                pass  # Created concurrently
        except PyMongoError as e:
            logger.error(f"Ledger lock acquire failed for user {user_id}: {e}")
            raise PersistenceError("Failed to acquire ledger lock") from e
        return None

    async def release(self, user_id: str, owner: str) -> None:
        """Free the lease if we still own it."""
        try:
            await self.db.credit_locks.update_one(
                {"user_id": user_id, "lock_owner": owner},
                {"$set": {"locked_until": None, "lock_owner": None}},
            )
        except PyMongoError as e:
            # Lease expires on its own; the next caller waits at most LOCK_LEASE_SECONDS
            logger.error(f"Ledger lock release failed for user {user_id}: {e}")

    @asynccontextmanager
    async def hold(self, user_id: str):
        """Serialize the enclosed block against every other holder for this user."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.timeout_seconds
        while True:
            owner = await self.try_acquire(user_id)
            if owner is not None:
                break
            if loop.time() >= deadline:
                waited = loop.time() - started
                logger.warning(f"Ledger lock timeout for user {user_id} after {waited:.2f}s")
                raise ConcurrencyConflict(user_id, waited)
            await asyncio.sleep(self.poll_seconds)

        try:
            yield
        finally:
            await self.release(user_id, owner)
