"""Operation job persistence (`operation_jobs` collection).

Status transitions are conditional updates on the current status, so two
executor callbacks for the same job can never both win.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from models.jobs import OperationJob, OperationJobStatus
from services.ledger_store import PersistenceError

logger = logging.getLogger(__name__)


class JobNotFound(Exception):
    """No operation job with the given id (for this caller)."""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Operation job {job_id} not found")


class JobStore:
    def __init__(self, db):
        self.db = db

    async def create(self, job: OperationJob) -> OperationJob:
        try:
            await self.db.operation_jobs.insert_one(job.model_dump())
        except PyMongoError as e:
            logger.error(f"Failed to persist operation job {job.id} for user {job.user_id}: {e}")
            raise PersistenceError("Failed to create operation job") from e
        logger.info(f"Queued operation job {job.id}: user={job.user_id} operation={job.operation_id}")
        return job

    async def get(self, job_id: str) -> Optional[OperationJob]:
        return await self._find_one({"id": job_id})

    async def get_for_user(self, user_id: str, job_id: str) -> Optional[OperationJob]:
        return await self._find_one({"id": job_id, "user_id": user_id})

    async def find_by_ledger_entry(self, entry_id: str) -> Optional[OperationJob]:
        return await self._find_one({"ledger_entry_id": entry_id})

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[OperationJobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[OperationJob]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status:
            query["status"] = OperationJobStatus(status).value
        try:
            cursor = self.db.operation_jobs.find(query, {"_id": 0}).sort(
                "created_at", DESCENDING
            ).skip(offset).limit(limit)
            docs = await cursor.to_list(limit)
        except PyMongoError as e:
            logger.error(f"Failed to list operation jobs for user {user_id}: {e}")
            raise PersistenceError("Failed to list operation jobs") from e
        return [OperationJob(**doc) for doc in docs]

    async def list_stale(self, statuses: Iterable[str], updated_before: datetime, limit: int = 100) -> List[OperationJob]:
        """Non-terminal jobs nobody has touched since `updated_before`, oldest first."""
        try:
            cursor = self.db.operation_jobs.find(
                {"status": {"$in": list(statuses)}, "updated_at": {"$lt": updated_before}},
                {"_id": 0},
            ).sort("updated_at", ASCENDING).limit(limit)
            docs = await cursor.to_list(limit)
        except PyMongoError as e:
            logger.error(f"Failed to scan stale operation jobs: {e}")
            raise PersistenceError("Failed to scan operation jobs") from e
        return [OperationJob(**doc) for doc in docs]

    async def list_updated_since(self, status: str, since: datetime, limit: int = 100) -> List[OperationJob]:
        try:
            cursor = self.db.operation_jobs.find(
                {"status": status, "updated_at": {"$gte": since}},
                {"_id": 0},
            ).sort("updated_at", ASCENDING).limit(limit)
            docs = await cursor.to_list(limit)
        except PyMongoError as e:
            logger.error(f"Failed to scan {status} operation jobs: {e}")
            raise PersistenceError("Failed to scan operation jobs") from e
        return [OperationJob(**doc) for doc in docs]

    async def transition(
        self,
        job_id: str,
        from_statuses: Iterable[str],
        to_status: OperationJobStatus,
        **fields,
    ) -> Optional[OperationJob]:
        """Move a job to `to_status` only if it is currently in one of `from_statuses`.

        Returns the updated job, or None if the job is missing or was already moved.
        """
        now = datetime.now(timezone.utc)
        update = {"status": OperationJobStatus(to_status).value, "updated_at": now, **fields}
        try:
            doc = await self.db.operation_jobs.find_one_and_update(
                {"id": job_id, "status": {"$in": list(from_statuses)}},
                {"$set": update},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Failed to move operation job {job_id} to {to_status}: {e}")
            raise PersistenceError("Failed to update operation job") from e
        return OperationJob(**doc) if doc else None

    async def _find_one(self, query: dict) -> Optional[OperationJob]:
        try:
            doc = await self.db.operation_jobs.find_one(query, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Operation job lookup failed ({query}): {e}")
            raise PersistenceError("Failed to read operation job") from e
        return OperationJob(**doc) if doc else None
