"""Operation Execution Gateway

Entry point for paid PDF operations:
1. Validate the request against the catalog (operation exists, inputs present)
2. Check every referenced storage path is inside the caller's namespace
3. Reserve credits through the metering service
4. Queue an OperationJob for the external executor

The executor reports the terminal outcome back through report_outcome; a
failed job has its debit refunded (idempotent, under the user's ledger lock).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models.jobs import (
    OperationJob,
    OperationJobStatus,
    SubmitOutcome,
    SubmitResult,
    ACTIVE_JOB_STATUSES,
)
from models.ledger import LedgerEntry, MeteringOutcome
from services.credit_metering import CreditMeteringService
from services.job_store import JobStore, JobNotFound
from services.ledger_store import PersistenceError
from services.operation_catalog import OperationCatalog
from services.storage_paths import owns_path

logger = logging.getLogger(__name__)


class OperationGateway:
    """Validates, meters and queues operation requests."""

    def __init__(self, catalog: OperationCatalog, metering: CreditMeteringService, jobs: JobStore):
        self.catalog = catalog
        self.metering = metering
        self.jobs = jobs

    async def submit(
        self,
        user_id: str,
        user_email: Optional[str],
        document_id: str,
        operation_id: str,
        storage_path: Optional[str] = None,
        secondary_storage_path: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubmitResult:
        operation = self.catalog.get_operation(operation_id)
        if operation is None:
            return SubmitResult(outcome=SubmitOutcome.UNKNOWN_OPERATION, detail="Invalid operationId")

        if operation.requires_upload and not storage_path:
            return SubmitResult(outcome=SubmitOutcome.MISSING_INPUT, detail="storagePath is required")

        if operation.requires_second_file and not secondary_storage_path:
            return SubmitResult(outcome=SubmitOutcome.MISSING_INPUT, detail="secondaryStoragePath is required")

        for label, path in (("storagePath", storage_path), ("secondaryStoragePath", secondary_storage_path)):
            if path and not owns_path(user_id, path):
                logger.warning(f"User {user_id} referenced a foreign {label}: {path!r}")
                return SubmitResult(outcome=SubmitOutcome.FORBIDDEN, detail=f"{label} does not belong to user")

        job = OperationJob(
            user_id=user_id,
            document_id=document_id,
            operation_id=operation.id,
            storage_path=storage_path or None,
            secondary_storage_path=secondary_storage_path or None,
            metadata=dict(metadata or {}),
        )

        charge = await self.metering.reserve_and_consume(
            user_id,
            user_email,
            operation.id,
            quantity=1,
            metadata={"job_id": job.id, "document_id": document_id},
            idempotency_key=idempotency_key,
        )

        if charge.outcome == MeteringOutcome.INSUFFICIENT_CREDITS:
            return SubmitResult(
                outcome=SubmitOutcome.INSUFFICIENT_CREDITS,
                detail="Insufficient credits",
                balance=charge.balance,
                required=charge.required,
            )
        if charge.outcome == MeteringOutcome.UNKNOWN_OPERATION:
            return SubmitResult(outcome=SubmitOutcome.UNKNOWN_OPERATION, detail="Invalid operationId")

        entry = charge.entry
        replayed = charge.outcome == MeteringOutcome.REPLAYED
        if charge.outcome == MeteringOutcome.IDEMPOTENCY_MISMATCH or (
            replayed and entry.metadata.document_id != document_id
        ):
            return SubmitResult(
                outcome=SubmitOutcome.IDEMPOTENCY_MISMATCH,
                detail="Idempotency-Key was already used for a different request",
            )

        # Debit-to-job link and its compensation run under the user's ledger lock
        async with self.metering.lock.hold(user_id):
            existing = await self.jobs.find_by_ledger_entry(entry.id)
            if existing:
                outcome = SubmitOutcome.REPLAYED if replayed else SubmitOutcome.QUEUED
                return SubmitResult(outcome=outcome, job=existing)

            if replayed:
                if await self.metering.ledger.find_refund_for(entry.id):
                    return SubmitResult(
                        outcome=SubmitOutcome.ROLLED_BACK,
                        detail="Previous attempt with this Idempotency-Key was rolled back; retry with a new key",
                    )
                # Debit landed on the earlier attempt but its job did not: queue it now under the same id
                if entry.metadata.job_id:
                    job = job.model_copy(update={"id": entry.metadata.job_id})

            job = job.model_copy(update={
                "ledger_entry_id": entry.id,
                "credits_charged": -entry.credits,
            })

            try:
                await self.jobs.create(job)
            except PersistenceError:
                existing = await self.jobs.find_by_ledger_entry(entry.id)
                if existing:
                    logger.warning(f"Job for debit {entry.id} already queued as {existing.id}")
                    return SubmitResult(outcome=SubmitOutcome.QUEUED, job=existing)
                logger.error(f"Job {job.id} not persisted after debit {entry.id}; compensating")
                await self.metering.refund_locked(entry, reason="job not created")
                raise

        return SubmitResult(outcome=SubmitOutcome.QUEUED, job=job)

    async def mark_running(self, job_id: str) -> OperationJob:
        """Executor picked the job up."""
        job = await self.jobs.transition(
            job_id,
            (OperationJobStatus.QUEUED.value,),
            OperationJobStatus.RUNNING,
        )
        if job:
            return job
        current = await self.jobs.get(job_id)
        if current is None:
            raise JobNotFound(job_id)
        return current

    async def report_outcome(
        self,
        job_id: str,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Record the executor's terminal outcome for a job.

        Success returns the job's debit. Failure returns the refund that
        compensates it. Reporting again for a finished job changes nothing and
        returns the same entry.
        """
        metadata = dict(metadata or {})
        now = datetime.now(timezone.utc)
        fields: Dict[str, Any] = {"completed_at": now, "outcome_metadata": metadata}
        if not success:
            fields["error_message"] = str(metadata.get("error") or "operation failed")[:500]

        target = OperationJobStatus.SUCCEEDED if success else OperationJobStatus.FAILED
        job = await self.jobs.transition(job_id, ACTIVE_JOB_STATUSES, target, **fields)
        if job is None:
            job = await self.jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status != target.value:
                logger.warning(
                    f"Outcome {target.value} for job {job_id} ignored; already {job.status}"
                )
        else:
            logger.info(f"Job {job_id} finished: {job.status}")

        return await self.settle(job)

    async def settle(self, job: OperationJob) -> LedgerEntry:
        """Ledger side of a terminal job: refund a failed job's debit (idempotent)."""
        if not job.ledger_entry_id:
            raise PersistenceError(f"Job {job.id} has no ledger entry")
        if job.status == OperationJobStatus.FAILED.value:
            return await self.metering.refund_entry(job.ledger_entry_id, reason="operation failed")
        entry = await self.metering.ledger.get_entry(job.ledger_entry_id)
        if entry is None:
            raise PersistenceError(f"Ledger entry {job.ledger_entry_id} for job {job.id} is missing")
        return entry

    async def get_job(self, user_id: str, job_id: str) -> OperationJob:
        job = await self.jobs.get_for_user(user_id, job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(
        self,
        user_id: str,
        status: Optional[OperationJobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ):
        return await self.jobs.list_for_user(user_id, status=status, limit=limit, offset=offset)
