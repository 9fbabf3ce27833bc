"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; each run_* returns a dict with "message" and "count".

Jobs are module-level functions without required arguments so the MongoDB
job store can persist them. Tests and scripts pass `services` explicitly.
"""
import logging
import os
from datetime import datetime, timezone, timedelta

from models.jobs import ACTIVE_JOB_STATUSES, OperationJobStatus
from models.ledger import LedgerStatus
from services.ledger_lock import ConcurrencyConflict
from services.ledger_store import PersistenceError, EntryNotFound

logger = logging.getLogger(__name__)

STALE_JOB_MINUTES = int(os.getenv("STALE_JOB_MINUTES", "30"))
# A debit older than this with no job row is an abandoned submission
ORPHAN_GRACE_MINUTES = 10
RECONCILE_LOOKBACK_HOURS = 24
EXECUTOR_TIMEOUT_ERROR = "executor timeout"


def _default_services():
    from database import database
    from services.service_factory import build_credit_services
    return build_credit_services(database.get_db())


async def run_stale_job_sweep(services=None, stale_minutes: int = None):
    """Fail jobs the executor never finished and refund their credits."""
    try:
        services = services or _default_services()
        stale_minutes = STALE_JOB_MINUTES if stale_minutes is None else stale_minutes
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
        stale_jobs = await services.jobs.list_stale(ACTIVE_JOB_STATUSES, updated_before=cutoff)

        failed = 0
        for job in stale_jobs:
            try:
                await services.gateway.report_outcome(job.id, False, {"error": EXECUTOR_TIMEOUT_ERROR})
                failed += 1
            except (ConcurrencyConflict, PersistenceError, EntryNotFound) as e:
                # Picked up again on the next sweep
                logger.warning(f"Stale job {job.id} not settled: {e}")

        if failed:
            logger.warning(f"STALE JOB ALERT: {failed} operation jobs timed out and were refunded")
        return {"message": f"Stale job sweep: {failed} jobs failed and refunded", "count": failed}
    except Exception as e:
        logger.error(f"Stale job sweep failed: {e}")
        raise


async def run_refund_reconciliation(services=None):
    """Repair refunds a crash left unwritten.

    - failed jobs whose debit has no refund yet
    - `failed` ledger debits without their compensating refund
    - gateway debits (metadata.job_id) whose job was never created
    """
    try:
        services = services or _default_services()
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(hours=RECONCILE_LOOKBACK_HOURS)
        grace_cutoff = now - timedelta(minutes=ORPHAN_GRACE_MINUTES)
        repaired = 0

        failed_jobs = await services.jobs.list_updated_since(OperationJobStatus.FAILED.value, window_start)
        for job in failed_jobs:
            if not job.ledger_entry_id or await services.ledger.find_refund_for(job.ledger_entry_id):
                continue
            try:
                await services.gateway.settle(job)
                repaired += 1
            except (ConcurrencyConflict, PersistenceError, EntryNotFound) as e:
                logger.warning(f"Refund for failed job {job.id} still pending: {e}")

        failed_debits = await services.ledger.list_debits_with_status(
            LedgerStatus.FAILED.value, window_start, now
        )
        charged_debits = await services.ledger.list_debits_with_status(
            LedgerStatus.SUCCESS.value, window_start, grace_cutoff
        )
        for entry in failed_debits + charged_debits:
            if entry.status == LedgerStatus.SUCCESS.value:
                if not entry.metadata.job_id or await services.jobs.find_by_ledger_entry(entry.id):
                    continue
                reason = "job not created"
            else:
                reason = "operation failed"
            if await services.ledger.find_refund_for(entry.id):
                continue
            try:
                await services.metering.refund_entry(entry.id, reason=reason)
                repaired += 1
                logger.warning(f"Reconciled missing refund for ledger entry {entry.id} ({reason})")
            except (ConcurrencyConflict, PersistenceError) as e:
                logger.warning(f"Refund for ledger entry {entry.id} still pending: {e}")

        return {"message": f"Refund reconciliation: {repaired} refunds written", "count": repaired}
    except Exception as e:
        logger.error(f"Refund reconciliation failed: {e}")
        raise
