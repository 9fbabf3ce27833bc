"""
Scheduled jobs: stale job sweep and refund reconciliation.
"""
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from job_runner import run_stale_job_sweep, run_refund_reconciliation, EXECUTOR_TIMEOUT_ERROR
from models.jobs import OperationJobStatus
from models.ledger import LedgerEntry, LedgerMetadata, LedgerStatus
from services.ledger_store import PersistenceError
from fakes import seed_credits

USER = "sweep-user"
OWN_PATH = f"uploads/users/{USER}/scan.pdf"


async def _queue(services):
    result = await services.gateway.submit(USER, None, "doc-1", "watermark", storage_path=OWN_PATH)
    return result.job


def _age_job(fake_db, job_id, minutes):
    doc = next(d for d in fake_db.operation_jobs.docs if d["id"] == job_id)
    doc["updated_at"] = datetime.now(timezone.utc) - timedelta(minutes=minutes)


def _age_entry(fake_db, entry_id, minutes):
    doc = next(d for d in fake_db.credit_ledger.docs if d["id"] == entry_id)
    doc["created_at"] = datetime.now(timezone.utc) - timedelta(minutes=minutes)


class TestStaleJobSweep:

    @pytest.mark.asyncio
    async def test_stale_jobs_fail_and_are_refunded(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        stale = await _queue(services)
        fresh = await _queue(services)
        _age_job(fake_db, stale.id, 45)

        result = await run_stale_job_sweep(services)

        assert result["count"] == 1
        swept = await services.jobs.get(stale.id)
        assert swept.status == OperationJobStatus.FAILED.value
        assert swept.error_message == EXECUTOR_TIMEOUT_ERROR
        assert (await services.jobs.get(fresh.id)).status == OperationJobStatus.QUEUED.value
        # One refund back, the fresh job still holds its credit
        assert await services.ledger.balance(USER) == 4

    @pytest.mark.asyncio
    async def test_running_jobs_are_swept_too(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        job = await _queue(services)
        await services.gateway.mark_running(job.id)
        _age_job(fake_db, job.id, 45)

        assert (await run_stale_job_sweep(services))["count"] == 1
        assert await services.ledger.balance(USER) == 5

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        job = await _queue(services)
        _age_job(fake_db, job.id, 45)

        await run_stale_job_sweep(services)
        second = await run_stale_job_sweep(services)

        assert second["count"] == 0
        assert await services.ledger.balance(USER) == 5

    @pytest.mark.asyncio
    async def test_one_failing_job_does_not_stop_the_sweep(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        first = await _queue(services)
        second = await _queue(services)
        _age_job(fake_db, first.id, 45)
        _age_job(fake_db, second.id, 40)

        real_report = services.gateway.report_outcome
        calls = []

        async def flaky(job_id, success, metadata=None):
            calls.append(job_id)
            if job_id == first.id:
                raise PersistenceError("Failed to update operation job")
            return await real_report(job_id, success, metadata)

        services.gateway.report_outcome = flaky
        result = await run_stale_job_sweep(services)

        assert calls == [first.id, second.id]
        assert result["count"] == 1

    @pytest.mark.asyncio
    async def test_scan_failure_propagates(self, services):
        services.jobs.list_stale = AsyncMock(side_effect=PersistenceError("Failed to scan operation jobs"))
        with pytest.raises(PersistenceError):
            await run_stale_job_sweep(services)

    @pytest.mark.asyncio
    async def test_default_services_come_from_the_app_database(self, fake_db):
        with patch("database.database.get_db", return_value=fake_db):
            result = await run_stale_job_sweep()
        assert result["count"] == 0


class TestRefundReconciliation:

    @pytest.mark.asyncio
    async def test_failed_job_without_refund_is_repaired(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        job = await _queue(services)
        # Crash between the status change and the refund
        await services.jobs.transition(job.id, ("queued",), OperationJobStatus.FAILED)

        result = await run_refund_reconciliation(services)

        assert result["count"] == 1
        assert await services.ledger.find_refund_for(job.ledger_entry_id) is not None
        assert await services.ledger.balance(USER) == 5

    @pytest.mark.asyncio
    async def test_orphaned_gateway_debit_is_refunded_after_grace(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        charged = await services.metering.reserve_and_consume(
            USER, None, "watermark", 1, metadata={"job_id": "never-created", "document_id": "doc-1"}
        )

        # Inside the grace period the job may still be on its way
        assert (await run_refund_reconciliation(services))["count"] == 0

        _age_entry(fake_db, charged.entry.id, 30)
        assert (await run_refund_reconciliation(services))["count"] == 1
        assert await services.ledger.balance(USER) == 5

    @pytest.mark.asyncio
    async def test_failed_debit_without_refund_is_repaired(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        failed = await services.ledger.append(LedgerEntry(
            user_id=USER,
            action_key="watermark",
            credits=-1,
            status=LedgerStatus.FAILED,
            metadata=LedgerMetadata(quantity=1, base_cost=1),
        ))

        assert (await run_refund_reconciliation(services))["count"] == 1
        refund = await services.ledger.find_refund_for(failed.id)
        assert refund.credits == 1

    @pytest.mark.asyncio
    async def test_healthy_ledger_is_left_alone(self, services, fake_db):
        seed_credits(fake_db, USER, 5)
        job = await _queue(services)
        await services.gateway.report_outcome(job.id, False)
        await services.metering.record_outcome(USER, None, "watermark", success=True)
        for doc in fake_db.credit_ledger.docs:
            doc["created_at"] = datetime.now(timezone.utc) - timedelta(minutes=30)

        assert (await run_refund_reconciliation(services))["count"] == 0
        assert await services.ledger.balance(USER) == 4
