"""Explicit wiring of the credit services.

Built once in the server lifespan (and directly by tests and scripts) and
handed to routes through `app.state.credit_services`.
"""
from dataclasses import dataclass
from typing import Optional

from services.bypass_allowlist import BypassAllowlist
from services.credit_metering import CreditMeteringService
from services.job_store import JobStore
from services.ledger_lock import UserLedgerLock
from services.ledger_store import LedgerStore
from services.operation_catalog import OperationCatalog
from services.operation_gateway import OperationGateway


@dataclass(frozen=True)
class CreditServices:
    catalog: OperationCatalog
    ledger: LedgerStore
    metering: CreditMeteringService
    jobs: JobStore
    gateway: OperationGateway


def build_credit_services(
    db,
    catalog: Optional[OperationCatalog] = None,
    allowlist: Optional[BypassAllowlist] = None,
    lock: Optional[UserLedgerLock] = None,
) -> CreditServices:
    catalog = catalog or OperationCatalog.from_config()
    allowlist = allowlist if allowlist is not None else BypassAllowlist.from_env()
    ledger = LedgerStore(db)
    metering = CreditMeteringService(
        catalog=catalog,
        ledger=ledger,
        lock=lock or UserLedgerLock(db),
        allowlist=allowlist,
    )
    jobs = JobStore(db)
    gateway = OperationGateway(catalog=catalog, metering=metering, jobs=jobs)
    return CreditServices(catalog=catalog, ledger=ledger, metering=metering, jobs=jobs, gateway=gateway)
