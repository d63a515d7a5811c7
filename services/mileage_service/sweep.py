"""
Periodic expiry sweep.

Each due ledger is expired in its own session and transaction, so a failure
on one ledger is retried on its own and never aborts the rest of the batch.
The batch id is derived from the sweep date, which makes re-running a sweep
on the same day a no-op for ledgers it already handled.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import settings
from shared.config.database import utcnow
from shared.observability.metrics import (
    ledger_expiry_sweep_duration_seconds,
    ledger_expiry_sweep_ledgers_total,
)

from .engine import MileageEngine, mileage_engine
from .repository import MileageRepository

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    batch_id: str
    expired: dict[int, int] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


def batch_id_for(now: datetime) -> str:
    return f"expiry-{now.date().isoformat()}"


async def _expire_one(
    session_factory: async_sessionmaker[AsyncSession],
    engine: MileageEngine,
    ledger_id: int,
    now: datetime,
    batch_id: str,
) -> int:
    async with session_factory() as db:
        ledger = await MileageRepository.get_ledger(db, ledger_id, for_update=True)
        if ledger is None or ledger.deleted_at is not None:
            return 0
        due = await engine.due_for_expiry(db, ledger, now)
        if due == 0:
            return 0
        transaction = await engine.expire(db, ledger_id, due, now=now, batch_id=batch_id)
        await db.commit()
        return -transaction.amount if transaction else 0


async def run_expiry_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
    batch_id: Optional[str] = None,
    engine: MileageEngine = mileage_engine,
    max_attempts: int = settings.MILEAGE_SWEEP_MAX_ATTEMPTS,
) -> SweepReport:
    now = now or utcnow()
    report = SweepReport(batch_id=batch_id or batch_id_for(now))
    started = time.perf_counter()

    async with session_factory() as db:
        ledger_ids = await MileageRepository.due_ledger_ids(db, now)

    logger.info("expiry_sweep_started", batch_id=report.batch_id, due_ledgers=len(ledger_ids))

    for ledger_id in ledger_ids:
        for attempt in range(1, max_attempts + 1):
            try:
                expired = await _expire_one(session_factory, engine, ledger_id, now, report.batch_id)
            except Exception as exc:
                logger.warning(
                    "expiry_sweep_ledger_failed",
                    ledger_id=ledger_id,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt == max_attempts:
                    report.failed[ledger_id] = str(exc)
                    ledger_expiry_sweep_ledgers_total.labels(outcome="failed").inc()
                continue

            if expired:
                report.expired[ledger_id] = expired
                ledger_expiry_sweep_ledgers_total.labels(outcome="expired").inc()
            else:
                report.skipped.append(ledger_id)
                ledger_expiry_sweep_ledgers_total.labels(outcome="skipped").inc()
            break

    ledger_expiry_sweep_duration_seconds.observe(time.perf_counter() - started)
    logger.info(
        "expiry_sweep_completed",
        batch_id=report.batch_id,
        expired=len(report.expired),
        skipped=len(report.skipped),
        failed=len(report.failed),
    )
    return report


async def expiry_sweep_loop(
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: float,
) -> None:
    """Background task started by the application when an interval is configured."""
    logger.info("expiry_sweep_loop_started", interval_seconds=interval_seconds)
    while True:
        try:
            await run_expiry_sweep(session_factory)
        except Exception as exc:
            # the next tick retries; the loop itself must survive
            logger.error("expiry_sweep_loop_error", error=str(exc))
        await asyncio.sleep(interval_seconds)
