from datetime import datetime, timedelta, timezone

from services.mileage_service.engine import MileageEngine
from services.mileage_service.repository import MileageRepository
from services.mileage_service.sweep import batch_id_for, run_expiry_sweep

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
AFTER_EXPIRY = T0 + timedelta(days=31)


class FailingEngine(MileageEngine):
    """Fails every expiry on one ledger."""

    def __init__(self, broken_ledger_id):
        super().__init__(expiry_days=30)
        self.broken_ledger_id = broken_ledger_id
        self.attempts = 0

    async def expire(self, db, ledger_id, amount, now=None, batch_id=None):
        if ledger_id == self.broken_ledger_id:
            self.attempts += 1
            raise RuntimeError("ledger store unavailable")
        return await super().expire(db, ledger_id, amount, now=now, batch_id=batch_id)


async def seed(db, engine):
    due = await engine.accrue(db, "cust-1", None, 100, now=T0)
    also_due = await engine.accrue(db, "cust-2", None, 40, now=T0)
    fresh = await engine.accrue(db, "cust-3", None, 10, now=T0 + timedelta(days=20))
    await db.commit()
    return due.mileage_ledger_id, also_due.mileage_ledger_id, fresh.mileage_ledger_id


def test_batch_id_is_per_day():
    assert batch_id_for(T0) == "expiry-2026-01-01"
    assert batch_id_for(T0 + timedelta(hours=23)) == batch_id_for(T0)


async def test_sweep_expires_due_ledgers_once(db, session_factory):
    engine = MileageEngine(expiry_days=30)
    due, also_due, fresh = await seed(db, engine)

    report = await run_expiry_sweep(session_factory, now=AFTER_EXPIRY, engine=engine)
    assert report.batch_id == batch_id_for(AFTER_EXPIRY)
    assert report.expired == {due: 100, also_due: 40}
    assert report.failed == {}

    # same day again: nothing left to do
    again = await run_expiry_sweep(session_factory, now=AFTER_EXPIRY, engine=engine)
    assert again.expired == {}

    async with session_factory() as session:
        ledger = await MileageRepository.get_ledger(session, due)
        untouched = await MileageRepository.get_ledger(session, fresh)
        expiries = await MileageRepository.list_transactions(session, due, type="expire")
    assert ledger.status == "expired"
    assert ledger.expired_mileage == 100
    assert ledger.is_conserved()
    assert untouched.usable_mileage == 10
    assert len(expiries) == 1


async def test_sweep_failure_on_one_ledger_does_not_abort_batch(db, session_factory):
    seeding = MileageEngine(expiry_days=30)
    due, also_due, _ = await seed(db, seeding)
    engine = FailingEngine(broken_ledger_id=due)

    report = await run_expiry_sweep(
        session_factory, now=AFTER_EXPIRY, engine=engine, max_attempts=3
    )

    assert engine.attempts == 3
    assert due in report.failed
    assert report.expired == {also_due: 40}
    async with session_factory() as session:
        broken = await MileageRepository.get_ledger(session, due)
    assert broken.usable_mileage == 100


async def test_sweep_skips_deleted_ledgers(db, session_factory):
    engine = MileageEngine(expiry_days=30)
    due, also_due, _ = await seed(db, engine)
    ledger = await MileageRepository.get_ledger(db, due)
    ledger.deleted_at = T0
    await db.commit()

    report = await run_expiry_sweep(session_factory, now=AFTER_EXPIRY, engine=engine)

    assert report.expired == {also_due: 40}
