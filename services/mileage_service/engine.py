"""
Mileage Engine
==============
Every balance change on a ledger goes through here and appends exactly one
MileageTransaction in the same flush, so the ledger row and its log cannot
drift apart.

Conservation (checked by ``MileageLedger.is_conserved``):

    total_accrued == usable + expired + on_hold + spent

Concurrency: ledger rows are read ``FOR UPDATE`` where the backend supports
it and carry a ``version`` column (SQLAlchemy ``version_id_col``). A write
based on a stale read fails its compare-and-swap and surfaces as
``ConflictError``.

Expiry: every accrual credit carries its own ``expires_at``. Outflows
consume credits FIFO by expiry date, which gives both the amount currently
due (``due_for_expiry``) and the ledger's nearest horizon (``expires_at``).
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from shared.config import settings
from shared.config.database import utcnow
from shared.errors import (
    ConflictError,
    GoneError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerFrozenError,
    NotFoundError,
)
from shared.observability.metrics import (
    ledger_mileage_operations_total,
    ledger_mileage_points_total,
)

from .models import MileageLedger, MileageTransaction
from .repository import MileageRepository

logger = structlog.get_logger(__name__)

# sign of each transaction type's effect on usable_mileage
USABLE_SIGN = {
    "accrue": 1,
    "spend": -1,
    "expire": -1,
    "hold": -1,
    "release": 1,
    "reverse": -1,
}

# operations a frozen ledger refuses; system corrections still go through
FROZEN_BLOCKED = frozenset({"accrue", "spend", "hold"})

Credit = tuple[int, Optional[datetime]]


def remaining_credits(credits: Iterable[Credit], remaining: int) -> list[Credit]:
    """Credits still (partly) on the ledger, soonest expiry first.

    ``remaining`` is what is left of all credits (usable + on hold); the
    difference to the gross credited amount was consumed oldest-expiry first.
    Credits without an expiry sort last.
    """
    ordered = sorted(
        credits,
        key=lambda c: (c[1] is None, c[1] or datetime.min),
    )
    consumed = max(sum(amount for amount, _ in ordered) - remaining, 0)
    left = []
    for amount, expires_at in ordered:
        taken = min(amount, consumed)
        consumed -= taken
        if amount - taken > 0:
            left.append((amount - taken, expires_at))
    return left


def expiry_horizon(credits: Iterable[Credit], remaining: int) -> Optional[datetime]:
    for _, expires_at in remaining_credits(credits, remaining):
        if expires_at is not None:
            return expires_at
    return None


@contextmanager
def cas_guard(operation: str, **context):
    """Translate lost optimistic-lock / uniqueness races into ConflictError."""
    try:
        yield
    except (StaleDataError, IntegrityError) as exc:
        ledger_mileage_operations_total.labels(type=operation, outcome="conflict").inc()
        logger.warning("mileage_write_conflict", operation=operation, error=str(exc), **context)
        raise ConflictError(
            f"Concurrent update on the mileage ledger; retry the {operation}"
        ) from exc


class MileageEngine:
    def __init__(self, expiry_days: int = settings.MILEAGE_EXPIRY_DAYS):
        self.expiry_days = expiry_days

    # --- credits --------------------------------------------------------

    async def accrue(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        amount: int,
        reference_order_id: Optional[int] = None,
        reason: Optional[str] = None,
        evidence_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MileageTransaction:
        self._require_positive(amount, "accrue")
        now = now or utcnow()
        with cas_guard("accrue", customer_id=customer_id, seller_id=seller_id):
            ledger = await self._ledger_for(db, customer_id, seller_id, create=True)
            self._ensure_writable(ledger, "accrue")
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            expires_at = now + timedelta(days=self.expiry_days) if self.expiry_days > 0 else None
            credits.append((amount, expires_at))

            ledger.total_accrued += amount
            ledger.usable_mileage += amount
            if ledger.status == "expired":
                ledger.status = "active"

            return await self._append(
                db, ledger, credits, "accrue", amount, now,
                reference_order_id=reference_order_id,
                reason=reason,
                evidence_reference=evidence_reference,
                expires_at=expires_at,
            )

    async def open_ledger(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        initial_balance: int = 0,
        reason: Optional[str] = None,
    ) -> MileageLedger:
        if initial_balance < 0:
            raise InvalidAmountError("Initial balance must not be negative")
        with cas_guard("open", customer_id=customer_id, seller_id=seller_id):
            existing = await MileageRepository.find_ledger(db, customer_id, seller_id)
            if existing:
                raise ConflictError("A mileage ledger already exists for this customer and seller")
            ledger = await self._ledger_for(db, customer_id, seller_id, create=True)
        if initial_balance > 0:
            await self.accrue(
                db, customer_id, seller_id, initial_balance,
                reason=reason or "opening balance",
            )
        return ledger

    async def reverse(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        amount: int,
        reference_order_id: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MileageTransaction]:
        """Claw back previously accrued points (refund).

        Points already spent or expired cannot be recovered; only the usable
        part is reversed. Returns None when nothing could be reversed.
        """
        self._require_positive(amount, "reverse")
        now = now or utcnow()
        with cas_guard("reverse", customer_id=customer_id, seller_id=seller_id):
            ledger = await self._ledger_for(db, customer_id, seller_id)
            self._ensure_writable(ledger, "reverse")
            recoverable = min(amount, ledger.usable_mileage)
            if recoverable < amount:
                logger.warning(
                    "mileage_reversal_shortfall",
                    ledger_id=ledger.id,
                    requested=amount,
                    recovered=recoverable,
                    reference_order_id=reference_order_id,
                )
            if recoverable == 0:
                return None
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            ledger.total_accrued -= recoverable
            ledger.usable_mileage -= recoverable

            return await self._append(
                db, ledger, credits, "reverse", recoverable, now,
                reference_order_id=reference_order_id,
                reason=reason or "refund reversal",
            )

    # --- debits ---------------------------------------------------------

    async def spend(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        amount: int,
        reference_order_id: Optional[int] = None,
        reason: Optional[str] = None,
        evidence_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MileageTransaction:
        self._require_positive(amount, "spend")
        now = now or utcnow()
        with cas_guard("spend", customer_id=customer_id, seller_id=seller_id):
            ledger = await self._ledger_for(db, customer_id, seller_id)
            self._ensure_writable(ledger, "spend")
            self._ensure_usable(ledger, amount, "spend")
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            ledger.usable_mileage -= amount
            ledger.spent_mileage += amount

            return await self._append(
                db, ledger, credits, "spend", amount, now,
                reference_order_id=reference_order_id,
                reason=reason,
                evidence_reference=evidence_reference,
            )

    async def hold(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        amount: int,
        reference_order_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MileageTransaction:
        """Reserve usable points for a pending order."""
        self._require_positive(amount, "hold")
        now = now or utcnow()
        with cas_guard("hold", customer_id=customer_id, seller_id=seller_id):
            ledger = await self._ledger_for(db, customer_id, seller_id)
            self._ensure_writable(ledger, "hold")
            self._ensure_usable(ledger, amount, "hold")
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            ledger.usable_mileage -= amount
            ledger.on_hold_mileage += amount

            return await self._append(
                db, ledger, credits, "hold", amount, now,
                reference_order_id=reference_order_id,
            )

    async def release(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        amount: int,
        reference_order_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MileageTransaction:
        """Return held points to the usable balance."""
        self._require_positive(amount, "release")
        now = now or utcnow()
        with cas_guard("release", customer_id=customer_id, seller_id=seller_id):
            ledger = await self._ledger_for(db, customer_id, seller_id)
            self._ensure_writable(ledger, "release")
            if amount > ledger.on_hold_mileage:
                ledger_mileage_operations_total.labels(type="release", outcome="rejected").inc()
                raise InsufficientBalanceError("Release exceeds the held mileage")
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            ledger.on_hold_mileage -= amount
            ledger.usable_mileage += amount

            return await self._append(
                db, ledger, credits, "release", amount, now,
                reference_order_id=reference_order_id,
            )

    async def settle_hold(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        amount: int,
        reference_order_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MileageTransaction:
        """Turn a hold into a spend: a release and a spend in one unit of work."""
        now = now or utcnow()
        await self.release(db, customer_id, seller_id, amount, reference_order_id, now=now)
        with cas_guard("spend", customer_id=customer_id, seller_id=seller_id):
            ledger = await self._ledger_for(db, customer_id, seller_id)
            # bypasses the frozen check: the points were committed before any freeze
            self._ensure_usable(ledger, amount, "spend")
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            ledger.usable_mileage -= amount
            ledger.spent_mileage += amount

            return await self._append(
                db, ledger, credits, "spend", amount, now,
                reference_order_id=reference_order_id,
                reason="order payment",
            )

    # --- expiry ---------------------------------------------------------

    async def expire(
        self,
        db: AsyncSession,
        ledger_id: int,
        amount: int,
        now: Optional[datetime] = None,
        batch_id: Optional[str] = None,
    ) -> Optional[MileageTransaction]:
        """Move ``amount`` from usable to expired.

        With a ``batch_id`` the call is idempotent per ledger: a repeat
        returns the transaction recorded the first time. ``amount == 0`` is
        a no-op and returns None.
        """
        if amount < 0:
            raise InvalidAmountError("Expiry amount must not be negative")
        now = now or utcnow()
        with cas_guard("expire", ledger_id=ledger_id, batch_id=batch_id):
            if batch_id is not None:
                previous = await MileageRepository.find_expiry_batch(db, ledger_id, batch_id)
                if previous:
                    logger.info("mileage_expiry_replayed", ledger_id=ledger_id, batch_id=batch_id)
                    return previous

            ledger = await MileageRepository.get_ledger(db, ledger_id, for_update=True)
            if not ledger:
                raise NotFoundError("Mileage ledger not found")
            self._ensure_writable(ledger, "expire")
            if amount == 0:
                return None
            self._ensure_usable(ledger, amount, "expire")
            credits = await MileageRepository.accrual_credits(db, ledger.id)

            ledger.usable_mileage -= amount
            ledger.expired_mileage += amount
            if ledger.usable_mileage == 0 and ledger.on_hold_mileage == 0:
                ledger.status = "expired"

            return await self._append(
                db, ledger, credits, "expire", amount, now,
                batch_id=batch_id,
                reason="expiry",
            )

    async def due_for_expiry(
        self, db: AsyncSession, ledger: MileageLedger, now: datetime
    ) -> int:
        credits = await MileageRepository.accrual_credits(db, ledger.id)
        remaining = ledger.usable_mileage + ledger.on_hold_mileage
        due = sum(
            amount
            for amount, expires_at in remaining_credits(credits, remaining)
            if expires_at is not None and expires_at <= now
        )
        # held points are committed to an order and cannot expire
        return min(due, ledger.usable_mileage)

    # --- internals ------------------------------------------------------

    async def _ledger_for(
        self,
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        create: bool = False,
    ) -> MileageLedger:
        ledger = await MileageRepository.find_ledger(db, customer_id, seller_id, for_update=True)
        if ledger:
            return ledger
        if not create:
            raise NotFoundError("Mileage ledger not found")
        now = utcnow()
        ledger = MileageLedger(
            customer_id=customer_id,
            seller_id=seller_id,
            status="active",
            total_accrued=0,
            usable_mileage=0,
            expired_mileage=0,
            on_hold_mileage=0,
            spent_mileage=0,
            created_at=now,
            updated_at=now,
        )
        await MileageRepository.add_ledger(db, ledger)
        logger.info("mileage_ledger_opened", ledger_id=ledger.id, customer_id=customer_id, seller_id=seller_id)
        return ledger

    async def _append(
        self,
        db: AsyncSession,
        ledger: MileageLedger,
        credits: list[Credit],
        type: str,
        amount: int,
        now: datetime,
        **fields,
    ) -> MileageTransaction:
        ledger.expires_at = expiry_horizon(
            credits, ledger.usable_mileage + ledger.on_hold_mileage
        )
        ledger.updated_at = now
        if not ledger.is_conserved():
            # unreachable unless an operation above is wrong; never persist it
            raise RuntimeError(f"Mileage conservation violated on ledger {ledger.id}")

        transaction = MileageTransaction(
            mileage_ledger_id=ledger.id,
            type=type,
            amount=USABLE_SIGN[type] * amount,
            balance_after=ledger.usable_mileage,
            created_at=now,
            **fields,
        )
        await MileageRepository.add_transaction(db, transaction)

        ledger_mileage_operations_total.labels(type=type, outcome="applied").inc()
        ledger_mileage_points_total.labels(type=type).inc(amount)
        logger.info(
            "mileage_transaction_appended",
            ledger_id=ledger.id,
            type=type,
            amount=transaction.amount,
            usable=ledger.usable_mileage,
            reference_order_id=fields.get("reference_order_id"),
        )
        return transaction

    @staticmethod
    def _require_positive(amount: int, operation: str) -> None:
        if amount is None or amount <= 0:
            ledger_mileage_operations_total.labels(type=operation, outcome="rejected").inc()
            raise InvalidAmountError(f"Mileage {operation} amount must be positive")

    @staticmethod
    def _ensure_writable(ledger: MileageLedger, operation: str) -> None:
        if ledger.deleted_at is not None:
            ledger_mileage_operations_total.labels(type=operation, outcome="rejected").inc()
            raise GoneError("Mileage ledger has been deleted")
        if ledger.status == "frozen" and operation in FROZEN_BLOCKED:
            ledger_mileage_operations_total.labels(type=operation, outcome="rejected").inc()
            raise LedgerFrozenError("Mileage ledger is frozen")

    @staticmethod
    def _ensure_usable(ledger: MileageLedger, amount: int, operation: str) -> None:
        if amount > ledger.usable_mileage:
            ledger_mileage_operations_total.labels(type=operation, outcome="rejected").inc()
            raise InsufficientBalanceError(f"Insufficient usable mileage for {operation}")


mileage_engine = MileageEngine()
