"""
Ledger side effects of payment transitions.

The payment status change is committed first. Each effect then runs in its
own session and transaction; a failure is written to the
``pending_ledger_effects`` outbox and retried by ``retry_pending_effects``.
Payment status is never rolled back because of a ledger failure.

Every effect is idempotent, keyed on markers committed together with the
ledger change:

    accrue        payment.mileage_accrued > 0, or the payment is no longer succeeded
    reverse       payment.mileage_reversed > 0
    settle_hold   order.mileage_state != "held"
    release_hold  order.mileage_state != "held"
"""
import asyncio
from typing import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import settings
from shared.config.database import unit_of_work, utcnow
from shared.errors import NotFoundError
from shared.observability.metrics import ledger_effect_retries_total, ledger_pending_effects
from services.mileage_service.engine import MileageEngine, mileage_engine
from services.mileage_service.policy import AccrualPolicy, default_policy
from services.order_service.repository import OrderRepository

from .models import PendingLedgerEffect
from .repository import PaymentRepository

logger = structlog.get_logger(__name__)

EFFECTS = ("accrue", "reverse", "settle_hold", "release_hold")


async def run_effect(
    db: AsyncSession,
    payment_id: int,
    effect: str,
    engine: MileageEngine = mileage_engine,
    policy: AccrualPolicy = default_policy,
) -> None:
    """Apply one effect and commit it. Repeats are no-ops."""
    if effect not in EFFECTS:
        raise ValueError(f"Unknown ledger effect: {effect}")

    async with unit_of_work(db):
        payment = await PaymentRepository.get_payment(db, payment_id, for_update=True)
        if payment is None:
            raise NotFoundError("Payment not found")
        order = await OrderRepository.get_order(db, payment.order_id, for_update=True)
        if order is None:
            raise NotFoundError("Order not found")

        if effect == "accrue":
            if payment.status != "succeeded" or payment.mileage_accrued > 0:
                return
            points = policy(order, payment.amount)
            if points <= 0:
                return
            await engine.accrue(
                db, order.customer_id, None, points,
                reference_order_id=order.id,
                reason=f"payment {payment.id}",
            )
            payment.mileage_accrued = points

        elif effect == "reverse":
            if payment.mileage_accrued == 0 or payment.mileage_reversed > 0:
                return
            transaction = await engine.reverse(
                db, order.customer_id, None, payment.mileage_accrued,
                reference_order_id=order.id,
                reason=f"refund of payment {payment.id}",
            )
            if transaction is not None:
                payment.mileage_reversed = -transaction.amount

        else:
            if order.mileage_state != "held":
                return
            if effect == "settle_hold":
                await engine.settle_hold(
                    db, order.customer_id, order.mileage_seller_id, order.mileage_used,
                    reference_order_id=order.id,
                )
                order.mileage_state = "spent"
            else:
                await engine.release(
                    db, order.customer_id, order.mileage_seller_id, order.mileage_used,
                    reference_order_id=order.id,
                )
                order.mileage_state = "released"
            order.updated_at = utcnow()

        await db.flush()

    logger.info("ledger_effect_applied", payment_id=payment_id, effect=effect)


async def apply_effects(
    session_factory: async_sessionmaker[AsyncSession],
    payment_id: int,
    effects: Iterable[str],
) -> list[str]:
    """Run effects after a committed transition. Returns the effects that were deferred."""
    deferred = []
    for effect in effects:
        try:
            async with session_factory() as db:
                await run_effect(db, payment_id, effect)
        except Exception as exc:
            logger.warning(
                "ledger_effect_deferred",
                payment_id=payment_id,
                effect=effect,
                error=str(exc),
            )
            async with session_factory() as db:
                async with unit_of_work(db):
                    await PaymentRepository.add_pending_effect(
                        db,
                        PendingLedgerEffect(
                            payment_id=payment_id,
                            effect=effect,
                            attempts=1,
                            last_error=str(exc)[:500],
                            created_at=utcnow(),
                        ),
                    )
            ledger_pending_effects.inc()
            deferred.append(effect)
    return deferred


async def retry_pending_effects(
    session_factory: async_sessionmaker[AsyncSession],
    max_attempts: int = settings.LEDGER_EFFECT_MAX_ATTEMPTS,
) -> dict[str, int]:
    """One pass over the outbox. Each row is retried in its own session."""
    summary = {"applied": 0, "failed": 0}

    async with session_factory() as db:
        effect_ids = await PaymentRepository.due_effect_ids(db, max_attempts)

    for effect_id in effect_ids:
        async with session_factory() as db:
            pending = await PaymentRepository.get_pending_effect(db, effect_id)
            payment_id, effect = pending.payment_id, pending.effect

        try:
            async with session_factory() as db:
                await run_effect(db, payment_id, effect)
        except Exception as exc:
            summary["failed"] += 1
            ledger_effect_retries_total.labels(effect=effect, outcome="failed").inc()
            logger.warning(
                "ledger_effect_retry_failed",
                pending_effect_id=effect_id,
                payment_id=payment_id,
                effect=effect,
                error=str(exc),
            )
            async with session_factory() as db:
                async with unit_of_work(db):
                    pending = await PaymentRepository.get_pending_effect(db, effect_id)
                    pending.attempts += 1
                    pending.last_error = str(exc)[:500]
            continue

        async with session_factory() as db:
            async with unit_of_work(db):
                pending = await PaymentRepository.get_pending_effect(db, effect_id)
                pending.attempts += 1
                pending.processed_at = utcnow()
        summary["applied"] += 1
        ledger_effect_retries_total.labels(effect=effect, outcome="applied").inc()

    async with session_factory() as db:
        ledger_pending_effects.set(await PaymentRepository.count_unprocessed(db))

    if effect_ids:
        logger.info("ledger_effect_retry_pass", **summary)
    return summary


async def ledger_effect_retry_loop(
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: float,
) -> None:
    logger.info("ledger_effect_retry_loop_started", interval_seconds=interval_seconds)
    while True:
        try:
            await retry_pending_effects(session_factory)
        except Exception as exc:
            logger.error("ledger_effect_retry_loop_error", error=str(exc))
        await asyncio.sleep(interval_seconds)
