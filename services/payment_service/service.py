from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from shared.config.database import unit_of_work
from shared.errors import ConflictError, LockedStateError, NotFoundError, ValidationError
from shared.security.dependencies import Actor, ensure_owner
from services.order_service.repository import OrderRepository

from . import state_machine
from .ledger_effects import apply_effects
from .models import Payment
from .repository import PaymentRepository
from .schemas import PaymentCreate, PaymentUpdate

logger = structlog.get_logger(__name__)


@contextmanager
def payment_write_guard(payment_id: Optional[int] = None):
    try:
        yield
    except StaleDataError as exc:
        logger.warning("payment_write_conflict", payment_id=payment_id, error=str(exc))
        raise ConflictError("Concurrent update on the payment; retry the request") from exc


def ledger_effects_for(payment: Payment, order, siblings: list[Payment]) -> list[str]:
    """Effects owed after ``payment`` reached its current status."""
    effects = []
    if payment.status == "succeeded":
        if order.mileage_eligible:
            effects.append("accrue")
        if order.mileage_state == "held" and order.status == "paid":
            effects.append("settle_hold")
    elif payment.status == "failed":
        still_open = [
            p for p in siblings
            if p.id != payment.id and p.status in ("pending", "succeeded")
        ]
        if order.mileage_state == "held" and not still_open:
            effects.append("release_hold")
    elif payment.status == "refunded":
        effects.append("reverse")
    return effects


class PaymentService:
    @staticmethod
    async def create_payment(db: AsyncSession, actor: Actor, data: PaymentCreate) -> Payment:
        async with unit_of_work(db):
            order = await OrderRepository.get_order(db, data.order_id, for_update=True)
            if not order:
                raise NotFoundError("Order not found")
            ensure_owner(actor, order.customer_id)
            if order.status != "pending":
                raise LockedStateError(f"Order is {order.status}; no new payments accepted")
            payment = state_machine.new_payment(
                order,
                data.payment_method,
                data.amount,
                data.currency,
                external_reference=data.external_reference,
            )
            await PaymentRepository.add_payment(db, payment)

        logger.info(
            "payment_created",
            payment_id=payment.id,
            order_id=order.id,
            amount=str(payment.amount),
            currency=payment.currency,
        )
        return payment

    @staticmethod
    async def get_payment(db: AsyncSession, actor: Actor, payment_id: int) -> Payment:
        payment = await PaymentRepository.get_payment(db, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        order = await OrderRepository.get_order(db, payment.order_id)
        ensure_owner(actor, order.customer_id)
        return payment

    @staticmethod
    async def update_payment(
        db: AsyncSession, actor: Actor, payment_id: int, data: PaymentUpdate
    ) -> Payment:
        patch = data.model_dump(exclude_unset=True)
        if any(value is None for field, value in patch.items() if field != "external_reference"):
            raise ValidationError("Payment fields other than external_reference cannot be cleared")

        async with unit_of_work(db):
            with payment_write_guard(payment_id):
                payment = await PaymentRepository.get_payment(db, payment_id, for_update=True)
                if not payment:
                    raise NotFoundError("Payment not found")
                order = await OrderRepository.get_order(db, payment.order_id)
                ensure_owner(actor, order.customer_id)
                changed = state_machine.apply_patch(payment, patch, order)
                await db.flush()

        if changed:
            logger.info("payment_updated", payment_id=payment_id, fields=changed)
        return payment

    @staticmethod
    async def transition(
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        payment_id: int,
        status: str,
        completed_at: Optional[datetime] = None,
    ) -> Payment:
        """Commit the status change, then run the ledger effects it implies."""
        async with unit_of_work(db):
            with payment_write_guard(payment_id):
                payment = await PaymentRepository.get_payment(db, payment_id, for_update=True)
                if not payment:
                    raise NotFoundError("Payment not found")
                order = await OrderRepository.get_order(db, payment.order_id, for_update=True)
                previous = payment.status
                changed = state_machine.apply_transition(payment, status, completed_at=completed_at)
                if not changed:
                    logger.info("payment_transition_repeated", payment_id=payment_id, status=status)
                    return payment

                siblings = await PaymentRepository.list_for_order(db, order.id)
                if status == "succeeded" and order.status == "pending":
                    settled = sum(
                        (Decimal(p.amount) for p in siblings if p.status == "succeeded"),
                        Decimal("0"),
                    )
                    if settled >= order.amount_due:
                        order.status = "paid"
                        order.updated_at = payment.updated_at
                effects = ledger_effects_for(payment, order, siblings)
                await db.flush()

        logger.info(
            "payment_transitioned",
            payment_id=payment_id,
            order_id=payment.order_id,
            from_status=previous,
            to_status=status,
            effects=effects,
        )

        deferred = await apply_effects(session_factory, payment_id, effects)
        if len(deferred) < len(effects):
            await db.refresh(payment)
        return payment

    @staticmethod
    async def search_payments(
        db: AsyncSession,
        actor: Actor,
        order_id: int,
        payment_method: Optional[str] = None,
        status: Optional[str] = None,
        currency: Optional[str] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        requested_from: Optional[datetime] = None,
        requested_to: Optional[datetime] = None,
    ) -> list[Payment]:
        for bound in (min_amount, max_amount):
            if bound is not None and bound < 0:
                raise ValidationError("Amount filters must not be negative")
        if min_amount is not None and max_amount is not None and min_amount > max_amount:
            raise ValidationError("min_amount must not exceed max_amount")
        if requested_from and requested_to and requested_from > requested_to:
            raise ValidationError("requested_from must not be after requested_to")

        order = await OrderRepository.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found")
        ensure_owner(actor, order.customer_id)
        return await PaymentRepository.search(
            db,
            order_id,
            payment_method=payment_method,
            status=status,
            currency=currency,
            min_amount=min_amount,
            max_amount=max_amount,
            requested_from=requested_from,
            requested_to=requested_to,
        )
