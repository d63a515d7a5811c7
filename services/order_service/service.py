from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from shared.config import settings
from shared.config.database import unit_of_work, utcnow
from shared.errors import (
    ConflictError,
    ForbiddenError,
    InvalidAmountError,
    LockedStateError,
    NotFoundError,
    ValidationError,
)
from shared.security.dependencies import Actor, ensure_owner
from services.mileage_service.engine import MileageEngine, mileage_engine
from services.mileage_service.models import MileageTransaction
from services.payment_service.repository import PaymentRepository
from services.payment_service.state_machine import apply_transition, new_payment

from .models import Order, OrderItem
from .repository import OrderRepository
from .schemas import OrderCreate, OrderItemCreate

logger = structlog.get_logger(__name__)


@contextmanager
def order_write_guard(order_id: Optional[int] = None):
    try:
        yield
    except (StaleDataError, IntegrityError) as exc:
        logger.warning("order_write_conflict", order_id=order_id, error=str(exc))
        raise ConflictError("Concurrent update on the order; retry the request") from exc


class OrderService:
    mileage: MileageEngine = mileage_engine

    @staticmethod
    def validate_items(items: list[OrderItemCreate], currency: str) -> Decimal:
        """Checks every item and returns the order total."""
        if not items:
            raise ValidationError("An order needs at least one item")
        if currency.upper() not in settings.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")

        total = Decimal("0")
        for index, item in enumerate(items):
            if item.quantity <= 0:
                raise ValidationError(f"Item {index}: quantity must be positive")
            if item.unit_price < 0:
                raise ValidationError(f"Item {index}: unit_price must not be negative")
            if item.total_price != item.quantity * item.unit_price:
                raise ValidationError(
                    f"Item {index}: total_price {item.total_price} != "
                    f"{item.quantity} x {item.unit_price}"
                )
            total += item.total_price
        return total

    @staticmethod
    def resolve_customer(actor: Actor, customer_id: Optional[str]) -> str:
        if customer_id is None:
            return actor.actor_id
        if not actor.is_admin and customer_id != actor.actor_id:
            raise ForbiddenError("You may only place orders for yourself")
        return customer_id

    @staticmethod
    async def build_order(db: AsyncSession, customer_id: str, data: OrderCreate) -> Order:
        """Validate and flush a new order with its items. The caller commits."""
        total = OrderService.validate_items(data.items, data.currency)
        now = utcnow()
        order = Order(
            customer_id=customer_id,
            channel_id=data.channel_id,
            status="pending",
            total_amount=total,
            currency=data.currency.upper(),
            mileage_used=0,
            mileage_state="none",
            mileage_eligible=data.mileage_eligible,
            ordered_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    product_variant_id=item.product_variant_id,
                    seller_id=item.seller_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                )
                for item in data.items
            ],
        )
        return await OrderRepository.add_order(db, order)

    @staticmethod
    async def create_order(db: AsyncSession, actor: Actor, data: OrderCreate) -> Order:
        """Order, items and the optional initial payment commit together or not at all."""
        customer_id = OrderService.resolve_customer(actor, data.customer_id)
        async with unit_of_work(db):
            order = await OrderService.build_order(db, customer_id, data)
            if data.payment is not None:
                amount = data.payment.amount
                if amount is None:
                    amount = order.amount_due
                payment = new_payment(
                    order,
                    data.payment.payment_method,
                    amount,
                    order.currency,
                    external_reference=data.payment.external_reference,
                )
                await PaymentRepository.add_payment(db, payment)

        logger.info(
            "order_created",
            order_id=order.id,
            customer_id=customer_id,
            items=len(data.items),
            total_amount=str(order.total_amount),
            with_payment=data.payment is not None,
        )
        return order

    @staticmethod
    async def get_order(db: AsyncSession, actor: Optional[Actor], order_id: int) -> Order:
        """``actor=None`` is a system caller and skips the ownership check."""
        order = await OrderRepository.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found")
        if actor is not None:
            ensure_owner(actor, order.customer_id)
        return order

    @staticmethod
    async def list_orders(db: AsyncSession, actor: Actor, customer_id: Optional[str] = None) -> list[Order]:
        customer_id = OrderService.resolve_customer(actor, customer_id)
        return await OrderRepository.list_for_customer(db, customer_id)

    @staticmethod
    async def list_items(db: AsyncSession, actor: Actor, order_id: int) -> list[OrderItem]:
        await OrderService.get_order(db, actor, order_id)
        return await OrderRepository.list_items(db, order_id)

    @staticmethod
    async def hold_mileage(
        db: AsyncSession,
        order_id: int,
        amount: int,
        seller_id: Optional[str] = None,
    ) -> MileageTransaction:
        """Reserve points against a pending order; they reduce the amount due."""
        async with unit_of_work(db):
            with order_write_guard(order_id):
                order = await OrderRepository.get_order(db, order_id, for_update=True)
                if not order:
                    raise NotFoundError("Order not found")
                if order.status != "pending":
                    raise LockedStateError(f"Order is {order.status}")
                if order.mileage_state != "none":
                    raise ValidationError("Mileage has already been applied to this order")
                if amount <= 0:
                    raise InvalidAmountError("Mileage to use must be positive")
                if amount >= order.total_amount:
                    raise ValidationError("Mileage must leave part of the order to be paid")

                transaction = await OrderService.mileage.hold(
                    db, order.customer_id, seller_id, amount, reference_order_id=order.id
                )
                order.mileage_used = amount
                order.mileage_seller_id = seller_id
                order.mileage_state = "held"
                order.updated_at = utcnow()
                await db.flush()
        logger.info("order_mileage_held", order_id=order_id, amount=amount, seller_id=seller_id)
        return transaction

    @staticmethod
    async def release_mileage(db: AsyncSession, order_id: int) -> Optional[MileageTransaction]:
        async with unit_of_work(db):
            order = await OrderRepository.get_order(db, order_id, for_update=True)
            if not order:
                raise NotFoundError("Order not found")
            transaction = await OrderService._release_hold(db, order)
        return transaction

    @staticmethod
    async def cancel_order(db: AsyncSession, actor: Optional[Actor], order_id: int) -> Order:
        """Cancel a pending order: pending payments fail and held mileage goes back."""
        async with unit_of_work(db):
            with order_write_guard(order_id):
                order = await OrderRepository.get_order(db, order_id, for_update=True)
                if not order:
                    raise NotFoundError("Order not found")
                if actor is not None:
                    ensure_owner(actor, order.customer_id)
                if order.status != "pending":
                    raise LockedStateError(f"Order is {order.status} and can no longer be cancelled")

                snapshot = {"previous_status": order.status, "previous_mileage_state": order.mileage_state}
                failed_payment_ids = []
                now = utcnow()
                for payment in await PaymentRepository.list_for_order(db, order.id):
                    if payment.status == "pending":
                        apply_transition(payment, "failed", now=now)
                        failed_payment_ids.append(payment.id)
                await OrderService._release_hold(db, order)

                order.status = "cancelled"
                order.updated_at = now
                await db.flush()

        logger.info(
            "order_cancelled",
            order_id=order_id,
            actor_id=actor.actor_id if actor else "system",
            failed_payment_ids=failed_payment_ids,
            **snapshot,
        )
        return order

    @staticmethod
    async def complete_order(db: AsyncSession, order_id: int) -> Order:
        async with unit_of_work(db):
            with order_write_guard(order_id):
                order = await OrderRepository.get_order(db, order_id, for_update=True)
                if not order:
                    raise NotFoundError("Order not found")
                if order.is_finalized:
                    raise LockedStateError(f"Order is already {order.status}")
                if order.status != "paid":
                    raise ValidationError("Only paid orders can be completed")
                previous_status = order.status
                order.status = "completed"
                order.updated_at = utcnow()
                await db.flush()
        logger.info("order_completed", order_id=order_id, previous_status=previous_status)
        return order

    @staticmethod
    async def _release_hold(db: AsyncSession, order: Order) -> Optional[MileageTransaction]:
        if order.mileage_state != "held":
            return None
        transaction = await OrderService.mileage.release(
            db,
            order.customer_id,
            order.mileage_seller_id,
            order.mileage_used,
            reference_order_id=order.id,
        )
        order.mileage_state = "released"
        order.updated_at = utcnow()
        await db.flush()
        return transaction
