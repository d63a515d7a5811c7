from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Payment, PendingLedgerEffect


class PaymentRepository:
    @staticmethod
    async def add_payment(db: AsyncSession, payment: Payment) -> Payment:
        db.add(payment)
        await db.flush()
        return payment

    @staticmethod
    async def get_payment(
        db: AsyncSession, payment_id: int, for_update: bool = False
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def list_for_order(db: AsyncSession, order_id: int) -> list[Payment]:
        result = await db.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def search(
        db: AsyncSession,
        order_id: int,
        payment_method: Optional[str] = None,
        status: Optional[str] = None,
        currency: Optional[str] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        requested_from: Optional[datetime] = None,
        requested_to: Optional[datetime] = None,
    ) -> list[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id)
        if payment_method is not None:
            stmt = stmt.where(Payment.payment_method == payment_method)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        if currency is not None:
            stmt = stmt.where(Payment.currency == currency.upper())
        if min_amount is not None:
            stmt = stmt.where(Payment.amount >= min_amount)
        if max_amount is not None:
            stmt = stmt.where(Payment.amount <= max_amount)
        if requested_from is not None:
            stmt = stmt.where(Payment.requested_at >= requested_from)
        if requested_to is not None:
            stmt = stmt.where(Payment.requested_at <= requested_to)
        result = await db.execute(stmt.order_by(Payment.id))
        return list(result.scalars().all())

    # --- ledger effect outbox ---------------------------------------------

    @staticmethod
    async def add_pending_effect(db: AsyncSession, effect: PendingLedgerEffect) -> PendingLedgerEffect:
        db.add(effect)
        await db.flush()
        return effect

    @staticmethod
    async def due_effect_ids(db: AsyncSession, max_attempts: int) -> list[int]:
        result = await db.execute(
            select(PendingLedgerEffect.id)
            .where(PendingLedgerEffect.processed_at.is_(None))
            .where(PendingLedgerEffect.attempts < max_attempts)
            .order_by(PendingLedgerEffect.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_pending_effect(
        db: AsyncSession, effect_id: int
    ) -> Optional[PendingLedgerEffect]:
        result = await db.execute(
            select(PendingLedgerEffect).where(PendingLedgerEffect.id == effect_id)
        )
        return result.scalars().first()

    @staticmethod
    async def count_unprocessed(db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(PendingLedgerEffect.id)).where(
                PendingLedgerEffect.processed_at.is_(None)
            )
        )
        return result.scalar_one()
