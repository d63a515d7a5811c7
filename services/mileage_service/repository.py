from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import MileageLedger, MileageTransaction


class MileageRepository:
    """Ledger Store. Methods flush but never commit; the caller owns the unit of work."""

    @staticmethod
    async def add_ledger(db: AsyncSession, ledger: MileageLedger) -> MileageLedger:
        db.add(ledger)
        await db.flush()
        return ledger

    @staticmethod
    async def get_ledger(
        db: AsyncSession, ledger_id: int, for_update: bool = False
    ) -> Optional[MileageLedger]:
        stmt = select(MileageLedger).where(MileageLedger.id == ledger_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def find_ledger(
        db: AsyncSession,
        customer_id: str,
        seller_id: Optional[str],
        for_update: bool = False,
    ) -> Optional[MileageLedger]:
        stmt = select(MileageLedger).where(MileageLedger.customer_id == customer_id)
        if seller_id is None:
            stmt = stmt.where(MileageLedger.seller_id.is_(None))
        else:
            stmt = stmt.where(MileageLedger.seller_id == seller_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def search_ledgers(
        db: AsyncSession,
        status: Optional[str] = None,
        expired_before: Optional[datetime] = None,
        expired_after: Optional[datetime] = None,
        customer_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> list[MileageLedger]:
        stmt = select(MileageLedger)
        if status is not None:
            stmt = stmt.where(MileageLedger.status == status)
        # both bounds are strict; NULL horizons never satisfy a comparison
        if expired_before is not None:
            stmt = stmt.where(MileageLedger.expires_at < expired_before)
        if expired_after is not None:
            stmt = stmt.where(MileageLedger.expires_at > expired_after)
        if customer_id is not None:
            stmt = stmt.where(MileageLedger.customer_id == customer_id)
        if not include_deleted:
            stmt = stmt.where(MileageLedger.deleted_at.is_(None))
        result = await db.execute(stmt.order_by(MileageLedger.id))
        return list(result.scalars().all())

    @staticmethod
    async def due_ledger_ids(db: AsyncSession, now: datetime) -> list[int]:
        stmt = (
            select(MileageLedger.id)
            .where(MileageLedger.expires_at <= now)
            .where(MileageLedger.usable_mileage > 0)
            .where(MileageLedger.deleted_at.is_(None))
            .order_by(MileageLedger.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def add_transaction(
        db: AsyncSession, transaction: MileageTransaction
    ) -> MileageTransaction:
        db.add(transaction)
        await db.flush()
        return transaction

    @staticmethod
    async def find_expiry_batch(
        db: AsyncSession, ledger_id: int, batch_id: str
    ) -> Optional[MileageTransaction]:
        result = await db.execute(
            select(MileageTransaction)
            .where(MileageTransaction.mileage_ledger_id == ledger_id)
            .where(MileageTransaction.batch_id == batch_id)
        )
        return result.scalars().first()

    @staticmethod
    async def accrual_credits(
        db: AsyncSession, ledger_id: int
    ) -> list[tuple[int, Optional[datetime]]]:
        result = await db.execute(
            select(MileageTransaction.amount, MileageTransaction.expires_at)
            .where(MileageTransaction.mileage_ledger_id == ledger_id)
            .where(MileageTransaction.type == "accrue")
            .order_by(MileageTransaction.id)
        )
        return [(row.amount, row.expires_at) for row in result.all()]

    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        ledger_id: int,
        type: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> list[MileageTransaction]:
        stmt = select(MileageTransaction).where(
            MileageTransaction.mileage_ledger_id == ledger_id
        )
        if type is not None:
            stmt = stmt.where(MileageTransaction.type == type)
        if created_from is not None:
            stmt = stmt.where(MileageTransaction.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(MileageTransaction.created_at <= created_to)
        result = await db.execute(stmt.order_by(MileageTransaction.id))
        return list(result.scalars().all())

    @staticmethod
    async def spent_total(db: AsyncSession, ledger_id: int) -> int:
        result = await db.execute(
            select(MileageTransaction.amount)
            .where(MileageTransaction.mileage_ledger_id == ledger_id)
            .where(MileageTransaction.type == "spend")
        )
        return sum(-amount for amount in result.scalars().all())

