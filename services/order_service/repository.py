from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, OrderItem


class OrderRepository:
    @staticmethod
    async def add_order(db: AsyncSession, order: Order) -> Order:
        db.add(order)
        await db.flush()
        return order

    @staticmethod
    async def get_order(
        db: AsyncSession, order_id: int, for_update: bool = False
    ) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def list_items(db: AsyncSession, order_id: int) -> list[OrderItem]:
        result = await db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_for_customer(db: AsyncSession, customer_id: str) -> list[Order]:
        result = await db.execute(
            select(Order).where(Order.customer_id == customer_id).order_by(Order.id)
        )
        return list(result.scalars().all())
