from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import unit_of_work, utcnow
from shared.errors import AlreadyDeletedError, ConflictError, ForbiddenError, NotFoundError
from shared.security.dependencies import Actor, ensure_owner

from .engine import MileageEngine, cas_guard, mileage_engine
from .models import MileageLedger, MileageTransaction
from .repository import MileageRepository
from .schemas import LedgerCreate, MileageAccrue, MileageExpire, MileageSpend

logger = structlog.get_logger(__name__)


class MileageService:
    engine: MileageEngine = mileage_engine

    @staticmethod
    async def accrue(db: AsyncSession, data: MileageAccrue) -> MileageTransaction:
        async with unit_of_work(db):
            return await MileageService.engine.accrue(
                db,
                data.customer_id,
                data.seller_id,
                data.amount,
                reference_order_id=data.reference_order_id,
                reason=data.reason,
                evidence_reference=data.evidence_reference,
            )

    @staticmethod
    async def spend(db: AsyncSession, actor: Actor, data: MileageSpend) -> MileageTransaction:
        ensure_owner(actor, data.customer_id)
        async with unit_of_work(db):
            return await MileageService.engine.spend(
                db,
                data.customer_id,
                data.seller_id,
                data.amount,
                reference_order_id=data.reference_order_id,
                reason=data.reason,
                evidence_reference=data.evidence_reference,
            )

    @staticmethod
    async def open_ledger(db: AsyncSession, data: LedgerCreate) -> MileageLedger:
        async with unit_of_work(db):
            ledger = await MileageService.engine.open_ledger(
                db,
                data.customer_id,
                data.seller_id,
                initial_balance=data.initial_balance,
                reason=data.reason,
            )
        await db.refresh(ledger)
        return ledger

    @staticmethod
    async def get_ledger(db: AsyncSession, actor: Actor, ledger_id: int) -> MileageLedger:
        ledger = await MileageRepository.get_ledger(db, ledger_id)
        if not ledger:
            raise NotFoundError("Mileage ledger not found")
        ensure_owner(actor, ledger.customer_id)
        return ledger

    @staticmethod
    async def search_ledgers(
        db: AsyncSession,
        actor: Actor,
        status: Optional[str] = None,
        expired_before: Optional[datetime] = None,
        expired_after: Optional[datetime] = None,
        customer_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> list[MileageLedger]:
        if not actor.is_admin:
            # customers only ever see their own ledgers
            if customer_id is not None and customer_id != actor.actor_id:
                raise ForbiddenError("You may only search your own mileage ledgers")
            customer_id = actor.actor_id
            include_deleted = False
        return await MileageRepository.search_ledgers(
            db,
            status=status,
            expired_before=expired_before,
            expired_after=expired_after,
            customer_id=customer_id,
            include_deleted=include_deleted,
        )

    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        actor: Actor,
        ledger_id: int,
        type: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> list[MileageTransaction]:
        await MileageService.get_ledger(db, actor, ledger_id)
        return await MileageRepository.list_transactions(
            db, ledger_id, type=type, created_from=created_from, created_to=created_to
        )

    @staticmethod
    async def set_status(db: AsyncSession, ledger_id: int, status: str) -> MileageLedger:
        async with unit_of_work(db):
            with cas_guard("status", ledger_id=ledger_id):
                ledger = await MileageRepository.get_ledger(db, ledger_id, for_update=True)
                if not ledger:
                    raise NotFoundError("Mileage ledger not found")
                if ledger.deleted_at is not None:
                    raise AlreadyDeletedError("Mileage ledger has been deleted")
                ledger.status = status
                ledger.updated_at = utcnow()
                await db.flush()
        logger.info("mileage_ledger_status_changed", ledger_id=ledger_id, status=status)
        return ledger

    @staticmethod
    async def delete_ledger(db: AsyncSession, actor: Actor, ledger_id: int) -> MileageLedger:
        """Soft delete. The row and its transactions are kept."""
        async with unit_of_work(db):
            with cas_guard("delete", ledger_id=ledger_id):
                ledger = await MileageRepository.get_ledger(db, ledger_id, for_update=True)
                if not ledger:
                    raise NotFoundError("Mileage ledger not found")
                ensure_owner(actor, ledger.customer_id)
                if ledger.deleted_at is not None:
                    raise AlreadyDeletedError("Mileage ledger is already deleted")
                if ledger.on_hold_mileage > 0:
                    raise ConflictError("Mileage ledger has points on hold for an open order")
                now = utcnow()
                ledger.deleted_at = now
                ledger.updated_at = now
                await db.flush()
        logger.info("mileage_ledger_deleted", ledger_id=ledger_id, actor_id=actor.actor_id)
        return ledger

    @staticmethod
    async def expire(
        db: AsyncSession, ledger_id: int, data: MileageExpire
    ) -> Optional[MileageTransaction]:
        async with unit_of_work(db):
            return await MileageService.engine.expire(
                db, ledger_id, data.amount, now=data.now, batch_id=data.batch_id
            )
