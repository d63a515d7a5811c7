from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config.database import get_db, get_session_factory
from shared.security.dependencies import (
    Actor,
    get_current_actor,
    require_admin,
    verify_internal_api_key,
)
from shared.security.rate_limiter import MONEY_MOVEMENT_LIMIT, limiter

from .schemas import (
    LedgerCreate,
    LedgerStatus,
    LedgerStatusUpdate,
    MileageAccrue,
    MileageExpire,
    MileageLedgerResponse,
    MileageSpend,
    MileageTransactionResponse,
    SweepResponse,
    TransactionType,
)
from .service import MileageService
from .sweep import run_expiry_sweep

router = APIRouter()
# System callers (payment pipeline, scheduler) authenticate with the internal key
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])
public_router = APIRouter()

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "mileage", "status": "running"}


@internal_router.post(
    "/accrue",
    response_model=MileageTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def accrue(data: MileageAccrue, db: AsyncSession = Depends(get_db)):
    return await MileageService.accrue(db, data)


@router.post(
    "/spend",
    response_model=MileageTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(MONEY_MOVEMENT_LIMIT)
async def spend(
    request: Request,
    data: MileageSpend,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await MileageService.spend(db, actor, data)


@router.get("/ledgers", response_model=list[MileageLedgerResponse])
async def search_ledgers(
    status: Optional[LedgerStatus] = None,
    expired_before: Optional[datetime] = None,
    expired_after: Optional[datetime] = None,
    customer_id: Optional[str] = None,
    include_deleted: bool = False,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await MileageService.search_ledgers(
        db,
        actor,
        status=status,
        expired_before=expired_before,
        expired_after=expired_after,
        customer_id=customer_id,
        include_deleted=include_deleted,
    )


@router.post(
    "/ledgers",
    response_model=MileageLedgerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_ledger(
    data: LedgerCreate,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return await MileageService.open_ledger(db, data)


@router.get("/ledgers/{ledger_id}", response_model=MileageLedgerResponse)
async def get_ledger(
    ledger_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await MileageService.get_ledger(db, actor, ledger_id)


@router.patch("/ledgers/{ledger_id}/status", response_model=MileageLedgerResponse)
async def set_ledger_status(
    ledger_id: int,
    data: LedgerStatusUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return await MileageService.set_status(db, ledger_id, data.status)


@router.get(
    "/ledgers/{ledger_id}/transactions",
    response_model=list[MileageTransactionResponse],
)
async def list_transactions(
    ledger_id: int,
    type: Optional[TransactionType] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await MileageService.list_transactions(
        db, actor, ledger_id, type=type, created_from=created_from, created_to=created_to
    )


@router.delete("/ledgers/{ledger_id}", response_model=MileageLedgerResponse)
async def delete_ledger(
    ledger_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await MileageService.delete_ledger(db, actor, ledger_id)


@internal_router.post("/ledgers/{ledger_id}/expire", response_model=Optional[MileageTransactionResponse])
async def expire(
    ledger_id: int,
    data: MileageExpire,
    db: AsyncSession = Depends(get_db),
):
    # null body when the amount was zero (nothing to expire)
    return await MileageService.expire(db, ledger_id, data)


@internal_router.post("/sweep", response_model=SweepResponse)
async def sweep(
    now: Optional[datetime] = None,
    batch_id: Optional[str] = None,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    report = await run_expiry_sweep(session_factory, now=now, batch_id=batch_id)
    return SweepResponse(
        batch_id=report.batch_id,
        expired=report.expired,
        skipped=report.skipped,
        failed=report.failed,
    )
