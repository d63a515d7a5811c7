"""
Customers create, read, search and patch payments on their own orders.
Status transitions come from the payment gateway integration and require
X-Internal-API-Key.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config.database import get_db, get_session_factory
from shared.security.dependencies import Actor, get_current_actor, verify_internal_api_key
from shared.security.rate_limiter import MONEY_MOVEMENT_LIMIT, limiter

from .schemas import (
    PaymentCreate,
    PaymentResponse,
    PaymentStatus,
    PaymentTransition,
    PaymentUpdate,
)
from .service import PaymentService

router = APIRouter()
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])
public_router = APIRouter()  # For any public endpoints (e.g. health check)

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "payment", "status": "running"}


@router.post("/", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(MONEY_MOVEMENT_LIMIT)
async def create_payment(
    request: Request,
    payment: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await PaymentService.create_payment(db, actor, payment)


@router.get("/", response_model=list[PaymentResponse])
async def search_payments(
    order_id: int,
    payment_method: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    currency: Optional[str] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    requested_from: Optional[datetime] = None,
    requested_to: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await PaymentService.search_payments(
        db,
        actor,
        order_id,
        payment_method=payment_method,
        status=status,
        currency=currency,
        min_amount=min_amount,
        max_amount=max_amount,
        requested_from=requested_from,
        requested_to=requested_to,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await PaymentService.get_payment(db, actor, payment_id)


@router.patch("/{payment_id}", response_model=PaymentResponse)
async def update_payment(
    payment_id: int,
    patch: PaymentUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await PaymentService.update_payment(db, actor, payment_id, patch)


@internal_router.post("/{payment_id}/transition", response_model=PaymentResponse)
async def transition_payment(
    payment_id: int,
    data: PaymentTransition,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await PaymentService.transition(
        db, session_factory, payment_id, data.status, completed_at=data.completed_at
    )
