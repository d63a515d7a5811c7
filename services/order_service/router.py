from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config.database import get_db, get_session_factory
from shared.security.dependencies import Actor, get_current_actor, verify_internal_api_key
from shared.security.rate_limiter import MONEY_MOVEMENT_LIMIT, limiter
from services.orchestrator.checkout_saga import run_checkout

from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderCreate,
    OrderItemResponse,
    OrderResponse,
)
from .service import OrderService

router = APIRouter()
# Completion is driven by fulfilment, a system caller
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])
public_router = APIRouter()

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "order", "status": "running"}


@router.post("/", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order: OrderCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await OrderService.create_order(db, actor, order)


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(MONEY_MOVEMENT_LIMIT)
async def checkout(
    request: Request,
    data: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    ctx = await run_checkout(session_factory, actor, data)
    order = await OrderService.get_order(db, actor, ctx["order_id"])
    return CheckoutResponse(
        order=OrderResponse.model_validate(order),
        payment_id=ctx.get("payment_id"),
        mileage_transaction_id=ctx.get("mileage_transaction_id"),
    )


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    customer_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await OrderService.list_orders(db, actor, customer_id)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await OrderService.get_order(db, actor, order_id)


@router.get("/{order_id}/items", response_model=list[OrderItemResponse])
async def list_items(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await OrderService.list_items(db, actor, order_id)


# Also used as the checkout saga's rollback
@router.patch("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await OrderService.cancel_order(db, actor, order_id)


@internal_router.patch("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(order_id: int, db: AsyncSession = Depends(get_db)):
    return await OrderService.complete_order(db, order_id)
