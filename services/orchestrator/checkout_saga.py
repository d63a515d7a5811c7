"""
Checkout saga: create order -> hold mileage -> create initial payment.

Each step commits in its own session. When a later step fails the earlier
ones are compensated in reverse: the mileage hold is released, then the
order is cancelled (which also fails any payment left pending).
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.security.dependencies import Actor
from services.order_service.schemas import CheckoutRequest, OrderCreate
from services.order_service.service import OrderService
from services.payment_service.schemas import PaymentCreate
from services.payment_service.service import PaymentService

from .saga import SagaOrchestrator

# --- ACTIONS ---

async def create_order(ctx: dict):
    request: CheckoutRequest = ctx["request"]
    data = OrderCreate(
        **request.model_dump(exclude={"mileage_to_use", "mileage_seller_id", "payment"})
    )
    async with ctx["session_factory"]() as db:
        order = await OrderService.create_order(db, ctx["actor"], data)
    ctx["order_id"] = order.id


async def hold_mileage(ctx: dict):
    request: CheckoutRequest = ctx["request"]
    if request.mileage_to_use <= 0:
        return
    async with ctx["session_factory"]() as db:
        transaction = await OrderService.hold_mileage(
            db, ctx["order_id"], request.mileage_to_use, request.mileage_seller_id
        )
    ctx["mileage_transaction_id"] = transaction.id


async def create_payment(ctx: dict):
    request: CheckoutRequest = ctx["request"]
    if request.payment is None:
        return
    async with ctx["session_factory"]() as db:
        order = await OrderService.get_order(db, None, ctx["order_id"])
        amount = request.payment.amount
        if amount is None:
            amount = order.amount_due
        payment = await PaymentService.create_payment(
            db,
            ctx["actor"],
            PaymentCreate(
                order_id=order.id,
                payment_method=request.payment.payment_method,
                amount=amount,
                currency=order.currency,
                external_reference=request.payment.external_reference,
            ),
        )
    ctx["payment_id"] = payment.id


# --- COMPENSATIONS (Rollbacks) ---

async def rollback_mileage(ctx: dict):
    if not ctx.get("mileage_transaction_id"):
        return
    async with ctx["session_factory"]() as db:
        await OrderService.release_mileage(db, ctx["order_id"])


async def rollback_order(ctx: dict):
    order_id = ctx.get("order_id")
    if order_id:
        async with ctx["session_factory"]() as db:
            await OrderService.cancel_order(db, None, order_id)


# --- BUILDER FACTORY ---

def build_checkout_saga() -> SagaOrchestrator:
    saga = SagaOrchestrator("checkout")
    saga.add_step("create_order", create_order, rollback_order)
    saga.add_step("hold_mileage", hold_mileage, rollback_mileage)
    saga.add_step("create_payment", create_payment, None) # last step; no compensation
    return saga


async def run_checkout(
    session_factory: async_sessionmaker[AsyncSession],
    actor: Actor,
    request: CheckoutRequest,
) -> dict:
    ctx = {"session_factory": session_factory, "actor": actor, "request": request}
    return await build_checkout_saga().execute(ctx)
