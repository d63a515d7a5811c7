from decimal import Decimal

import pytest

from conftest import bearer
from shared.errors import InsufficientBalanceError, ValidationError
from services.mileage_service.engine import mileage_engine
from services.mileage_service.repository import MileageRepository
from services.orchestrator.checkout_saga import build_checkout_saga, run_checkout
from services.orchestrator.saga import SagaOrchestrator
from services.order_service.repository import OrderRepository
from services.order_service.schemas import CheckoutRequest, InitialPayment
from services.payment_service.repository import PaymentRepository
from services.payment_service.service import PaymentService

ITEMS = [{
    "product_variant_id": "variant-1",
    "seller_id": "seller-a",
    "quantity": 2,
    "unit_price": "5000",
    "total_price": "10000",
}]


def checkout_request(**overrides) -> CheckoutRequest:
    fields = {"channel_id": "web", "currency": "KRW", "items": ITEMS}
    fields.update(overrides)
    return CheckoutRequest(**fields)


@pytest.fixture
async def funded(db):
    await mileage_engine.accrue(db, "cust-1", None, 5000)
    await db.commit()


async def test_checkout_holds_mileage_and_creates_payment(session_factory, customer, funded):
    ctx = await run_checkout(
        session_factory,
        customer,
        checkout_request(mileage_to_use=1000, payment=InitialPayment(payment_method="card")),
    )

    assert ctx["completed_steps"] == ["create_order", "hold_mileage", "create_payment"]
    async with session_factory() as session:
        order = await OrderRepository.get_order(session, ctx["order_id"])
        payment = await PaymentRepository.get_payment(session, ctx["payment_id"])
        ledger = await MileageRepository.find_ledger(session, "cust-1", None)
    assert (order.mileage_used, order.mileage_state) == (1000, "held")
    assert payment.amount == Decimal("9000")
    assert (ledger.usable_mileage, ledger.on_hold_mileage) == (4000, 1000)


async def test_settled_checkout_spends_held_mileage(session_factory, customer, funded):
    ctx = await run_checkout(
        session_factory,
        customer,
        checkout_request(mileage_to_use=1000, payment=InitialPayment(payment_method="card")),
    )

    async with session_factory() as session:
        await PaymentService.transition(session, session_factory, ctx["payment_id"], "succeeded")

    async with session_factory() as session:
        order = await OrderRepository.get_order(session, ctx["order_id"])
        ledger = await MileageRepository.find_ledger(session, "cust-1", None)
    assert order.status == "paid"
    assert order.mileage_state == "spent"
    assert ledger.on_hold_mileage == 0
    assert ledger.spent_mileage == 1000
    assert ledger.usable_mileage == 4000 + 90  # floor(9000 * 0.01) credited for the payment
    assert ledger.is_conserved()


async def test_payment_failure_compensates_hold_and_order(session_factory, customer, funded):
    request = checkout_request(
        mileage_to_use=1000,
        payment=InitialPayment(payment_method="card", amount=Decimal("10000")),
    )
    ctx = {"session_factory": session_factory, "actor": customer, "request": request}

    with pytest.raises(ValidationError):
        await build_checkout_saga().execute(ctx)

    assert ctx["failed_step"] == "create_payment"
    async with session_factory() as session:
        order = await OrderRepository.get_order(session, ctx["order_id"])
        ledger = await MileageRepository.find_ledger(session, "cust-1", None)
    assert order.status == "cancelled"
    assert order.mileage_state == "released"
    assert (ledger.usable_mileage, ledger.on_hold_mileage) == (5000, 0)
    assert ledger.is_conserved()


async def test_insufficient_mileage_cancels_order(session_factory, customer, funded):
    with pytest.raises(InsufficientBalanceError):
        await run_checkout(session_factory, customer, checkout_request(mileage_to_use=6000))

    async with session_factory() as session:
        orders = await OrderRepository.list_for_customer(session, "cust-1")
    assert [o.status for o in orders] == ["cancelled"]


async def test_compensation_failure_does_not_block_others():
    calls = []

    async def ok(ctx):
        calls.append("action")

    async def boom(ctx):
        raise RuntimeError("step failed")

    async def broken_compensation(ctx):
        calls.append("broken")
        raise RuntimeError("compensation failed")

    async def compensation(ctx):
        calls.append("compensated")

    saga = (
        SagaOrchestrator("test")
        .add_step("first", ok, compensation)
        .add_step("second", ok, broken_compensation)
        .add_step("third", boom)
    )

    with pytest.raises(RuntimeError, match="step failed"):
        await saga.execute({})
    assert calls == ["action", "action", "broken", "compensated"]


async def test_checkout_http(client, session_factory):
    async with session_factory() as session:
        await mileage_engine.accrue(session, "cust-1", None, 500)
        await session.commit()

    resp = await client.post(
        "/orders/checkout",
        json={
            "channel_id": "web",
            "currency": "KRW",
            "items": ITEMS,
            "mileage_to_use": 500,
            "payment": {"payment_method": "card"},
        },
        headers=bearer("cust-1"),
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["order"]["mileage_state"] == "held"
    assert Decimal(body["order"]["total_amount"]) == Decimal("10000")
    assert body["payment_id"] is not None
    assert body["mileage_transaction_id"] is not None
