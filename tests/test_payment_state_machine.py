from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from shared.config.database import utcnow
from shared.errors import LockedStateError, ValidationError
from services.payment_service.state_machine import (
    PAYMENT_TRANSITIONS,
    apply_patch,
    apply_transition,
    new_payment,
)


@pytest.fixture
def order():
    return SimpleNamespace(
        id=1,
        currency="KRW",
        total_amount=Decimal("10000"),
        amount_due=Decimal("10000"),
    )


@pytest.fixture
def payment(order):
    return new_payment(order, "card", Decimal("10000"), "krw")


def test_new_payment_is_pending_with_normalised_currency(payment):
    assert payment.status == "pending"
    assert payment.currency == "KRW"
    assert payment.completed_at is None


@pytest.mark.parametrize(
    "amount, currency",
    [
        (Decimal("0"), "KRW"),
        (Decimal("-1"), "KRW"),
        (Decimal("10000"), "XXX"),
        (Decimal("10000"), "USD"),
        (Decimal("10000.01"), "KRW"),
    ],
)
def test_new_payment_rejects_bad_terms(order, amount, currency):
    with pytest.raises(ValidationError):
        new_payment(order, "card", amount, currency)


def test_pending_payment_accepts_any_patch(payment, order):
    changed = apply_patch(
        payment, {"amount": Decimal("5000"), "payment_method": "bank"}, order
    )
    assert sorted(changed) == ["amount", "payment_method"]
    assert payment.amount == Decimal("5000")


def test_pending_patch_still_validates_terms(payment, order):
    with pytest.raises(ValidationError):
        apply_patch(payment, {"amount": Decimal("0")}, order)


@pytest.mark.parametrize("status", ["succeeded", "failed", "refunded"])
@pytest.mark.parametrize("field", ["amount", "payment_method", "currency"])
def test_locked_payment_rejects_term_changes_even_when_unchanged(payment, order, status, field):
    payment.status = status
    with pytest.raises(LockedStateError):
        apply_patch(payment, {field: getattr(payment, field)}, order)


def test_locked_payment_keeps_external_reference_writable(payment, order):
    apply_transition(payment, "succeeded")
    assert apply_patch(payment, {"external_reference": "pg-123"}, order) == ["external_reference"]


def test_success_sets_completed_at(payment):
    assert apply_transition(payment, "succeeded") is True
    assert payment.status == "succeeded"
    assert payment.completed_at >= payment.requested_at


def test_completed_at_cannot_precede_request(payment):
    with pytest.raises(ValidationError):
        apply_transition(
            payment, "succeeded", completed_at=payment.requested_at - timedelta(seconds=1)
        )
    assert payment.status == "pending"


def test_repeated_transition_is_a_noop(payment):
    apply_transition(payment, "succeeded")
    completed_at = payment.completed_at
    assert apply_transition(payment, "succeeded") is False
    assert payment.completed_at == completed_at


def test_refund_sets_refunded_at(payment):
    apply_transition(payment, "succeeded")
    apply_transition(payment, "refunded", now=utcnow())
    assert payment.status == "refunded"
    assert payment.refunded_at is not None


@pytest.mark.parametrize(
    "path",
    [
        ["succeeded", "failed"],
        ["failed", "succeeded"],
        ["succeeded", "refunded", "succeeded"],
    ],
)
def test_terminal_states_reject_other_transitions(payment, path):
    *prefix, target = path
    for status in prefix:
        apply_transition(payment, status)
    with pytest.raises(LockedStateError):
        apply_transition(payment, target)


def test_pending_cannot_be_refunded(payment):
    with pytest.raises(ValidationError):
        apply_transition(payment, "refunded")


def test_transition_table_is_closed():
    targets = set().union(*PAYMENT_TRANSITIONS.values())
    assert targets <= set(PAYMENT_TRANSITIONS)
