"""
Payment State Machine
=====================

    pending ──► succeeded ──► refunded
       │
       └──────► failed

Every state other than ``pending`` is terminal for the payment's terms:
amount, payment_method and currency can no longer change, and only a
transition may touch status / completed_at / refunded_at.

These functions mutate the ORM object in memory; persisting it and its
side effects is the service's job.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from shared.config import settings
from shared.config.database import utcnow
from shared.errors import LockedStateError, ValidationError
from shared.observability.metrics import (
    ledger_locked_rejections_total,
    ledger_payment_transitions_total,
)

from .models import Payment

PAYMENT_TRANSITIONS = {
    "pending": frozenset({"succeeded", "failed"}),
    "succeeded": frozenset({"refunded"}),
    "failed": frozenset(),
    "refunded": frozenset(),
}

LOCKED_FIELDS = ("amount", "payment_method", "currency")


def is_locked(payment: Payment) -> bool:
    return payment.status != "pending"


def validate_terms(order, amount: Decimal, currency: str) -> str:
    """Checks amount/currency against the order. Returns the normalised currency."""
    if amount is None or Decimal(amount) <= 0:
        raise ValidationError("Payment amount must be positive")
    currency = (currency or "").upper()
    if currency not in settings.SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency}")
    if currency != order.currency:
        raise ValidationError("Payment currency must match the order currency")
    if Decimal(amount) > order.amount_due:
        raise ValidationError("Payment amount exceeds the amount due on the order")
    return currency


def new_payment(
    order,
    payment_method: str,
    amount: Decimal,
    currency: str,
    external_reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    currency = validate_terms(order, amount, currency)
    now = now or utcnow()
    return Payment(
        order_id=order.id,
        payment_method=payment_method,
        amount=Decimal(amount),
        currency=currency,
        status="pending",
        requested_at=now,
        external_reference=external_reference,
        mileage_accrued=0,
        mileage_reversed=0,
        updated_at=now,
    )


def apply_patch(payment: Payment, patch: dict, order) -> list[str]:
    """Apply a field patch. Returns the names of fields that changed."""
    if is_locked(payment):
        locked = [f for f in LOCKED_FIELDS if f in patch]
        if locked:
            for field in locked:
                ledger_locked_rejections_total.labels(field=field).inc()
            raise LockedStateError(
                f"Payment is {payment.status}; {', '.join(locked)} can no longer change"
            )
    else:
        amount = patch.get("amount", payment.amount)
        currency = patch.get("currency", payment.currency)
        if "amount" in patch or "currency" in patch:
            patch = {**patch, "currency": validate_terms(order, amount, currency)}

    changed = []
    for field, value in patch.items():
        if getattr(payment, field) != value:
            setattr(payment, field, value)
            changed.append(field)
    if changed:
        payment.updated_at = utcnow()
    return changed


def apply_transition(
    payment: Payment,
    target: str,
    completed_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Move the payment to ``target``.

    Returns False when the payment is already in ``target`` (idempotent
    repeat), True when the status changed.
    """
    if target not in PAYMENT_TRANSITIONS:
        raise ValidationError(f"Unknown payment status: {target}")
    if payment.status == target:
        return False
    if target not in PAYMENT_TRANSITIONS[payment.status]:
        if is_locked(payment):
            raise LockedStateError(f"Payment is {payment.status} and cannot become {target}")
        raise ValidationError(f"Payment cannot move from {payment.status} to {target}")

    now = now or utcnow()
    if target in ("succeeded", "failed"):
        completed_at = completed_at or now
        if completed_at < payment.requested_at:
            raise ValidationError("completed_at must not precede requested_at")
        payment.completed_at = completed_at
    elif target == "refunded":
        payment.refunded_at = now

    ledger_payment_transitions_total.labels(from_status=payment.status, to_status=target).inc()
    payment.status = target
    payment.updated_at = now
    return True
