from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

PaymentStatus = Literal["pending", "succeeded", "failed", "refunded"]


class PaymentCreate(BaseModel):
    order_id: int
    payment_method: str = Field(min_length=1, max_length=32)
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    external_reference: Optional[str] = Field(default=None, max_length=128)

    class Config:
        extra = "forbid"


class PaymentUpdate(BaseModel):
    # no status here; status changes go through PaymentTransition
    payment_method: Optional[str] = Field(default=None, min_length=1, max_length=32)
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    external_reference: Optional[str] = Field(default=None, max_length=128)

    class Config:
        extra = "forbid"


class PaymentTransition(BaseModel):
    status: PaymentStatus
    completed_at: Optional[datetime] = None

    class Config:
        extra = "forbid"


class PaymentResponse(BaseModel):
    id: int
    order_id: int
    payment_method: str
    amount: Decimal
    currency: str
    status: str
    requested_at: datetime
    completed_at: Optional[datetime]
    refunded_at: Optional[datetime]
    external_reference: Optional[str]
    mileage_accrued: int
    mileage_reversed: int

    class Config:
        from_attributes = True
