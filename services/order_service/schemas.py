from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from shared.types import ExternalId


class OrderItemCreate(BaseModel):
    product_variant_id: ExternalId
    seller_id: ExternalId
    quantity: int
    unit_price: Decimal
    total_price: Decimal # checked against quantity * unit_price

    class Config:
        extra = "forbid"


class InitialPayment(BaseModel):
    payment_method: str = Field(min_length=1, max_length=32)
    amount: Optional[Decimal] = None # defaults to the order total less mileage
    external_reference: Optional[str] = Field(default=None, max_length=128)

    class Config:
        extra = "forbid"


class OrderCreate(BaseModel):
    customer_id: Optional[ExternalId] = None # defaults to the caller; admins may set it
    channel_id: ExternalId
    currency: str = Field(min_length=3, max_length=3)
    items: List[OrderItemCreate]
    mileage_eligible: bool = True
    payment: Optional[InitialPayment] = None

    class Config:
        extra = "forbid"


class CheckoutRequest(OrderCreate):
    mileage_to_use: int = 0
    mileage_seller_id: Optional[ExternalId] = None # None == platform-wide ledger


class OrderItemResponse(BaseModel):
    id: int
    order_id: int
    product_variant_id: str
    seller_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    customer_id: str
    channel_id: str
    status: str
    total_amount: Decimal
    currency: str
    mileage_used: int
    mileage_seller_id: Optional[str]
    mileage_state: str
    mileage_eligible: bool
    ordered_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class CheckoutResponse(BaseModel):
    order: OrderResponse
    payment_id: Optional[int] = None
    mileage_transaction_id: Optional[int] = None
