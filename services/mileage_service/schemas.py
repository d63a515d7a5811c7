from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from shared.types import ExternalId

LedgerStatus = Literal["active", "frozen", "expired"]
TransactionType = Literal["accrue", "spend", "expire", "hold", "release", "reverse"]


class MileageAccrue(BaseModel):
    class Config:
        extra = "forbid"

    customer_id: ExternalId
    seller_id: Optional[ExternalId] = None
    amount: int
    reference_order_id: Optional[int] = None
    reason: Optional[str] = Field(default=None, max_length=255)
    evidence_reference: Optional[str] = Field(default=None, max_length=255)


class MileageSpend(MileageAccrue):
    pass


class MileageExpire(BaseModel):
    class Config:
        extra = "forbid"

    amount: int
    batch_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    now: Optional[datetime] = None


class LedgerCreate(BaseModel):
    class Config:
        extra = "forbid"

    customer_id: ExternalId
    seller_id: Optional[ExternalId] = None
    initial_balance: int = 0
    reason: Optional[str] = Field(default=None, max_length=255)


class LedgerStatusUpdate(BaseModel):
    class Config:
        extra = "forbid"

    # 'expired' is only ever set by the expiry sweep
    status: Literal["active", "frozen"]


class MileageTransactionResponse(BaseModel):
    id: int
    mileage_ledger_id: int
    type: str
    amount: int
    balance_after: int
    reference_order_id: Optional[int]
    reason: Optional[str]
    evidence_reference: Optional[str]
    expires_at: Optional[datetime]
    batch_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class MileageLedgerResponse(BaseModel):
    id: int
    customer_id: str
    seller_id: Optional[str]
    status: str
    total_accrued: int
    usable_mileage: int
    expired_mileage: int
    on_hold_mileage: int
    spent_mileage: int
    expires_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime]

    class Config:
        from_attributes = True


class SweepResponse(BaseModel):
    batch_id: str
    expired: dict[int, int]
    skipped: list[int]
    failed: dict[int, str]
