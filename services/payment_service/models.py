from sqlalchemy import Column, Integer, Numeric, String

from shared.config.database import Base, UTCDateTime, utcnow


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, nullable=False, index=True)
    payment_method = Column(String(32), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default="pending") # pending, succeeded, failed, refunded
    requested_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    external_reference = Column(String(128), nullable=True)

    # points credited / clawed back for this payment; markers for idempotent ledger effects
    mileage_accrued = Column(Integer, nullable=False, default=0)
    mileage_reversed = Column(Integer, nullable=False, default=0)

    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PendingLedgerEffect(Base):
    """Ledger side effect of a payment transition that failed and awaits retry."""

    __tablename__ = "pending_ledger_effects"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, nullable=False, index=True)
    effect = Column(String(16), nullable=False) # accrue, reverse, settle_hold, release_hold
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(500), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime, nullable=True)
