from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)

from shared.config.database import Base, UTCDateTime, utcnow


class MileageLedger(Base):
    __tablename__ = "mileage_ledgers"
    __table_args__ = (
        UniqueConstraint("customer_id", "seller_id", name="uq_ledger_customer_seller"),
        # NULL seller (platform-wide ledger) is not covered by the constraint above
        Index(
            "uq_ledger_customer_platform",
            "customer_id",
            unique=True,
            postgresql_where=text("seller_id IS NULL"),
            sqlite_where=text("seller_id IS NULL"),
        ),
        {"schema": "mileage_schema"},
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="active")

    total_accrued = Column(Integer, nullable=False, default=0)
    usable_mileage = Column(Integer, nullable=False, default=0)
    expired_mileage = Column(Integer, nullable=False, default=0)
    on_hold_mileage = Column(Integer, nullable=False, default=0)
    spent_mileage = Column(Integer, nullable=False, default=0)

    # nearest expiry horizon of the credits still on the ledger
    expires_at = Column(UTCDateTime, nullable=True, index=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def is_conserved(self) -> bool:
        return self.total_accrued == (
            self.usable_mileage
            + self.expired_mileage
            + self.on_hold_mileage
            + self.spent_mileage
        )


class MileageTransaction(Base):
    """Append-only. Rows are never updated or deleted."""

    __tablename__ = "mileage_transactions"
    __table_args__ = (
        UniqueConstraint("mileage_ledger_id", "batch_id", name="uq_transaction_expiry_batch"),
        Index("ix_transaction_ledger_created", "mileage_ledger_id", "created_at"),
        {"schema": "mileage_schema"},
    )

    id = Column(Integer, primary_key=True, index=True)
    mileage_ledger_id = Column(
        Integer, ForeignKey("mileage_schema.mileage_ledgers.id"), nullable=False
    )
    type = Column(String(16), nullable=False)
    # signed effect on usable_mileage
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reference_order_id = Column(Integer, nullable=True, index=True)
    reason = Column(String(255), nullable=True)
    evidence_reference = Column(String(255), nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    batch_id = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
