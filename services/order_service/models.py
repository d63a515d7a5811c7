from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from shared.config.database import Base, UTCDateTime, utcnow


class Order(Base):
    __tablename__ = "orders"
    # We use a separate schema to simulate microservice isolation
    __table_args__ = {"schema": "order_schema"}

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    channel_id = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="pending") # pending, paid, cancelled, completed
    total_amount = Column(Numeric(14, 2), nullable=False) # sum of item totals, fixed at creation
    currency = Column(String(3), nullable=False)
    mileage_used = Column(Integer, nullable=False, default=0) # points applied at checkout
    mileage_seller_id = Column(String(64), nullable=True) # ledger the points came from; None == platform-wide
    mileage_state = Column(String(16), nullable=False, default="none") # none, held, spent, released
    mileage_eligible = Column(Boolean, nullable=False, default=True)
    ordered_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    # Items are attached at creation only
    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def amount_due(self) -> Decimal:
        """Order total less the points applied to it (1 point == 1 currency unit)."""
        return Decimal(self.total_amount) - Decimal(self.mileage_used or 0)

    @property
    def is_finalized(self) -> bool:
        return self.status in ("completed", "cancelled")


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
        {"schema": "order_schema"},
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("order_schema.orders.id"), nullable=False, index=True)
    product_variant_id = Column(String(64), nullable=False)
    seller_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)
    total_price = Column(Numeric(14, 2), nullable=False) # quantity * unit_price

    order = relationship("Order", back_populates="items")
