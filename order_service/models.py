from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Full precision for amounts; rounding to cents happens when they are exposed
AMOUNT = Numeric(18, 4)


class OrderRecord(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    customer_name = Column(String(255), nullable=False, default="")
    customer_email = Column(String(255), nullable=False, default="")
    customer_phone = Column(String(64), nullable=False, default="")

    status = Column(String(20), nullable=False, index=True)
    payment_status = Column(String(20), nullable=False)
    shipping_status = Column(String(20), nullable=False)

    currency = Column(String(3), nullable=False)
    subtotal = Column(AMOUNT, nullable=False)
    tax_amount = Column(AMOUNT, nullable=False)
    shipping_cost = Column(AMOUNT, nullable=False)
    discount_amount = Column(AMOUNT, nullable=False)
    total_amount = Column(AMOUNT, nullable=False)

    # Addresses are owned value objects, stored inline as JSON
    shipping_address = Column(JSON, nullable=False)
    billing_address = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    created_by = Column(String(255), nullable=False, default="")
    updated_by = Column(String(255), nullable=True)

    # Optimistic concurrency token
    version = Column(Integer, nullable=False, default=1)

    items = relationship(
        "OrderItemRecord",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItemRecord.position",
    )

    __table_args__ = (
        CheckConstraint("version >= 1", name="orders_version_positive"),
    )

    def __repr__(self):
        return f"<OrderRecord(id='{self.id}', order_number='{self.order_number}', status='{self.status}')>"


class OrderItemRecord(Base):
    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(64), nullable=False)
    product_name = Column(String(255), nullable=False)
    product_sku = Column(String(64), nullable=True)
    unit_price = Column(AMOUNT, nullable=False)
    quantity = Column(Integer, nullable=False)
    total_price = Column(AMOUNT, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    order = relationship("OrderRecord", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_items_quantity_positive"),
    )

    def __repr__(self):
        return f"<OrderItemRecord(product_id='{self.product_id}', quantity={self.quantity})>"
