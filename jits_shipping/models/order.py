"""
Order models

The order row is owned by the storefront; the shipping subsystem mutates only
the shipping columns (service level, cost, tracking, carrier ids, status and
the shipped/delivered timestamps). `version` backs the optimistic
concurrency check used by every shipping mutation.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, Index
from sqlalchemy.orm import relationship

from jits_shipping.core.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def can_advance_to(self, target: "OrderStatus") -> bool:
        """Forward-only: terminal states never move, others only go up in rank."""
        if self.is_terminal:
            return False
        if target == OrderStatus.CANCELLED:
            return True
        return target.rank > self.rank


_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.CANCELLED: 4,
}


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)

    order_number = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, default=OrderStatus.PENDING.value, nullable=False, index=True)

    # Customer
    customer_name = Column(String)
    customer_email = Column(String)
    customer_phone = Column(String)

    # Shipping address
    shipping_full_name = Column(String)
    shipping_address_line1 = Column(String)
    shipping_address_line2 = Column(String)
    shipping_city = Column(String)
    shipping_province = Column(String)
    shipping_postal_code = Column(String)
    shipping_country = Column(String, default="South Africa")

    # Pricing - Numeric(12,2)
    total_amount = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=True)  # NULL = not yet known

    # Checkout selection
    service_level_code = Column(String(32))
    service_level_name = Column(String(128))

    # Carrier state
    tracking_number = Column(String(64), index=True)
    carrier_shipment_id = Column(String(64), index=True)
    carrier_name = Column(String(64))
    estimated_delivery = Column(DateTime(timezone=True))
    # Sync job bookkeeping, written without a version bump
    last_tracking_sync_at = Column(DateTime(timezone=True))

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=1)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_orders_user_id', 'user_id'),
        Index('ix_orders_active_tracking', 'status', postgresql_where=tracking_number.isnot(None)),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
