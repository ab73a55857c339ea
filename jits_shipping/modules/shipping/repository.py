"""
Order persistence for the shipping subsystem

The orchestration layer never touches ORM objects directly. It reads
OrderSnapshot values and writes through apply_changes(), a single
version-checked UPDATE: either every listed column changes and the version
bumps, or nothing changes and StaleOrderError is raised.

mark_tracking_synced() is the one exception: it only stamps when the sync
job last polled an order, which is not order state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from jits_shipping.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

# Columns the shipping subsystem is allowed to write
SHIPPING_COLUMNS = frozenset({
    "status",
    "service_level_code",
    "service_level_name",
    "shipping_cost",
    "tracking_number",
    "carrier_shipment_id",
    "carrier_name",
    "estimated_delivery",
    "shipped_at",
    "delivered_at",
})

# Statuses the tracking sync job polls
TRACKED_STATUSES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED)


class StaleOrderError(Exception):
    """Order row changed since it was read."""

    def __init__(self, order_id: int, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"Order {order_id} is no longer at version {expected_version}")


@dataclass
class OrderLine:
    product_name: str
    quantity: int
    unit_price: Decimal = Decimal("0")


@dataclass
class OrderSnapshot:
    """Point-in-time copy of the order fields shipping cares about."""
    id: int
    order_number: str
    status: OrderStatus
    version: int
    total_amount: Decimal
    user_id: Optional[int] = None

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

    shipping_full_name: Optional[str] = None
    shipping_address_line1: Optional[str] = None
    shipping_address_line2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_province: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    shipping_country: Optional[str] = "South Africa"

    service_level_code: Optional[str] = None
    service_level_name: Optional[str] = None
    shipping_cost: Optional[Decimal] = None

    tracking_number: Optional[str] = None
    carrier_shipment_id: Optional[str] = None
    carrier_name: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_tracking_sync_at: Optional[datetime] = None

    lines: List[OrderLine] = field(default_factory=list)

    @property
    def has_active_shipment(self) -> bool:
        return bool(self.tracking_number and self.tracking_number.strip())

    @property
    def needs_tracking_sync(self) -> bool:
        return self.has_active_shipment and self.status in TRACKED_STATUSES


class OrderRepository(Protocol):
    async def get(self, order_id: int) -> Optional[OrderSnapshot]:
        ...

    async def find_by_carrier_reference(
        self,
        carrier_shipment_id: Optional[str],
        tracking_references: Sequence[str] = (),
    ) -> Optional[OrderSnapshot]:
        ...

    async def list_active_shipments(self, limit: int) -> List[OrderSnapshot]:
        """Least recently polled first."""
        ...

    async def mark_tracking_synced(self, order_ids: Sequence[int], synced_at: datetime) -> None:
        ...
    async def apply_changes(
        self,
        order_id: int,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> OrderSnapshot:
        """Raises StaleOrderError when the version no longer matches."""
        ...


def _to_snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        id=order.id,
        order_number=order.order_number,
        status=OrderStatus(order.status),
        version=order.version,
        total_amount=Decimal(order.total_amount or 0),
        user_id=order.user_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        shipping_full_name=order.shipping_full_name,
        shipping_address_line1=order.shipping_address_line1,
        shipping_address_line2=order.shipping_address_line2,
        shipping_city=order.shipping_city,
        shipping_province=order.shipping_province,
        shipping_postal_code=order.shipping_postal_code,
        shipping_country=order.shipping_country,
        service_level_code=order.service_level_code,
        service_level_name=order.service_level_name,
        shipping_cost=Decimal(order.shipping_cost) if order.shipping_cost is not None else None,
        tracking_number=order.tracking_number,
        carrier_shipment_id=order.carrier_shipment_id,
        carrier_name=order.carrier_name,
        estimated_delivery=order.estimated_delivery,
        shipped_at=order.shipped_at,
        delivered_at=order.delivered_at,
        last_tracking_sync_at=order.last_tracking_sync_at,
        lines=[
            OrderLine(
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price or 0),
            )
            for item in order.items
        ],
    )


class SqlAlchemyOrderRepository:
    """OrderRepository backed by an AsyncSession. Each write commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _base_query(self):
        return (
            select(Order)
            .options(selectinload(Order.items))
            .execution_options(populate_existing=True)
        )

    async def get(self, order_id: int) -> Optional[OrderSnapshot]:
        result = await self.db.execute(self._base_query().where(Order.id == order_id))
        order = result.scalar_one_or_none()
        return _to_snapshot(order) if order else None

    async def find_by_carrier_reference(
        self,
        carrier_shipment_id: Optional[str],
        tracking_references: Sequence[str] = (),
    ) -> Optional[OrderSnapshot]:
        conditions = []
        if carrier_shipment_id:
            conditions.append(Order.carrier_shipment_id == str(carrier_shipment_id))
        refs = [r for r in tracking_references if r]
        if refs:
            conditions.append(Order.tracking_number.in_(refs))
        if not conditions:
            return None

        result = await self.db.execute(
            self._base_query().where(or_(*conditions)).order_by(Order.id.desc()).limit(1)
        )
        order = result.scalars().first()
        return _to_snapshot(order) if order else None

    async def list_active_shipments(self, limit: int) -> List[OrderSnapshot]:
        result = await self.db.execute(
            self._base_query()
            .where(
                Order.tracking_number.isnot(None),
                Order.status.in_([s.value for s in TRACKED_STATUSES]),
            )
            .order_by(Order.last_tracking_sync_at.asc().nulls_first(), Order.id.asc())
            .limit(limit)
        )
        return [_to_snapshot(o) for o in result.scalars().all()]

    async def mark_tracking_synced(self, order_ids: Sequence[int], synced_at: datetime) -> None:
        if not order_ids:
            return

        await self.db.execute(
            update(Order)
            .where(Order.id.in_(list(order_ids)))
            .values(last_tracking_sync_at=synced_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def apply_changes(
        self,
        order_id: int,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> OrderSnapshot:
        unknown = set(changes) - SHIPPING_COLUMNS
        if unknown:
            raise ValueError(f"Shipping may not write columns: {sorted(unknown)}")

        values = {
            key: (value.value if isinstance(value, OrderStatus) else value)
            for key, value in changes.items()
        }
        values["version"] = expected_version + 1
        values["updated_at"] = datetime.now(timezone.utc)

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleOrderError(order_id, expected_version)

        await self.db.commit()
        logger.debug(f"Order {order_id} v{expected_version} -> v{expected_version + 1}: {sorted(changes)}")

        snapshot = await self.get(order_id)
        if snapshot is None:
            # Deleted between the update and the re-read
            raise StaleOrderError(order_id, expected_version + 1)
        return snapshot
