"""
Tracking projection and webhook application

get_tracking() turns a raw carrier payload into an ascending timeline with
a current status description and proof of delivery. It never touches the
order.

apply_webhook() / refresh_order() advance the order status from carrier
status. Transitions are forward-only, so repeated or out-of-order events are
harmless no-ops.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from jits_shipping.core.config import ShippingConfig
from jits_shipping.core.exceptions import (
    ConcurrentUpdateError,
    NoActiveShipmentError,
    OrderNotFoundError,
    ShippingValidationError,
    TrackingUnavailableError,
)
from jits_shipping.core.order_locks import OrderLockManager, order_locks
from jits_shipping.models.order import OrderStatus
from jits_shipping.modules.shipping.carriers.base import (
    CarrierAPIError,
    CarrierGateway,
    CarrierTracking,
    CarrierTrackingEvent,
    TrackingStatus,
    WebhookEvent,
)
from jits_shipping.modules.shipping.repository import OrderRepository, OrderSnapshot, StaleOrderError

logger = logging.getLogger(__name__)

# Carrier status -> order status. Statuses not listed leave the order unchanged.
ORDER_STATUS_FOR_TRACKING = {
    TrackingStatus.CREATED: OrderStatus.PROCESSING,
    TrackingStatus.COLLECTED: OrderStatus.SHIPPED,
    TrackingStatus.IN_TRANSIT: OrderStatus.SHIPPED,
    TrackingStatus.OUT_FOR_DELIVERY: OrderStatus.SHIPPED,
    TrackingStatus.DELIVERED: OrderStatus.DELIVERED,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass
class TrackingEvent:
    timestamp: Optional[datetime]
    status: str
    message: str
    location: Optional[str] = None
    source: Optional[str] = None


@dataclass
class ProofOfDelivery:
    method: str
    recipient_name: Optional[str] = None
    image_urls: List[str] = field(default_factory=list)
    pdf_urls: List[str] = field(default_factory=list)
    delivered_at: Optional[datetime] = None


@dataclass
class TrackingState:
    tracking_reference: str
    status: TrackingStatus
    carrier_status: str
    status_description: str
    events: List[TrackingEvent] = field(default_factory=list)
    proof_of_delivery: Optional[ProofOfDelivery] = None
    collection_hub: Optional[str] = None
    delivery_hub: Optional[str] = None
    collected_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None


@dataclass
class TrackingUpdate:
    """Carrier status for one shipment, from a webhook or a tracking poll."""
    carrier_status: str
    carrier_shipment_id: Optional[str] = None
    tracking_references: Sequence[str] = ()
    event_time: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None

    @classmethod
    def from_webhook(cls, event: WebhookEvent) -> "TrackingUpdate":
        return cls(
            carrier_status=event.status,
            carrier_shipment_id=event.carrier_shipment_id,
            tracking_references=tuple(event.tracking_references),
            event_time=event.event_time,
            collected_at=event.collected_at,
            delivered_at=event.delivered_at,
            estimated_delivery=event.estimated_delivery_to or event.estimated_delivery_from,
        )


@dataclass
class WebhookResult:
    order_id: Optional[int]
    applied_status: Optional[OrderStatus] = None
    previous_status: Optional[OrderStatus] = None
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return self.applied_status is None


class TrackingProjector:
    def __init__(
        self,
        gateway: CarrierGateway,
        repository: Optional[OrderRepository] = None,
        config: Optional[ShippingConfig] = None,
        locks: Optional[OrderLockManager] = None,
    ):
        self.gateway = gateway
        self.repository = repository
        self.config = config or ShippingConfig()
        self.locks = locks if locks is not None else order_locks

    # ==================== Projection ====================

    def _proof_of_delivery(self, raw: CarrierTracking, events: List[CarrierTrackingEvent]) -> Optional[ProofOfDelivery]:
        delivered = [e for e in events if self.gateway.map_status(e.status) == TrackingStatus.DELIVERED]
        if not delivered:
            return ProofOfDelivery(method="Delivered", delivered_at=raw.delivered_at)

        event = delivered[-1]
        has_evidence = bool(event.images or event.pdfs)
        return ProofOfDelivery(
            method=event.message if has_evidence and event.message else "Delivered",
            recipient_name=event.recipient_name,
            image_urls=list(event.images),
            pdf_urls=list(event.pdfs),
            delivered_at=raw.delivered_at or event.timestamp,
        )

    def project(self, raw: CarrierTracking) -> TrackingState:
        raw_events = sorted(raw.events, key=lambda e: _as_utc(e.timestamp) or _EPOCH)

        carrier_status = raw.status or (raw_events[-1].status if raw_events else "")
        status = self.gateway.map_status(carrier_status) if carrier_status else TrackingStatus.UNKNOWN

        if raw_events:
            description = self.gateway.describe_status(raw_events[-1].status)
        else:
            description = self.gateway.describe_status(carrier_status)

        pod = self._proof_of_delivery(raw, raw_events) if status == TrackingStatus.DELIVERED else None

        return TrackingState(
            tracking_reference=raw.tracking_reference,
            status=status,
            carrier_status=carrier_status,
            status_description=description,
            events=[
                TrackingEvent(
                    timestamp=e.timestamp,
                    status=e.status,
                    message=e.message or self.gateway.describe_status(e.status),
                    location=e.location,
                    source=e.source,
                )
                for e in raw_events
            ],
            proof_of_delivery=pod,
            collection_hub=raw.collection_hub,
            delivery_hub=raw.delivery_hub,
            collected_at=raw.collected_at,
            delivered_at=raw.delivered_at,
            estimated_delivery_from=raw.estimated_delivery_from,
            estimated_delivery_to=raw.estimated_delivery_to,
        )

    async def get_tracking(self, tracking_reference: str) -> TrackingState:
        reference = (tracking_reference or "").strip()
        if not reference:
            raise ShippingValidationError("Tracking reference is required")

        try:
            raw = await asyncio.wait_for(
                self.gateway.get_tracking(reference),
                timeout=self.config.carrier_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TrackingUnavailableError(f"Tracking lookup for {reference} timed out") from e
        except CarrierAPIError as e:
            logger.warning(f"Tracking lookup for {reference} failed: {e.code} - {e.message}")
            raise TrackingUnavailableError(
                f"Tracking for {reference} is unavailable: {e.message}",
                details={"tracking_reference": reference, "carrier_code": e.code},
            ) from e

        return self.project(raw)

    async def get_tracking_for_order(self, order_id: int) -> TrackingState:
        if self.repository is None:
            raise RuntimeError("TrackingProjector needs a repository to look up orders")

        order = await self.repository.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if not order.has_active_shipment:
            raise NoActiveShipmentError(order.id)
        return await self.get_tracking(order.tracking_number)

    # ==================== Order Status Updates ====================

    def target_status(self, carrier_status: str, order_id: Optional[int] = None) -> Optional[OrderStatus]:
        tracking_status = self.gateway.map_status(carrier_status)
        target = ORDER_STATUS_FOR_TRACKING.get(tracking_status)
        if target is None:
            logger.warning(
                f"Order {order_id}: carrier status '{carrier_status}' ({tracking_status.value}) "
                "does not change order status"
            )
        return target

    @staticmethod
    def _same_shipment(order: OrderSnapshot, update: TrackingUpdate) -> bool:
        if update.carrier_shipment_id and order.carrier_shipment_id == str(update.carrier_shipment_id):
            return True
        return bool(order.tracking_number) and order.tracking_number in update.tracking_references

    def _changes_for(self, order: OrderSnapshot, target: Optional[OrderStatus], update: TrackingUpdate) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        now = datetime.now(timezone.utc)

        if target is not None and order.status.can_advance_to(target):
            changes["status"] = target
            if target in (OrderStatus.SHIPPED, OrderStatus.DELIVERED) and order.shipped_at is None:
                changes["shipped_at"] = update.collected_at or update.event_time or now
            if target == OrderStatus.DELIVERED and order.delivered_at is None:
                changes["delivered_at"] = update.delivered_at or update.event_time or now

        if (
            update.estimated_delivery is not None
            and not order.status.is_terminal
            and _as_utc(update.estimated_delivery) != _as_utc(order.estimated_delivery)
        ):
            changes["estimated_delivery"] = update.estimated_delivery

        return changes

    async def apply_update(self, order_id: int, update: TrackingUpdate) -> WebhookResult:
        """Apply a carrier status to one order, forward-only, under the order lock."""
        if self.repository is None:
            raise RuntimeError("TrackingProjector needs a repository to update orders")

        async with self.locks.hold(order_id):
            for attempt in range(2):
                order = await self.repository.get(order_id)
                if order is None or not self._same_shipment(order, update):
                    logger.info(f"Order {order_id} no longer references this shipment, ignoring update")
                    return WebhookResult(order_id=order_id, reason="shipment_not_on_order")

                target = self.target_status(update.carrier_status, order_id=order.id)
                changes = self._changes_for(order, target, update)
                if not changes:
                    return WebhookResult(
                        order_id=order.id,
                        previous_status=order.status,
                        reason="unmapped_status" if target is None else "no_change",
                    )

                try:
                    updated = await self.repository.apply_changes(order.id, order.version, changes)
                except StaleOrderError as e:
                    if attempt == 0:
                        logger.warning(f"Order {order.id} changed during tracking update, retrying")
                        continue
                    raise ConcurrentUpdateError(
                        f"Order {order.id} kept changing while applying carrier status",
                        details={"order_id": order.id, "carrier_status": update.carrier_status},
                    ) from e

                if "status" not in changes:
                    return WebhookResult(order_id=order.id, previous_status=order.status, reason="details_updated")

                logger.info(
                    f"Order {order.id} status {order.status.value} -> {updated.status.value} "
                    f"(carrier: {update.carrier_status})"
                )
                return WebhookResult(
                    order_id=order.id,
                    applied_status=updated.status,
                    previous_status=order.status,
                    reason="applied",
                )

        # Unreachable: the loop either returns or raises
        raise ConcurrentUpdateError(f"Order {order_id} tracking update did not complete")

    async def apply_webhook(self, event: WebhookEvent) -> WebhookResult:
        if self.repository is None:
            raise RuntimeError("TrackingProjector needs a repository to apply webhooks")

        update = TrackingUpdate.from_webhook(event)
        order = await self.repository.find_by_carrier_reference(
            update.carrier_shipment_id, update.tracking_references
        )
        if order is None:
            logger.info(
                f"Webhook for unknown shipment id={event.carrier_shipment_id} "
                f"refs={list(event.tracking_references)} status={event.status}, ignoring"
            )
            return WebhookResult(order_id=None, reason="unknown_shipment")

        return await self.apply_update(order.id, update)

    async def refresh_order(self, order: OrderSnapshot) -> WebhookResult:
        """Poll the carrier for one order's shipment and apply it."""
        if not order.has_active_shipment:
            return WebhookResult(order_id=order.id, reason="no_active_shipment")

        state = await self.get_tracking(order.tracking_number)
        update = TrackingUpdate(
            carrier_status=state.carrier_status,
            carrier_shipment_id=order.carrier_shipment_id,
            tracking_references=(order.tracking_number, state.tracking_reference),
            event_time=state.events[-1].timestamp if state.events else None,
            collected_at=state.collected_at,
            delivered_at=state.delivered_at,
            estimated_delivery=state.estimated_delivery_to or state.estimated_delivery_from,
        )
        return await self.apply_update(order.id, update)
