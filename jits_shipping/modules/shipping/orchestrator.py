"""
Shipment orchestration

Reconciles an order's persisted shipping state with the carrier:

    NoShipment --create--> ShipmentCreated --cancel--> NoShipment (re-create allowed)
    Delivered / Cancelled orders are terminal.

Every operation on one order runs under that order's lock, and every write
is a version-checked update. Nothing that may have caused a carrier-side
side effect (create, cancel) is retried here.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from jits_shipping.core.config import ShippingConfig
from jits_shipping.core.exceptions import (
    CancellationRejectedError,
    CarrierOutcomeUnknownError,
    CarrierRequestError,
    InvalidOrderError,
    LabelNotAvailableError,
    NoActiveShipmentError,
    OrderNotFoundError,
    ServiceLevelNotFoundError,
    ServiceLevelRequiredError,
    ShipmentAlreadyExistsError,
    ShipmentCancelledButNotPersistedError,
    ShipmentCreatedButNotPersistedError,
    ShippingValidationError,
)
from jits_shipping.core.order_locks import OrderLockManager, order_locks
from jits_shipping.models.order import OrderStatus
from jits_shipping.modules.shipping.carriers.base import (
    CarrierAPIError,
    CarrierGateway,
    CarrierShipment,
    CarrierTimeoutError,
    ContactInput,
    Parcel,
    ShipmentRequest,
)
from jits_shipping.modules.shipping.decisions import decision_from_order
from jits_shipping.modules.shipping.parcels import ParcelEstimator
from jits_shipping.modules.shipping.rates import RateResolver, destination_from_order, origin_address
from jits_shipping.modules.shipping.repository import OrderRepository, OrderSnapshot, StaleOrderError

logger = logging.getLogger(__name__)

RATE_SOURCE_STORED = "stored"
RATE_SOURCE_REQUOTED = "requoted"


@dataclass
class ShipmentResult:
    order_id: int
    tracking_number: str
    carrier_shipment_id: str
    carrier_name: str
    service_level_code: str
    service_level_name: str
    shipping_cost: Decimal
    status: OrderStatus
    rate_source: str
    parcel_count: int
    estimated_delivery: Optional[datetime] = None
    label_url: Optional[str] = None


@dataclass
class CancelShipmentResult:
    order_id: int
    cancelled_tracking_number: str
    status: OrderStatus


class ShipmentOrchestrator:
    def __init__(
        self,
        repository: OrderRepository,
        gateway: CarrierGateway,
        rate_resolver: Optional[RateResolver] = None,
        config: Optional[ShippingConfig] = None,
        estimator: Optional[ParcelEstimator] = None,
        locks: Optional[OrderLockManager] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.config = config or ShippingConfig()
        self.estimator = estimator or ParcelEstimator(self.config)
        self.rate_resolver = rate_resolver or RateResolver(gateway, self.config, self.estimator)
        self.locks = locks if locks is not None else order_locks

    async def _load(self, order_id: int) -> OrderSnapshot:
        order = await self.repository.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # ==================== Shipment Creation ====================

    async def create_shipment(
        self,
        order_id: int,
        service_level_code: Optional[str],
        parcels: Optional[Sequence[Parcel]] = None,
    ) -> ShipmentResult:
        code = (service_level_code or "").strip()
        if not code:
            # Never fall back to a default service level
            raise ServiceLevelRequiredError("A service level code is required to create a shipment")

        async with self.locks.hold(order_id):
            order = await self._load(order_id)

            if order.has_active_shipment:
                raise ShipmentAlreadyExistsError(order.id, order.tracking_number)
            if order.status.is_terminal:
                raise InvalidOrderError(
                    f"Order {order.id} is {order.status.value} and cannot be shipped",
                    order_id=order.id,
                )

            destination = destination_from_order(order)
            RateResolver.validate_address(destination)

            parcel_list = list(parcels) if parcels else self.estimator.estimate(order.lines, order_id=order.id)
            service_name, price, rate_source = await self._resolve_price(order, code, parcel_list)

            shipment = await self._create_with_carrier(order, code, parcel_list)
            persisted = await self._persist_creation(order, shipment, code, service_name, price)
            label_url = await self._try_label(shipment.carrier_shipment_id)

        logger.info(
            f"Shipment created for order {order.id}: {shipment.tracking_reference} "
            f"({code}, {price}, rate {rate_source})"
        )
        return ShipmentResult(
            order_id=persisted.id,
            tracking_number=shipment.tracking_reference,
            carrier_shipment_id=shipment.carrier_shipment_id,
            carrier_name=self.gateway.carrier_name,
            service_level_code=code,
            service_level_name=service_name,
            shipping_cost=price,
            status=persisted.status,
            rate_source=rate_source,
            parcel_count=len(parcel_list),
            estimated_delivery=persisted.estimated_delivery,
            label_url=label_url,
        )

    async def _resolve_price(
        self,
        order: OrderSnapshot,
        code: str,
        parcels: List[Parcel],
    ) -> Tuple[str, Decimal, str]:
        """Trust the checkout selection when the code matches, otherwise re-quote."""
        decision = decision_from_order(order)
        if decision.matches(code):
            logger.debug(f"Order {order.id}: reusing checkout rate {code} at {decision.price}")
            return decision.service_level_name, decision.price, RATE_SOURCE_STORED

        rates = await self.rate_resolver.get_rates(destination_from_order(order), parcels, order.total_amount)
        quote = rates.find(code)
        if quote is None:
            raise ServiceLevelNotFoundError(code, available=[r.service_level_code for r in rates.rates])

        price = Decimal("0") if rates.free_shipping_available else quote.total_price
        return quote.service_level_name, price, RATE_SOURCE_REQUOTED

    def _shipment_request(self, order: OrderSnapshot, code: str, parcels: List[Parcel]) -> ShipmentRequest:
        origin = self.config.origin
        return ShipmentRequest(
            origin=origin_address(self.config),
            origin_contact=ContactInput(
                name=origin.contact_name,
                mobile_number=origin.contact_phone,
                email=origin.contact_email,
            ),
            destination=destination_from_order(order),
            destination_contact=ContactInput(
                name=order.shipping_full_name or order.customer_name or "",
                mobile_number=order.customer_phone or "",
                email=order.customer_email or "",
            ),
            parcels=parcels,
            service_level_code=code,
            declared_value=order.total_amount,
            reference=order.order_number,
        )

    async def _create_with_carrier(self, order: OrderSnapshot, code: str, parcels: List[Parcel]) -> CarrierShipment:
        request = self._shipment_request(order, code, parcels)
        try:
            return await asyncio.wait_for(
                self.gateway.create_shipment(request),
                timeout=self.config.carrier_timeout_seconds,
            )
        except (asyncio.TimeoutError, CarrierTimeoutError) as e:
            logger.error(
                f"Carrier outcome unknown creating shipment for order {order.id} "
                f"({order.order_number}): {e}. Check the carrier before retrying."
            )
            raise CarrierOutcomeUnknownError(
                f"Carrier did not confirm shipment creation for order {order.id}; "
                "verify with the carrier before retrying",
                order_id=order.id,
                operation="create_shipment",
            ) from e
        except CarrierAPIError as e:
            raise CarrierRequestError(
                f"Carrier rejected shipment for order {order.id}: {e.message}",
                details={"order_id": order.id, "carrier_code": e.code},
            ) from e

    def _divergence(
        self,
        order: OrderSnapshot,
        shipment: CarrierShipment,
        reason: str,
    ) -> ShipmentCreatedButNotPersistedError:
        logger.error(
            f"SHIPMENT NOT PERSISTED: order {order.id} carrier_shipment_id={shipment.carrier_shipment_id} "
            f"tracking={shipment.tracking_reference}: {reason}"
        )
        return ShipmentCreatedButNotPersistedError(
            f"Carrier created shipment {shipment.carrier_shipment_id} but order {order.id} "
            f"could not be updated: {reason}",
            order_id=order.id,
            carrier_shipment_id=shipment.carrier_shipment_id,
            tracking_number=shipment.tracking_reference,
        )

    async def _persist_creation(
        self,
        order: OrderSnapshot,
        shipment: CarrierShipment,
        code: str,
        service_name: str,
        price: Decimal,
    ) -> OrderSnapshot:
        if not (shipment.tracking_reference or "").strip():
            # An order without a tracking number reads as unshipped
            raise self._divergence(order, shipment, "carrier returned no tracking reference")

        changes: Dict[str, Any] = {
            "tracking_number": shipment.tracking_reference,
            "carrier_shipment_id": shipment.carrier_shipment_id,
            "carrier_name": self.gateway.carrier_name,
            "shipping_cost": price,
            "service_level_code": code,
            "service_level_name": service_name,
            "estimated_delivery": shipment.estimated_delivery_to or shipment.estimated_delivery_from,
        }

        current = order
        for attempt in range(2):
            if current.status == OrderStatus.PENDING:
                changes["status"] = OrderStatus.PROCESSING
            else:
                changes.pop("status", None)

            try:
                return await self.repository.apply_changes(current.id, current.version, changes)
            except StaleOrderError as e:
                logger.warning(f"Order {order.id} changed while shipment was created (attempt {attempt + 1})")
                try:
                    current = await self.repository.get(order.id)
                except Exception as reread_error:
                    raise self._divergence(order, shipment, f"re-read failed: {reread_error}") from reread_error
                if current is None:
                    raise self._divergence(order, shipment, "order disappeared") from e
                if current.has_active_shipment:
                    raise self._divergence(
                        order, shipment, f"order already references shipment {current.tracking_number}"
                    ) from e
            except Exception as e:
                raise self._divergence(order, shipment, f"{type(e).__name__}: {e}") from e

        raise self._divergence(order, shipment, "order kept changing concurrently")

    async def _try_label(self, carrier_shipment_id: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(
                self.gateway.get_label_url(carrier_shipment_id),
                timeout=self.config.carrier_timeout_seconds,
            )
        except (asyncio.TimeoutError, CarrierAPIError) as e:
            logger.warning(f"Label not yet available for shipment {carrier_shipment_id}: {e}")
            return None

    # ==================== Cancellation ====================

    async def cancel_shipment(self, order_id: int) -> CancelShipmentResult:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)

            if not order.has_active_shipment:
                raise NoActiveShipmentError(order.id)
            if order.status == OrderStatus.DELIVERED:
                raise CancellationRejectedError(
                    f"Order {order.id} has already been delivered",
                    reason="delivered",
                )

            tracking_number = order.tracking_number
            try:
                result = await asyncio.wait_for(
                    self.gateway.cancel_shipment(tracking_number),
                    timeout=self.config.carrier_timeout_seconds,
                )
            except (asyncio.TimeoutError, CarrierTimeoutError) as e:
                logger.error(f"Carrier outcome unknown cancelling {tracking_number} for order {order.id}: {e}")
                raise CarrierOutcomeUnknownError(
                    f"Carrier did not confirm cancellation of {tracking_number}; verify before retrying",
                    order_id=order.id,
                    operation="cancel_shipment",
                ) from e
            except CarrierAPIError as e:
                raise CarrierRequestError(
                    f"Carrier cancel request failed for {tracking_number}: {e.message}",
                    details={"order_id": order.id, "carrier_code": e.code},
                ) from e

            if not result.success:
                logger.warning(f"Cancellation of {tracking_number} rejected by carrier: {result.reason}")
                raise CancellationRejectedError(
                    f"Carrier refused to cancel shipment {tracking_number}",
                    reason=result.reason,
                )

            persisted = await self._persist_cancellation(order)

        logger.info(f"Shipment {tracking_number} cancelled for order {order.id}")
        return CancelShipmentResult(
            order_id=order.id,
            cancelled_tracking_number=tracking_number,
            status=persisted.status,
        )

    async def _persist_cancellation(self, order: OrderSnapshot) -> OrderSnapshot:
        changes = {"tracking_number": None, "carrier_shipment_id": None, "shipping_cost": None}

        def divergence(reason: str) -> ShipmentCancelledButNotPersistedError:
            logger.error(
                f"CANCELLATION NOT PERSISTED: order {order.id} carrier_shipment_id={order.carrier_shipment_id} "
                f"tracking={order.tracking_number}: {reason}"
            )
            return ShipmentCancelledButNotPersistedError(
                f"Carrier cancelled {order.tracking_number} but order {order.id} still references it: {reason}",
                order_id=order.id,
                carrier_shipment_id=order.carrier_shipment_id,
                tracking_number=order.tracking_number,
            )

        current = order
        for _ in range(2):
            try:
                return await self.repository.apply_changes(current.id, current.version, changes)
            except StaleOrderError as e:
                try:
                    current = await self.repository.get(order.id)
                except Exception as reread_error:
                    raise divergence(f"re-read failed: {reread_error}") from reread_error
                if current is None:
                    raise divergence("order disappeared") from e
                if current.tracking_number != order.tracking_number:
                    if not current.has_active_shipment:
                        return current
                    raise divergence(f"order now references {current.tracking_number}") from e
            except Exception as e:
                raise divergence(f"{type(e).__name__}: {e}") from e

        raise divergence("order kept changing concurrently")

    # ==================== Labels ====================

    async def get_label_url(self, carrier_shipment_id: str) -> str:
        if not carrier_shipment_id or not str(carrier_shipment_id).strip():
            raise ShippingValidationError("carrier_shipment_id is required")

        try:
            url = await asyncio.wait_for(
                self.gateway.get_label_url(str(carrier_shipment_id)),
                timeout=self.config.carrier_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise CarrierRequestError(
                f"Label request for shipment {carrier_shipment_id} timed out",
                code="LABEL_REQUEST_TIMEOUT",
            ) from e
        except CarrierAPIError as e:
            raise CarrierRequestError(
                f"Label request for shipment {carrier_shipment_id} failed: {e.message}",
                details={"carrier_code": e.code},
            ) from e

        if not url:
            raise LabelNotAvailableError(
                f"Label for shipment {carrier_shipment_id} is not available yet",
                details={"carrier_shipment_id": carrier_shipment_id},
            )
        return url

    async def get_label_url_for_order(self, order_id: int) -> str:
        order = await self._load(order_id)
        if not order.carrier_shipment_id:
            raise NoActiveShipmentError(order.id)
        return await self.get_label_url(order.carrier_shipment_id)
