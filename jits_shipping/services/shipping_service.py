"""
Shipping Service

Per-request facade that wires the shipping components to a database
session, the configured carrier and the process-wide order locks.
"""
import logging
from typing import AsyncGenerator, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from jits_shipping.core.config import Settings, ShippingConfig, settings as app_settings
from jits_shipping.core.database import get_db
from jits_shipping.core.exceptions import OrderNotFoundError, WebhookPayloadError
from jits_shipping.core.order_locks import OrderLockManager, order_locks
from jits_shipping.modules.shipping.carriers import CarrierFactory
from jits_shipping.modules.shipping.carriers.base import CarrierCode, CarrierGateway
from jits_shipping.modules.shipping.orchestrator import ShipmentOrchestrator
from jits_shipping.modules.shipping.parcels import ParcelEstimator
from jits_shipping.modules.shipping.rates import RateResolver
from jits_shipping.modules.shipping.repository import OrderRepository, OrderSnapshot, SqlAlchemyOrderRepository
from jits_shipping.modules.shipping.tracking import TrackingProjector, WebhookResult

logger = logging.getLogger(__name__)


class ShippingService:
    """
    Central service for all shipping operations.
    """

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        settings: Optional[Settings] = None,
        gateway: Optional[CarrierGateway] = None,
        repository: Optional[OrderRepository] = None,
        config: Optional[ShippingConfig] = None,
        locks: Optional[OrderLockManager] = None,
    ):
        self.db = db
        self.settings = settings or app_settings
        self.config = config or ShippingConfig.from_settings(self.settings)
        self.locks = locks if locks is not None else order_locks
        self.estimator = ParcelEstimator(self.config)
        self._gateway = gateway
        self._owns_gateway = gateway is None
        if repository is None:
            if db is None:
                raise ValueError("ShippingService needs a database session or a repository")
            repository = SqlAlchemyOrderRepository(db)
        self.repository = repository

        self._rates: Optional[RateResolver] = None
        self._orchestrator: Optional[ShipmentOrchestrator] = None
        self._tracking: Optional[TrackingProjector] = None

    @property
    def gateway(self) -> CarrierGateway:
        """Get or create the carrier client."""
        if self._gateway is None:
            self._gateway = CarrierFactory.get_carrier(CarrierCode.SHIPLOGIC, self.settings)
        return self._gateway

    @property
    def rates(self) -> RateResolver:
        if self._rates is None:
            self._rates = RateResolver(self.gateway, self.config, self.estimator)
        return self._rates

    @property
    def orchestrator(self) -> ShipmentOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = ShipmentOrchestrator(
                repository=self.repository,
                gateway=self.gateway,
                rate_resolver=self.rates,
                config=self.config,
                estimator=self.estimator,
                locks=self.locks,
            )
        return self._orchestrator

    @property
    def tracking(self) -> TrackingProjector:
        if self._tracking is None:
            self._tracking = TrackingProjector(
                gateway=self.gateway,
                repository=self.repository,
                config=self.config,
                locks=self.locks,
            )
        return self._tracking

    async def close(self):
        """Release the carrier client if this service created it."""
        if self._gateway is not None and self._owns_gateway:
            await self._gateway.close()
            self._gateway = None

    # ==================== Orders ====================

    async def get_order(self, order_id: int) -> OrderSnapshot:
        order = await self.repository.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # ==================== Webhooks ====================

    async def handle_webhook(self, payload: dict) -> WebhookResult:
        """Parse and apply a carrier webhook. Raises WebhookPayloadError for malformed payloads."""
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook payload must be a JSON object")
        try:
            event = self.gateway.parse_webhook(payload)
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            raise WebhookPayloadError(f"Malformed webhook payload: {e}") from e
        return await self.tracking.apply_webhook(event)


async def get_shipping_service(db: AsyncSession = Depends(get_db)) -> AsyncGenerator[ShippingService, None]:
    """FastAPI dependency: one service per request, carrier client closed afterwards."""
    service = ShippingService(db)
    try:
        yield service
    finally:
        await service.close()
