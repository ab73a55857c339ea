"""
Shipping Module

- CarrierGateway interface for carrier implementations (Ship Logic)
- ParcelEstimator / RateResolver for checkout quotes
- ShipmentOrchestrator for create / cancel / label
- TrackingProjector for tracking timelines and webhooks
"""
from jits_shipping.modules.shipping.carriers import CarrierFactory, get_carrier
from jits_shipping.modules.shipping.carriers.base import CarrierGateway
from jits_shipping.modules.shipping.parcels import ParcelEstimator, default_parcel
from jits_shipping.modules.shipping.rates import RateResolver, ShippingRatesResult
from jits_shipping.modules.shipping.orchestrator import ShipmentOrchestrator, ShipmentResult, CancelShipmentResult
from jits_shipping.modules.shipping.tracking import TrackingProjector, TrackingState, WebhookResult

__all__ = [
    "CarrierFactory",
    "get_carrier",
    "CarrierGateway",
    "ParcelEstimator",
    "default_parcel",
    "RateResolver",
    "ShippingRatesResult",
    "ShipmentOrchestrator",
    "ShipmentResult",
    "CancelShipmentResult",
    "TrackingProjector",
    "TrackingState",
    "WebhookResult",
]
