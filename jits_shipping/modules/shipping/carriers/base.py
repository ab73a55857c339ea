"""
Carrier Gateway Interface

Every carrier the store ships with implements CarrierGateway. The
orchestration layer talks only to these carrier-agnostic dataclasses:
- Rate quoting
- Shipment creation and cancellation
- Tracking
- Label retrieval
- Webhook parsing
- Status mapping
"""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from jits_shipping.core.exceptions import ShippingValidationError


class CarrierCode(str, enum.Enum):
    SHIPLOGIC = "shiplogic"


class TrackingStatus(str, enum.Enum):
    """Normalized carrier-side shipment status."""
    CREATED = "created"
    COLLECTED = "collected"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class CarrierAPIError(Exception):
    """Carrier answered with an error, or the request never reached it."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)


class CarrierTimeoutError(CarrierAPIError):
    """Request was sent but no usable answer came back. Outcome is unknown."""

    def __init__(self, message: str, code: str = "TIMEOUT", details: Optional[Dict] = None):
        super().__init__(message, code=code, details=details)


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class AddressInput:
    """Street address in carrier terms (zone = province)."""
    street_address: str
    city: str
    zone: str
    postal_code: str
    country: str = "ZA"
    local_area: Optional[str] = None
    company: Optional[str] = None
    address_type: str = "residential"

    def missing_fields(self) -> List[str]:
        required = {
            "street_address": self.street_address,
            "city": self.city,
            "zone": self.zone,
            "postal_code": self.postal_code,
            "country": self.country,
        }
        return [name for name, value in required.items() if not (value or "").strip()]


@dataclass
class ContactInput:
    name: str
    mobile_number: str = ""
    email: str = ""


@dataclass
class Parcel:
    """Parcel dimensions (cm) and weight (kg)."""
    length_cm: float
    width_cm: float
    height_cm: float
    weight_kg: float
    description: str = "Apparel"

    def __post_init__(self):
        dims = {
            "length_cm": self.length_cm,
            "width_cm": self.width_cm,
            "height_cm": self.height_cm,
            "weight_kg": self.weight_kg,
        }
        bad = [name for name, value in dims.items() if value is None or value <= 0]
        if bad:
            raise ShippingValidationError(
                f"Parcel dimensions must be positive: {', '.join(bad)}",
                details={"parcel": dims},
            )


@dataclass
class RateQuote:
    """Shipping rate quote for one service level."""
    service_level_code: str
    service_level_name: str
    total_price: Decimal
    base_charge: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    delivery_estimate: str = ""
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    estimated_collection: Optional[datetime] = None


@dataclass
class ShipmentRequest:
    """Request to create a shipment."""
    origin: AddressInput
    origin_contact: ContactInput
    destination: AddressInput
    destination_contact: ContactInput
    parcels: List[Parcel]
    service_level_code: str
    declared_value: Decimal = Decimal("0")
    reference: Optional[str] = None
    special_instructions: Optional[str] = None
    mute_notifications: bool = False


@dataclass
class CarrierShipment:
    """Shipment as acknowledged by the carrier."""
    carrier_shipment_id: str
    tracking_reference: str
    status: str = "submitted"
    rate: Optional[Decimal] = None
    service_level_code: Optional[str] = None
    service_level_name: Optional[str] = None
    estimated_collection: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    parcel_tracking_references: List[str] = field(default_factory=list)


@dataclass
class CancelResult:
    success: bool
    reason: Optional[str] = None


@dataclass
class CarrierTrackingEvent:
    """A single raw tracking event."""
    timestamp: Optional[datetime]
    status: str
    message: str = ""
    location: Optional[str] = None
    source: Optional[str] = None
    event_id: Optional[str] = None
    images: List[str] = field(default_factory=list)
    pdfs: List[str] = field(default_factory=list)
    recipient_name: Optional[str] = None


@dataclass
class CarrierTracking:
    """Raw tracking information for one shipment."""
    tracking_reference: str
    status: str
    collection_hub: Optional[str] = None
    delivery_hub: Optional[str] = None
    collected_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    events: List[CarrierTrackingEvent] = field(default_factory=list)


@dataclass
class WebhookEvent:
    """Inbound tracking webhook, carrier-agnostic."""
    carrier_shipment_id: Optional[str]
    status: str
    event_time: Optional[datetime] = None
    tracking_references: List[str] = field(default_factory=list)
    collected_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    events: List[CarrierTrackingEvent] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Carrier Gateway Interface
# =============================================================================

class CarrierGateway(ABC):
    """
    Abstract base class for shipping carriers.

    Implementations raise CarrierAPIError for rejected/failed requests and
    CarrierTimeoutError when a request was sent but not answered.
    """

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Human-readable carrier name stored on the order."""
        pass

    @abstractmethod
    async def quote_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        parcels: List[Parcel],
        declared_value: Decimal,
    ) -> List[RateQuote]:
        """Return carrier prices (no markup) for every available service level."""
        pass

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> CarrierShipment:
        pass

    @abstractmethod
    async def cancel_shipment(self, tracking_reference: str) -> CancelResult:
        """
        Cancel a shipment.

        A business rejection (already collected) is returned as
        CancelResult(success=False, reason=...), not raised.
        """
        pass

    @abstractmethod
    async def get_tracking(self, tracking_reference: str) -> CarrierTracking:
        pass

    @abstractmethod
    async def get_label_url(self, carrier_shipment_id: str) -> Optional[str]:
        """Return the label URL, or None if the carrier has not generated it yet."""
        pass

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        pass

    @abstractmethod
    def map_status(self, carrier_status: str) -> TrackingStatus:
        pass

    @abstractmethod
    def describe_status(self, carrier_status: str) -> str:
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
