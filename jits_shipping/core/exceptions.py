"""
Jits Shipping Exception Hierarchy

Every error carries a machine-readable code, a message and details so the
HTTP layer can map the kind (not the message text) to a status code.

Exception Hierarchy:
    JitsBaseError
    └── ShippingError
        ├── ShippingValidationError
        │   └── InvalidOrderError
        ├── RateQuoteFailedError
        ├── TrackingUnavailableError
        ├── OrderNotFoundError
        ├── ServiceLevelRequiredError
        ├── ServiceLevelNotFoundError
        ├── ShipmentAlreadyExistsError
        ├── NoActiveShipmentError
        ├── LabelNotAvailableError
        ├── CancellationRejectedError
        ├── CarrierRequestError
        ├── CarrierOutcomeUnknownError
        ├── CarrierStateDivergenceError
        │   ├── ShipmentCreatedButNotPersistedError
        │   └── ShipmentCancelledButNotPersistedError
        ├── ConcurrentUpdateError
        └── WebhookPayloadError
"""
import logging
from typing import Optional, Dict, Any, Type

logger = logging.getLogger(__name__)


class JitsBaseError(Exception):
    """
    Base exception for all Jits custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "JITS_ERROR"
    default_severity: str = "P2"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# SHIPPING ERRORS
# =============================================================================

class ShippingError(JitsBaseError):
    """Base exception for shipping errors."""
    default_code = "SHIPPING_ERROR"
    default_severity = "P2"


class ShippingValidationError(ShippingError):
    """Input rejected before any carrier call (address, parcels, payload shape)."""
    default_code = "SHIPPING_VALIDATION_FAILED"
    default_severity = "P3"
    http_status = 400


class InvalidOrderError(ShippingValidationError):
    """Order cannot be shipped in its current shape (no items, terminal status)."""
    default_code = "INVALID_ORDER"

    def __init__(self, message: str, order_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id})
        super().__init__(message, details=details, **kwargs)


class RateQuoteFailedError(ShippingError):
    """Carrier rate call failed. Safe to retry, no side effect occurred."""
    default_code = "RATE_QUOTE_FAILED"
    default_severity = "P2"
    http_status = 502
    retryable = True


class TrackingUnavailableError(ShippingError):
    """Carrier tracking call failed. Safe to retry."""
    default_code = "TRACKING_UNAVAILABLE"
    default_severity = "P3"
    http_status = 502
    retryable = True


class OrderNotFoundError(ShippingError):
    """Order does not exist."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"
    http_status = 404

    def __init__(self, order_id: int, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id})
        super().__init__(f"Order {order_id} not found", details=details, **kwargs)
        self.order_id = order_id


class ServiceLevelRequiredError(ShippingError):
    """Shipment requested without a service level code."""
    default_code = "SERVICE_LEVEL_REQUIRED"
    default_severity = "P3"
    http_status = 400


class ServiceLevelNotFoundError(ShippingError):
    """Carrier no longer offers the requested service level."""
    default_code = "SERVICE_LEVEL_NOT_FOUND"
    default_severity = "P3"
    http_status = 422

    def __init__(self, service_level_code: str, available: Optional[list] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({
            "service_level_code": service_level_code,
            "available": available or [],
        })
        super().__init__(
            f"Service level '{service_level_code}' is not available for this shipment",
            details=details,
            **kwargs,
        )


class ShipmentAlreadyExistsError(ShippingError):
    """Order already has an active shipment; cancel it first."""
    default_code = "SHIPMENT_ALREADY_EXISTS"
    default_severity = "P3"
    http_status = 409

    def __init__(self, order_id: int, tracking_number: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id, "tracking_number": tracking_number})
        super().__init__(
            f"Order {order_id} already has shipment {tracking_number}",
            details=details,
            **kwargs,
        )


class NoActiveShipmentError(ShippingError):
    """Order has no shipment to cancel, track or label."""
    default_code = "NO_ACTIVE_SHIPMENT"
    default_severity = "P3"
    http_status = 409

    def __init__(self, order_id: int, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id})
        super().__init__(f"Order {order_id} has no active shipment", details=details, **kwargs)


class LabelNotAvailableError(ShippingError):
    """Carrier has not generated a label yet."""
    default_code = "LABEL_NOT_AVAILABLE"
    default_severity = "P3"
    http_status = 404
    retryable = True


class CancellationRejectedError(ShippingError):
    """Carrier refused the cancellation (typically already collected)."""
    default_code = "CANCELLATION_REJECTED"
    default_severity = "P3"
    http_status = 409

    def __init__(self, message: str, reason: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"reason": reason})
        super().__init__(message, details=details, **kwargs)
        self.reason = reason


class CarrierRequestError(ShippingError):
    """Carrier rejected the request outright; nothing was created."""
    default_code = "CARRIER_REQUEST_FAILED"
    default_severity = "P2"
    http_status = 502


class CarrierOutcomeUnknownError(ShippingError):
    """
    Carrier call timed out after the request was sent.

    The shipment may exist carrier-side. Reconcile manually before retrying,
    a blind retry can create a duplicate shipment.
    """
    default_code = "CARRIER_OUTCOME_UNKNOWN"
    default_severity = "P1"
    http_status = 504

    def __init__(self, message: str, order_id: Optional[int] = None, operation: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id, "operation": operation})
        super().__init__(message, details=details, **kwargs)


class CarrierStateDivergenceError(ShippingError):
    """Carrier and store disagree about a shipment. Needs operator action."""
    default_code = "CARRIER_STATE_DIVERGENCE"
    default_severity = "P0"
    http_status = 500

    def __init__(
        self,
        message: str,
        order_id: Optional[int] = None,
        carrier_shipment_id: Optional[str] = None,
        tracking_number: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "carrier_shipment_id": carrier_shipment_id,
            "tracking_number": tracking_number,
        })
        super().__init__(message, details=details, **kwargs)
        self.order_id = order_id
        self.carrier_shipment_id = carrier_shipment_id
        self.tracking_number = tracking_number


class ShipmentCreatedButNotPersistedError(CarrierStateDivergenceError):
    """Carrier created the shipment but the order update failed."""
    default_code = "SHIPMENT_CREATED_NOT_PERSISTED"


class ShipmentCancelledButNotPersistedError(CarrierStateDivergenceError):
    """Carrier cancelled the shipment but the order still references it."""
    default_code = "SHIPMENT_CANCELLED_NOT_PERSISTED"


class ConcurrentUpdateError(ShippingError):
    """Order row changed underneath us twice in a row."""
    default_code = "CONCURRENT_UPDATE"
    default_severity = "P2"
    http_status = 409
    retryable = True


class WebhookPayloadError(ShippingError):
    """Inbound carrier webhook could not be parsed."""
    default_code = "WEBHOOK_PAYLOAD_INVALID"
    default_severity = "P3"
    http_status = 400


# =============================================================================
# EXCEPTION REGISTRY
# =============================================================================

EXCEPTION_CATALOG: Dict[str, Dict[str, Any]] = {
    cls.default_code: {"class": cls, "severity": cls.default_severity, "retryable": cls.retryable}
    for cls in (
        ShippingError,
        ShippingValidationError,
        InvalidOrderError,
        RateQuoteFailedError,
        TrackingUnavailableError,
        OrderNotFoundError,
        ServiceLevelRequiredError,
        ServiceLevelNotFoundError,
        ShipmentAlreadyExistsError,
        NoActiveShipmentError,
        LabelNotAvailableError,
        CancellationRejectedError,
        CarrierRequestError,
        CarrierOutcomeUnknownError,
        CarrierStateDivergenceError,
        ShipmentCreatedButNotPersistedError,
        ShipmentCancelledButNotPersistedError,
        ConcurrentUpdateError,
        WebhookPayloadError,
    )
}


def get_exception_class(code: str) -> Type[JitsBaseError]:
    """Look up exception class by error code."""
    entry = EXCEPTION_CATALOG.get(code)
    return entry["class"] if entry else JitsBaseError
