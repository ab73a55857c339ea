"""
Carrier Registry and Factory

- CarrierFactory creates carrier instances based on CarrierCode
- Carriers register themselves with @register_carrier
"""
from typing import Dict, List, Type
import logging

from jits_shipping.core.config import Settings
from jits_shipping.modules.shipping.carriers.base import CarrierCode, CarrierGateway

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierCode, Type[CarrierGateway]] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.SHIPLOGIC)
        class ShipLogicCarrier(CarrierGateway):
            ...
    """
    def decorator(cls: Type[CarrierGateway]):
        _CARRIER_REGISTRY[carrier_code] = cls
        logger.debug(f"Registered carrier: {carrier_code.value} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """Builds configured carrier instances from application settings."""

    @classmethod
    def get_carrier(cls, carrier_code: CarrierCode, settings: Settings) -> CarrierGateway:
        carrier_cls = _CARRIER_REGISTRY.get(carrier_code)
        if not carrier_cls:
            raise ValueError(f"No implementation registered for carrier: {carrier_code.value}")

        if carrier_code == CarrierCode.SHIPLOGIC:
            if not settings.SHIPLOGIC_API_KEY:
                logger.warning("SHIPLOGIC_API_KEY is empty - Ship Logic will reject requests")
            return carrier_cls(
                api_key=settings.SHIPLOGIC_API_KEY,
                base_url=settings.SHIPLOGIC_BASE_URL,
                timeout=settings.SHIPPING_CARRIER_TIMEOUT_SECONDS,
            )

        return carrier_cls()

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


def get_carrier(carrier_code: CarrierCode, settings: Settings) -> CarrierGateway:
    """Equivalent to CarrierFactory.get_carrier()."""
    return CarrierFactory.get_carrier(carrier_code, settings)


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from jits_shipping.modules.shipping.carriers.shiplogic import ShipLogicCarrier  # noqa: E402, F401
