"""
Rate resolution

Quotes live carrier rates for a destination + parcel set, applies the store
markup and works out free-shipping eligibility against the configured
order-value threshold. Pure query: nothing is persisted, failures are
surfaced as RateQuoteFailedError and never retried here.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from jits_shipping.core.config import ShippingConfig
from jits_shipping.core.exceptions import RateQuoteFailedError, ShippingValidationError
from jits_shipping.modules.shipping.carriers.base import (
    AddressInput,
    CarrierAPIError,
    CarrierGateway,
    Parcel,
    RateQuote,
)
from jits_shipping.modules.shipping.parcels import ParcelEstimator, default_parcel
from jits_shipping.modules.shipping.repository import OrderSnapshot

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
DEFAULT_DELIVERY_ESTIMATE = "2-5 business days"


@dataclass
class ShippingRatesResult:
    rates: List[RateQuote] = field(default_factory=list)
    free_shipping_available: bool = False
    amount_to_free_shipping: Decimal = Decimal("0")
    free_shipping_threshold: Decimal = Decimal("0")

    def find(self, service_level_code: str) -> Optional[RateQuote]:
        code = service_level_code.strip()
        return next((r for r in self.rates if r.service_level_code == code), None)


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def origin_address(config: ShippingConfig) -> AddressInput:
    o = config.origin
    return AddressInput(
        street_address=o.street_address,
        local_area=o.local_area,
        city=o.city,
        zone=o.zone,
        postal_code=o.postal_code,
        country=o.country,
        company=o.company,
        address_type="business",
    )


def destination_from_order(order: OrderSnapshot) -> AddressInput:
    return AddressInput(
        street_address=order.shipping_address_line1 or "",
        local_area=order.shipping_address_line2 or "",
        city=order.shipping_city or "",
        zone=order.shipping_province or "",
        postal_code=order.shipping_postal_code or "",
        country=order.shipping_country or "South Africa",
    )


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def delivery_estimate(
    estimated_from: Optional[datetime],
    estimated_to: Optional[datetime],
    now: Optional[datetime] = None,
) -> str:
    """Human-readable delivery window, e.g. "Next business day" or "2-4 business days"."""
    if estimated_from is None or estimated_to is None:
        return DEFAULT_DELIVERY_ESTIMATE

    now = now or datetime.now(timezone.utc)
    days_from = max(1, int((_as_utc(estimated_from) - now).total_seconds() / 86400))
    days_to = max(days_from, int((_as_utc(estimated_to) - now).total_seconds() / 86400))

    if days_from == days_to:
        return "Next business day" if days_from == 1 else f"{days_from} business days"
    return f"{days_from}-{days_to} business days"


class RateResolver:
    def __init__(
        self,
        gateway: CarrierGateway,
        config: Optional[ShippingConfig] = None,
        estimator: Optional[ParcelEstimator] = None,
    ):
        self.gateway = gateway
        self.config = config or ShippingConfig()
        self.estimator = estimator or ParcelEstimator(self.config)

    # ==================== Pricing ====================

    def apply_markup(self, amount: Decimal) -> Decimal:
        pct = self.config.markup_percent
        if pct <= 0:
            return to_money(amount)
        return to_money(Decimal(amount) * (1 + pct / Decimal("100")))

    def free_shipping_status(self, declared_value: Decimal) -> tuple:
        """(free_shipping_available, amount_to_free_shipping)"""
        threshold = self.config.free_shipping_threshold
        if threshold <= 0:
            return False, Decimal("0")
        declared_value = Decimal(declared_value)
        available = declared_value >= threshold
        return available, to_money(max(Decimal("0"), threshold - declared_value))

    def _price(self, quote: RateQuote) -> RateQuote:
        charge = self.apply_markup(quote.base_charge)
        vat = self.apply_markup(quote.vat)
        total = charge + vat if (quote.base_charge or quote.vat) else self.apply_markup(quote.total_price)
        return RateQuote(
            service_level_code=quote.service_level_code,
            service_level_name=quote.service_level_name,
            total_price=total,
            base_charge=charge,
            vat=vat,
            delivery_estimate=delivery_estimate(quote.estimated_delivery_from, quote.estimated_delivery_to),
            estimated_delivery_from=quote.estimated_delivery_from,
            estimated_delivery_to=quote.estimated_delivery_to,
            estimated_collection=quote.estimated_collection,
        )

    # ==================== Rate Quoting ====================

    @staticmethod
    def validate_address(address: AddressInput) -> None:
        missing = address.missing_fields()
        if missing:
            raise ShippingValidationError(
                f"Delivery address is incomplete: {', '.join(missing)}",
                details={"missing_fields": missing},
            )

    async def get_rates(
        self,
        address: AddressInput,
        parcels: Sequence[Parcel],
        declared_value: Decimal = Decimal("0"),
    ) -> ShippingRatesResult:
        self.validate_address(address)
        if not parcels:
            raise ShippingValidationError("At least one parcel is required")

        declared_value = Decimal(declared_value or 0)
        free_available, amount_to_free = self.free_shipping_status(declared_value)

        try:
            quotes = await asyncio.wait_for(
                self.gateway.quote_rates(origin_address(self.config), address, list(parcels), declared_value),
                timeout=self.config.carrier_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Rate quote timed out after {self.config.carrier_timeout_seconds}s")
            raise RateQuoteFailedError("Carrier rate request timed out", code="RATE_QUOTE_TIMEOUT")
        except CarrierAPIError as e:
            logger.warning(f"Rate quote failed: {e.code} - {e.message}")
            raise RateQuoteFailedError(
                f"Carrier rate request failed: {e.message}",
                details={"carrier_code": e.code},
            )

        result = ShippingRatesResult(
            rates=[self._price(q) for q in quotes],
            free_shipping_available=free_available,
            amount_to_free_shipping=amount_to_free,
            free_shipping_threshold=self.config.free_shipping_threshold,
        )
        logger.info(
            f"Quoted {len(result.rates)} rates to {address.city} "
            f"(declared {declared_value}, free_shipping={free_available})"
        )
        return result

    async def get_rates_ad_hoc(
        self,
        address: AddressInput,
        parcels: Optional[Sequence[Parcel]] = None,
        declared_value: Decimal = Decimal("0"),
    ) -> ShippingRatesResult:
        """Quote for a request without parcel details (checkout estimate)."""
        return await self.get_rates(address, parcels or [default_parcel(self.config)], declared_value)

    async def get_rates_for_order(self, order: OrderSnapshot) -> ShippingRatesResult:
        parcels = self.estimator.estimate(order.lines, order_id=order.id)
        return await self.get_rates(destination_from_order(order), parcels, order.total_amount)
