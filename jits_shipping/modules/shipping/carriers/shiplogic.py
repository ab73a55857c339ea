"""
Ship Logic (The Courier Guy) Carrier

REST API at api.shiplogic.com, authenticated with a Bearer API key:
- POST /rates
- POST /shipments
- POST /shipments/cancel
- GET  /shipments/label?id=
- GET  /tracking/shipments?tracking_reference=
- Tracking webhooks (POSTed to us)

All external calls are logged and raise CarrierAPIError / CarrierTimeoutError.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from jits_shipping.modules.shipping.carriers import register_carrier
from jits_shipping.modules.shipping.carriers.base import (
    CarrierGateway,
    CarrierCode,
    CarrierAPIError,
    CarrierTimeoutError,
    TrackingStatus,
    AddressInput,
    ContactInput,
    Parcel,
    RateQuote,
    ShipmentRequest,
    CarrierShipment,
    CancelResult,
    CarrierTracking,
    CarrierTrackingEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

SHIPLOGIC_PRODUCTION_URL = "https://api.shiplogic.com"
CARRIER_NAME = "The Courier Guy"

RATES_PATH = "/rates"
SHIPMENTS_PATH = "/shipments"
CANCEL_PATH = "/shipments/cancel"
LABEL_PATH = "/shipments/label"
TRACKING_PATH = "/tracking/shipments"

# Collection and delivery windows sent with every shipment
COLLECTION_AFTER = "08:00"
COLLECTION_BEFORE = "17:00"
DELIVERY_AFTER = "08:00"
DELIVERY_BEFORE = "17:00"

# Ship Logic status to TrackingStatus mapping
SHIPLOGIC_STATUS_MAP = {
    "submitted": TrackingStatus.CREATED,
    "collection-assigned": TrackingStatus.CREATED,
    "collection-unassigned": TrackingStatus.CREATED,
    "collection-failed-attempt": TrackingStatus.CREATED,
    "awaiting-dropoff": TrackingStatus.CREATED,
    "collection-exception": TrackingStatus.EXCEPTION,
    "collected": TrackingStatus.COLLECTED,
    "at-hub": TrackingStatus.IN_TRANSIT,
    "returned-to-hub": TrackingStatus.IN_TRANSIT,
    "manifested": TrackingStatus.IN_TRANSIT,
    "ready-for-dispatch": TrackingStatus.IN_TRANSIT,
    "in-transit": TrackingStatus.IN_TRANSIT,
    "at-destination-hub": TrackingStatus.IN_TRANSIT,
    "delivery-unassigned": TrackingStatus.IN_TRANSIT,
    "delivery-assigned": TrackingStatus.OUT_FOR_DELIVERY,
    "out-for-delivery": TrackingStatus.OUT_FOR_DELIVERY,
    "ready-for-pickup": TrackingStatus.OUT_FOR_DELIVERY,
    "delivery-failed-attempt": TrackingStatus.OUT_FOR_DELIVERY,
    "delivered": TrackingStatus.DELIVERED,
    "on-hold": TrackingStatus.EXCEPTION,
    "delivery-exception": TrackingStatus.EXCEPTION,
    "returned-to-sender": TrackingStatus.EXCEPTION,
    "undeliverable": TrackingStatus.EXCEPTION,
    "cancelled": TrackingStatus.CANCELLED,
}

SHIPLOGIC_STATUS_DESCRIPTIONS = {
    "submitted": "Shipment submitted",
    "collection-assigned": "Driver assigned for collection",
    "collection-unassigned": "Awaiting driver assignment",
    "collection-exception": "Collection issue - please contact support",
    "collection-failed-attempt": "Collection attempted but unsuccessful",
    "collected": "Parcel collected",
    "awaiting-dropoff": "Awaiting drop-off",
    "at-hub": "At sorting hub",
    "on-hold": "On hold - pending resolution",
    "returned-to-hub": "Returned to hub",
    "manifested": "Added to transfer manifest",
    "ready-for-dispatch": "Ready for dispatch",
    "in-transit": "In transit",
    "at-destination-hub": "Arrived at destination hub",
    "delivery-assigned": "Out for delivery",
    "delivery-unassigned": "Awaiting delivery assignment",
    "out-for-delivery": "Out for delivery",
    "delivery-exception": "Delivery issue - please contact support",
    "delivery-failed-attempt": "Delivery attempted but unsuccessful",
    "ready-for-pickup": "Ready for pickup",
    "delivered": "Delivered",
    "returned-to-sender": "Returned to sender",
    "undeliverable": "Unable to deliver",
    "cancelled": "Cancelled",
}

# Province names and abbreviations to Ship Logic zones
PROVINCE_ZONES = {
    "gauteng": "Gauteng",
    "gp": "Gauteng",
    "western cape": "Western Cape",
    "wc": "Western Cape",
    "eastern cape": "Eastern Cape",
    "ec": "Eastern Cape",
    "northern cape": "Northern Cape",
    "nc": "Northern Cape",
    "kwazulu-natal": "KwaZulu-Natal",
    "kwazulu natal": "KwaZulu-Natal",
    "kzn": "KwaZulu-Natal",
    "free state": "Free State",
    "fs": "Free State",
    "north west": "North West",
    "nw": "North West",
    "mpumalanga": "Mpumalanga",
    "mp": "Mpumalanga",
    "limpopo": "Limpopo",
    "lp": "Limpopo",
}

COUNTRY_CODES = {
    "south africa": "ZA",
    "za": "ZA",
}


def province_to_zone(province: Optional[str]) -> str:
    if not province or not province.strip():
        return "GP"
    return PROVINCE_ZONES.get(province.strip().lower(), province.strip())


def country_to_code(country: Optional[str]) -> str:
    if not country or not country.strip():
        return "ZA"
    return COUNTRY_CODES.get(country.strip().lower(), country.strip())


# ==================== Response Models ====================


class _ShipLogicModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ShipLogicServiceLevel(_ShipLogicModel):
    id: Optional[int] = None
    code: str = ""
    name: str = ""


class ShipLogicBaseRate(_ShipLogicModel):
    charge: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")


class ShipLogicRateItem(_ShipLogicModel):
    service_level: ShipLogicServiceLevel = Field(default_factory=ShipLogicServiceLevel)
    rate: Decimal = Decimal("0")
    rate_excluding_vat: Optional[Decimal] = None
    base_rate: Optional[ShipLogicBaseRate] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    estimated_collection: Optional[datetime] = None


class ShipLogicRatesResponse(_ShipLogicModel):
    rates: List[ShipLogicRateItem] = Field(default_factory=list)


class ShipLogicParcelResponse(_ShipLogicModel):
    id: Optional[int] = None
    tracking_reference: str = ""
    status: str = ""


class ShipLogicShipmentResponse(_ShipLogicModel):
    id: Union[int, str]
    short_tracking_reference: str = ""
    custom_tracking_reference: Optional[str] = None
    status: str = "submitted"
    rate: Optional[Decimal] = None
    service_level_code: Optional[str] = None
    service_level_name: Optional[str] = None
    estimated_collection: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    parcels: List[ShipLogicParcelResponse] = Field(default_factory=list)


class ShipLogicEventData(_ShipLogicModel):
    type: Optional[str] = None
    images: Optional[List[str]] = None
    pdfs: Optional[List[str]] = None
    recipient_name: Optional[str] = None


class ShipLogicTrackingEvent(_ShipLogicModel):
    id: Optional[Union[int, str]] = None
    status: str = ""
    message: Optional[str] = None
    location: Optional[str] = None
    date: Optional[datetime] = None
    source: Optional[str] = None
    data: Optional[ShipLogicEventData] = None


class ShipLogicTrackingResponse(_ShipLogicModel):
    short_tracking_reference: Optional[str] = None
    custom_tracking_reference: Optional[str] = None
    status: str = ""
    collection_hub: Optional[str] = None
    delivery_hub: Optional[str] = None
    collected_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None
    tracking_events: List[ShipLogicTrackingEvent] = Field(default_factory=list)


class ShipLogicWebhookPayload(_ShipLogicModel):
    shipment_id: Optional[Union[int, str]] = None
    short_tracking_reference: Optional[str] = None
    custom_tracking_reference: Optional[str] = None
    status: str
    event_time: Optional[datetime] = None
    shipment_collected_date: Optional[datetime] = None
    shipment_delivered_date: Optional[datetime] = None
    shipment_estimated_delivery_from: Optional[datetime] = None
    shipment_estimated_delivery_to: Optional[datetime] = None
    tracking_events: List[ShipLogicTrackingEvent] = Field(default_factory=list)
    update_type: Optional[str] = None


@register_carrier(CarrierCode.SHIPLOGIC)
class ShipLogicCarrier(CarrierGateway):
    """
    Ship Logic carrier implementation.

    One instance owns one httpx.AsyncClient, created lazily and released by
    close().
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = SHIPLOGIC_PRODUCTION_URL,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.SHIPLOGIC

    @property
    def carrier_name(self) -> str:
        return CARRIER_NAME

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Any:
        """Make authenticated API request."""
        client = await self._get_http_client()
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            response = await client.request(method.upper(), path, headers=headers, json=data, params=params)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # Never reached the carrier
            logger.error(f"Ship Logic {method} {path} connection failed: {e}")
            raise CarrierAPIError(message=f"Network error: {e}", code="NETWORK_ERROR")
        except httpx.TimeoutException as e:
            logger.error(f"Ship Logic {method} {path} timed out: {e}")
            raise CarrierTimeoutError(message=f"Ship Logic {method} {path} timed out")
        except httpx.RequestError as e:
            logger.error(f"Ship Logic {method} {path} request failed: {e}")
            raise CarrierAPIError(message=f"Network error: {e}", code="TRANSPORT_ERROR")

        logger.debug(f"Ship Logic {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw": response.text[:500]}

            error_msg = "Ship Logic API error"
            if isinstance(error_data, dict):
                error_msg = error_data.get("message") or error_data.get("error") or error_msg
                errors = error_data.get("errors")
                if isinstance(errors, list) and errors:
                    first = errors[0]
                    error_msg = first.get("message", error_msg) if isinstance(first, dict) else str(first)

            logger.error(f"Ship Logic API error: {response.status_code} - {error_msg}")
            raise CarrierAPIError(
                message=str(error_msg),
                code=str(response.status_code),
                details=error_data if isinstance(error_data, dict) else {"body": error_data},
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise CarrierAPIError(
                message="Ship Logic returned a non-JSON response",
                code="MALFORMED_RESPONSE",
                details={"raw": response.text[:500]},
            )

    # ==================== Payload Builders ====================

    @staticmethod
    def _address_payload(address: AddressInput) -> Dict[str, Any]:
        payload = {
            "type": address.address_type,
            "street_address": address.street_address,
            "local_area": address.local_area or "",
            "city": address.city,
            "zone": province_to_zone(address.zone),
            "country": country_to_code(address.country),
            "code": address.postal_code,
        }
        if address.company:
            payload["company"] = address.company
        return payload

    @staticmethod
    def _contact_payload(contact: ContactInput) -> Dict[str, Any]:
        return {
            "name": contact.name,
            "mobile_number": contact.mobile_number,
            "email": contact.email,
        }

    @staticmethod
    def _parcels_payload(parcels: List[Parcel]) -> List[Dict[str, Any]]:
        return [
            {
                "parcel_description": p.description,
                "submitted_length_cm": p.length_cm,
                "submitted_width_cm": p.width_cm,
                "submitted_height_cm": p.height_cm,
                "submitted_weight_kg": p.weight_kg,
            }
            for p in parcels
        ]

    @staticmethod
    def _today() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ==================== Rate Quoting ====================

    async def quote_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        parcels: List[Parcel],
        declared_value: Decimal,
    ) -> List[RateQuote]:
        request_data = {
            "collection_address": self._address_payload(origin),
            "delivery_address": self._address_payload(destination),
            "parcels": self._parcels_payload(parcels),
            "declared_value": float(declared_value),
            "collection_min_date": self._today(),
            "delivery_min_date": self._today(),
        }

        response = await self._make_request("POST", RATES_PATH, data=request_data)
        try:
            parsed = ShipLogicRatesResponse.model_validate(response)
        except ValidationError as e:
            raise CarrierAPIError(message="Malformed rates response", code="MALFORMED_RESPONSE", details={"errors": e.errors()})

        quotes = []
        for item in parsed.rates:
            if not item.service_level.code:
                continue
            base = item.base_rate or ShipLogicBaseRate(charge=item.rate_excluding_vat or item.rate, vat=Decimal("0"))
            quotes.append(
                RateQuote(
                    service_level_code=item.service_level.code,
                    service_level_name=item.service_level.name or item.service_level.code,
                    total_price=item.rate,
                    base_charge=base.charge,
                    vat=base.vat,
                    estimated_delivery_from=item.estimated_delivery_from,
                    estimated_delivery_to=item.estimated_delivery_to,
                    estimated_collection=item.estimated_collection,
                )
            )

        logger.info(f"Ship Logic returned {len(quotes)} rates")
        return quotes

    # ==================== Shipments ====================

    async def create_shipment(self, request: ShipmentRequest) -> CarrierShipment:
        request_data = {
            "collection_address": self._address_payload(request.origin),
            "collection_contact": self._contact_payload(request.origin_contact),
            "delivery_address": self._address_payload(request.destination),
            "delivery_contact": self._contact_payload(request.destination_contact),
            "parcels": self._parcels_payload(request.parcels),
            "service_level_code": request.service_level_code,
            "declared_value": float(request.declared_value),
            "special_instructions_collection": "",
            "special_instructions_delivery": request.special_instructions or "",
            "customer_reference": request.reference or "",
            "mute_notifications": request.mute_notifications,
            "collection_min_date": self._today(),
            "collection_after": COLLECTION_AFTER,
            "collection_before": COLLECTION_BEFORE,
            "delivery_min_date": self._today(),
            "delivery_after": DELIVERY_AFTER,
            "delivery_before": DELIVERY_BEFORE,
        }

        try:
            response = await self._make_request("POST", SHIPMENTS_PATH, data=request_data)
        except CarrierTimeoutError:
            raise
        except CarrierAPIError as e:
            # The request went out; a 5xx or a dropped connection may still have created it
            if e.code == "TRANSPORT_ERROR" or (e.code and e.code.isdigit() and int(e.code) >= 500):
                raise CarrierTimeoutError(
                    message=f"Ship Logic shipment outcome unknown: {e.message}",
                    code="AMBIGUOUS_RESPONSE",
                    details={"carrier_code": e.code, **e.details},
                ) from e
            raise

        try:
            parsed = ShipLogicShipmentResponse.model_validate(response)
        except ValidationError as e:
            # 2xx means the shipment exists carrier-side
            raise CarrierTimeoutError(
                message="Ship Logic shipment response could not be read",
                code="UNREADABLE_RESPONSE",
                details={"errors": e.errors(), "raw": response},
            )

        tracking_reference = parsed.custom_tracking_reference or parsed.short_tracking_reference
        if not tracking_reference:
            raise CarrierTimeoutError(
                message=f"Ship Logic created shipment {parsed.id} without a tracking reference",
                code="UNREADABLE_RESPONSE",
                details={"carrier_shipment_id": str(parsed.id), "raw": response},
            )

        logger.info(
            f"Ship Logic shipment created: id={parsed.id} tracking={tracking_reference} "
            f"ref={request.reference}"
        )

        return CarrierShipment(
            carrier_shipment_id=str(parsed.id),
            tracking_reference=tracking_reference,
            status=parsed.status,
            rate=parsed.rate,
            service_level_code=parsed.service_level_code,
            service_level_name=parsed.service_level_name,
            estimated_collection=parsed.estimated_collection,
            estimated_delivery_from=parsed.estimated_delivery_from,
            estimated_delivery_to=parsed.estimated_delivery_to,
            parcel_tracking_references=[p.tracking_reference for p in parsed.parcels if p.tracking_reference],
        )

    async def cancel_shipment(self, tracking_reference: str) -> CancelResult:
        try:
            await self._make_request("POST", CANCEL_PATH, data={"tracking_reference": tracking_reference})
        except CarrierTimeoutError:
            raise
        except CarrierAPIError as e:
            # 4xx from the cancel endpoint is a business rejection (already collected etc.)
            if e.code and e.code.isdigit() and 400 <= int(e.code) < 500 and int(e.code) not in (401, 403):
                logger.warning(f"Ship Logic refused to cancel {tracking_reference}: {e.message}")
                return CancelResult(success=False, reason=e.message)
            raise

        logger.info(f"Ship Logic shipment cancelled: {tracking_reference}")
        return CancelResult(success=True)

    async def get_label_url(self, carrier_shipment_id: str) -> Optional[str]:
        try:
            response = await self._make_request("GET", LABEL_PATH, params={"id": carrier_shipment_id})
        except CarrierAPIError as e:
            if e.code == "404":
                return None
            raise

        url = response.get("url") if isinstance(response, dict) else None
        return url or None

    # ==================== Tracking ====================

    def _event_from_model(self, event: ShipLogicTrackingEvent) -> CarrierTrackingEvent:
        data = event.data or ShipLogicEventData()
        return CarrierTrackingEvent(
            timestamp=event.date,
            status=event.status,
            message=event.message or self.describe_status(event.status),
            location=event.location,
            source=event.source,
            event_id=str(event.id) if event.id is not None else None,
            images=list(data.images or []),
            pdfs=list(data.pdfs or []),
            recipient_name=data.recipient_name,
        )

    async def get_tracking(self, tracking_reference: str) -> CarrierTracking:
        response = await self._make_request("GET", TRACKING_PATH, params={"tracking_reference": tracking_reference})

        # Endpoint may wrap the shipment in a list
        if isinstance(response, dict) and isinstance(response.get("shipments"), list):
            if not response["shipments"]:
                raise CarrierAPIError(message=f"No tracking found for {tracking_reference}", code="404")
            response = response["shipments"][0]

        try:
            parsed = ShipLogicTrackingResponse.model_validate(response)
        except ValidationError as e:
            raise CarrierAPIError(message="Malformed tracking response", code="MALFORMED_RESPONSE", details={"errors": e.errors()})

        return CarrierTracking(
            tracking_reference=parsed.custom_tracking_reference or parsed.short_tracking_reference or tracking_reference,
            status=parsed.status,
            collection_hub=parsed.collection_hub,
            delivery_hub=parsed.delivery_hub,
            collected_at=parsed.collected_date,
            delivered_at=parsed.delivered_date,
            estimated_delivery_from=parsed.estimated_delivery_from,
            estimated_delivery_to=parsed.estimated_delivery_to,
            events=[self._event_from_model(e) for e in parsed.tracking_events],
        )

    # ==================== Webhooks ====================

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Raises pydantic.ValidationError for structurally invalid payloads."""
        parsed = ShipLogicWebhookPayload.model_validate(payload)

        references = [
            ref for ref in (parsed.custom_tracking_reference, parsed.short_tracking_reference) if ref
        ]
        return WebhookEvent(
            carrier_shipment_id=str(parsed.shipment_id) if parsed.shipment_id is not None else None,
            status=parsed.status,
            event_time=parsed.event_time,
            tracking_references=references,
            collected_at=parsed.shipment_collected_date,
            delivered_at=parsed.shipment_delivered_date,
            estimated_delivery_from=parsed.shipment_estimated_delivery_from,
            estimated_delivery_to=parsed.shipment_estimated_delivery_to,
            events=[self._event_from_model(e) for e in parsed.tracking_events],
            raw=payload,
        )

    # ==================== Status Mapping ====================

    def map_status(self, carrier_status: str) -> TrackingStatus:
        key = (carrier_status or "").strip().lower()
        status = SHIPLOGIC_STATUS_MAP.get(key)
        if status is None:
            logger.warning(f"Unknown Ship Logic status: {carrier_status}")
            return TrackingStatus.UNKNOWN
        return status

    def describe_status(self, carrier_status: str) -> str:
        key = (carrier_status or "").strip().lower()
        return SHIPLOGIC_STATUS_DESCRIPTIONS.get(key, key.replace("-", " "))
