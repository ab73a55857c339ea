"""
Shipping Schemas

Pydantic models for shipping API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator

from jits_shipping.modules.shipping.carriers.base import AddressInput, Parcel, RateQuote
from jits_shipping.modules.shipping.orchestrator import ShipmentResult, CancelShipmentResult
from jits_shipping.modules.shipping.rates import ShippingRatesResult
from jits_shipping.modules.shipping.tracking import TrackingState


# ==================== Address / Parcel Schemas ====================


class DeliveryAddress(BaseModel):
    """Destination address for a rate quote."""
    address_line1: str = Field(..., min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    province: str = Field(..., min_length=1, max_length=50)
    postal_code: str = Field(..., min_length=3, max_length=10)
    country: str = Field("South Africa", min_length=2, max_length=60)

    @field_validator("address_line1", "city", "province", "postal_code", "country")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    def to_address(self) -> AddressInput:
        return AddressInput(
            street_address=self.address_line1,
            local_area=self.address_line2,
            city=self.city,
            zone=self.province,
            postal_code=self.postal_code,
            country=self.country,
        )


class ParcelSchema(BaseModel):
    length_cm: float = Field(..., gt=0, le=300)
    width_cm: float = Field(..., gt=0, le=300)
    height_cm: float = Field(..., gt=0, le=300)
    weight_kg: float = Field(..., gt=0, le=100)
    description: str = Field("Apparel", max_length=100)

    def to_parcel(self) -> Parcel:
        return Parcel(
            length_cm=self.length_cm,
            width_cm=self.width_cm,
            height_cm=self.height_cm,
            weight_kg=self.weight_kg,
            description=self.description,
        )


# ==================== Rate Schemas ====================


class RateRequest(BaseModel):
    delivery_address: DeliveryAddress
    parcels: Optional[List[ParcelSchema]] = None
    declared_value: Decimal = Field(Decimal("0"), ge=0)


class RateResponse(BaseModel):
    service_level_code: str
    service_level_name: str
    total_price: Decimal
    base_charge: Decimal
    vat: Decimal
    delivery_estimate: str
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None

    @classmethod
    def from_quote(cls, quote: RateQuote) -> "RateResponse":
        return cls(
            service_level_code=quote.service_level_code,
            service_level_name=quote.service_level_name,
            total_price=quote.total_price,
            base_charge=quote.base_charge,
            vat=quote.vat,
            delivery_estimate=quote.delivery_estimate,
            estimated_delivery_from=quote.estimated_delivery_from,
            estimated_delivery_to=quote.estimated_delivery_to,
        )


class RateListResponse(BaseModel):
    rates: List[RateResponse]
    free_shipping_available: bool
    amount_to_free_shipping: Decimal
    free_shipping_threshold: Decimal

    @classmethod
    def from_result(cls, result: ShippingRatesResult) -> "RateListResponse":
        return cls(
            rates=[RateResponse.from_quote(q) for q in result.rates],
            free_shipping_available=result.free_shipping_available,
            amount_to_free_shipping=result.amount_to_free_shipping,
            free_shipping_threshold=result.free_shipping_threshold,
        )


# ==================== Shipment Schemas ====================


class ShipmentCreate(BaseModel):
    order_id: int = Field(..., gt=0)
    service_level_code: Optional[str] = Field(None, max_length=32)
    parcels: Optional[List[ParcelSchema]] = None


class ShipmentResponse(BaseModel):
    order_id: int
    tracking_number: str
    carrier_shipment_id: str
    carrier_name: str
    service_level_code: str
    service_level_name: str
    shipping_cost: Decimal
    status: str
    rate_source: str
    parcel_count: int
    estimated_delivery: Optional[datetime] = None
    label_url: Optional[str] = None

    @classmethod
    def from_result(cls, result: ShipmentResult) -> "ShipmentResponse":
        return cls(
            order_id=result.order_id,
            tracking_number=result.tracking_number,
            carrier_shipment_id=result.carrier_shipment_id,
            carrier_name=result.carrier_name,
            service_level_code=result.service_level_code,
            service_level_name=result.service_level_name,
            shipping_cost=result.shipping_cost,
            status=result.status.value,
            rate_source=result.rate_source,
            parcel_count=result.parcel_count,
            estimated_delivery=result.estimated_delivery,
            label_url=result.label_url,
        )


class CancelShipmentResponse(BaseModel):
    success: bool = True
    order_id: int
    cancelled_tracking_number: str
    status: str

    @classmethod
    def from_result(cls, result: CancelShipmentResult) -> "CancelShipmentResponse":
        return cls(
            order_id=result.order_id,
            cancelled_tracking_number=result.cancelled_tracking_number,
            status=result.status.value,
        )


class LabelResponse(BaseModel):
    order_id: int
    label_url: str


# ==================== Tracking Schemas ====================


class TrackingEventResponse(BaseModel):
    timestamp: Optional[datetime] = None
    status: str
    message: str
    location: Optional[str] = None
    source: Optional[str] = None


class ProofOfDeliveryResponse(BaseModel):
    method: str
    recipient_name: Optional[str] = None
    image_urls: List[str] = []
    pdf_urls: List[str] = []
    delivered_at: Optional[datetime] = None


class TrackingResponse(BaseModel):
    tracking_reference: str
    status: str
    carrier_status: str
    status_description: str
    events: List[TrackingEventResponse] = []
    proof_of_delivery: Optional[ProofOfDeliveryResponse] = None
    collection_hub: Optional[str] = None
    delivery_hub: Optional[str] = None
    collected_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_from: Optional[datetime] = None
    estimated_delivery_to: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: TrackingState) -> "TrackingResponse":
        pod = state.proof_of_delivery
        return cls(
            tracking_reference=state.tracking_reference,
            status=state.status.value,
            carrier_status=state.carrier_status,
            status_description=state.status_description,
            events=[
                TrackingEventResponse(
                    timestamp=e.timestamp,
                    status=e.status,
                    message=e.message,
                    location=e.location,
                    source=e.source,
                )
                for e in state.events
            ],
            proof_of_delivery=ProofOfDeliveryResponse(
                method=pod.method,
                recipient_name=pod.recipient_name,
                image_urls=pod.image_urls,
                pdf_urls=pod.pdf_urls,
                delivered_at=pod.delivered_at,
            ) if pod else None,
            collection_hub=state.collection_hub,
            delivery_hub=state.delivery_hub,
            collected_at=state.collected_at,
            delivered_at=state.delivered_at,
            estimated_delivery_from=state.estimated_delivery_from,
            estimated_delivery_to=state.estimated_delivery_to,
        )


class WebhookAck(BaseModel):
    status: str = "ok"
    order_id: Optional[int] = None
    applied_status: Optional[str] = None
    reason: Optional[str] = None
