"""
Shipping API Routes

Provides endpoints for:
- Rate quoting (signed-in checkout estimate and admin re-quote for an order)
- Shipment creation, cancellation and labels (admin)
- Tracking (public by reference, owner/admin by order)
- Carrier webhooks

Typed shipping errors propagate to the handlers registered in
core.error_handler and are rendered with their own status and code.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from jits_shipping.api.deps import CurrentUser, get_current_admin, get_current_user
from jits_shipping.core.exceptions import WebhookPayloadError
from jits_shipping.core.security import verify_webhook_signature
from jits_shipping.services.shipping_service import ShippingService, get_shipping_service
from jits_shipping.schemas.shipping import (
    CancelShipmentResponse,
    LabelResponse,
    RateListResponse,
    RateRequest,
    ShipmentCreate,
    ShipmentResponse,
    TrackingResponse,
    WebhookAck,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])

WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"


# ==================== Rate Endpoints ====================


@router.post("/rates", response_model=RateListResponse)
async def get_shipping_rates(
    rate_request: RateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Get shipping rates for a delivery address.
    Requires a signed-in customer.

    Parcels are optional; without them a single default apparel parcel is quoted.
    """
    parcels = [p.to_parcel() for p in rate_request.parcels] if rate_request.parcels else None
    result = await service.rates.get_rates_ad_hoc(
        rate_request.delivery_address.to_address(),
        parcels,
        rate_request.declared_value,
    )
    return RateListResponse.from_result(result)


@router.get("/rates/order/{order_id}", response_model=RateListResponse)
async def get_order_rates(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Re-quote rates for an existing order (admin only)."""
    order = await service.get_order(order_id)
    result = await service.rates.get_rates_for_order(order)
    return RateListResponse.from_result(result)


# ==================== Shipment Endpoints ====================


@router.post("/shipments", response_model=ShipmentResponse, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    shipment_data: ShipmentCreate,
    current_user: CurrentUser = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Create a carrier shipment for an order (admin only).

    The order's checkout selection is used when it matches the requested
    service level; otherwise the order is re-quoted.
    """
    parcels = [p.to_parcel() for p in shipment_data.parcels] if shipment_data.parcels else None

    logger.info(
        f"Admin {current_user.id} creating shipment for order {shipment_data.order_id} "
        f"({shipment_data.service_level_code})"
    )
    result = await service.orchestrator.create_shipment(
        shipment_data.order_id,
        shipment_data.service_level_code,
        parcels,
    )
    return ShipmentResponse.from_result(result)


@router.post("/cancel/{order_id}", response_model=CancelShipmentResponse)
async def cancel_shipment(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Cancel the active shipment on an order (admin only)."""
    logger.info(f"Admin {current_user.id} cancelling shipment for order {order_id}")
    result = await service.orchestrator.cancel_shipment(order_id)
    return CancelShipmentResponse.from_result(result)


@router.get("/label/{order_id}", response_model=LabelResponse)
async def get_label(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Get the carrier label URL for an order's shipment (admin only)."""
    label_url = await service.orchestrator.get_label_url_for_order(order_id)
    return LabelResponse(order_id=order_id, label_url=label_url)


# ==================== Tracking Endpoints ====================


@router.get("/tracking/order/{order_id}", response_model=TrackingResponse)
async def track_order(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: ShippingService = Depends(get_shipping_service),
):
    """Track an order's shipment. Customers can only see their own orders."""
    order = await service.get_order(order_id)

    if order.user_id != current_user.id and not current_user.is_admin:
        # Same response as a missing order
        raise HTTPException(status_code=404, detail="Order not found")

    state = await service.tracking.get_tracking_for_order(order.id)
    return TrackingResponse.from_state(state)


@router.get("/tracking/{tracking_reference}", response_model=TrackingResponse)
async def track_shipment(
    tracking_reference: str,
    service: ShippingService = Depends(get_shipping_service),
):
    """Public tracking lookup by carrier tracking reference."""
    state = await service.tracking.get_tracking(tracking_reference)
    return TrackingResponse.from_state(state)


# ==================== Webhooks ====================


@router.post("/webhook", response_model=WebhookAck)
async def handle_carrier_webhook(
    request: Request,
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Receive a carrier status webhook.

    Once the signature check passes this always returns 200, so the carrier
    does not keep retrying events we cannot or need not apply.
    """
    body = await request.body()

    secret = service.settings.SHIPLOGIC_WEBHOOK_SECRET
    if secret:
        signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
        if not verify_webhook_signature(secret, body, signature):
            logger.warning("Invalid carrier webhook signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.error(f"Failed to parse webhook payload: {e}")
        return WebhookAck(status="ignored", reason="invalid_json")

    try:
        result = await service.handle_webhook(payload)
    except WebhookPayloadError as e:
        logger.warning(f"Ignoring carrier webhook: {e.message}")
        return WebhookAck(status="ignored", reason="malformed_payload")
    except Exception as e:
        logger.error(f"Failed to process carrier webhook: {type(e).__name__}: {e}", exc_info=True)
        return WebhookAck(status="error", reason="processing_failed")

    return WebhookAck(
        status="ok",
        order_id=result.order_id,
        applied_status=result.applied_status.value if result.applied_status else None,
        reason=result.reason,
    )
