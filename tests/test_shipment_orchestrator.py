"""
Tests for shipment creation, cancellation and labels.
"""
import asyncio
from decimal import Decimal

import httpx
import pytest

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
from jits_shipping.core.order_locks import OrderLockManager
from jits_shipping.models.order import OrderStatus
from jits_shipping.modules.shipping.carriers.base import (
    CancelResult,
    CarrierAPIError,
    CarrierTimeoutError,
    Parcel,
)
from jits_shipping.modules.shipping.carriers.shiplogic import ShipLogicCarrier
from jits_shipping.modules.shipping.orchestrator import ShipmentOrchestrator

from fakes import make_order


@pytest.fixture
def orchestrator(repository, carrier, shipping_config, locks):
    return ShipmentOrchestrator(repository, carrier, config=shipping_config, locks=locks)


@pytest.fixture
def shipped_order(repository):
    return repository.add(
        make_order(
            status=OrderStatus.PROCESSING,
            tracking_number="TCG000123",
            carrier_shipment_id="555",
            carrier_name="Fake Courier",
        )
    )


# ==================== Creation ====================


class TestCreateShipment:

    @pytest.mark.asyncio
    async def test_matching_checkout_selection_skips_requote(self, orchestrator, repository, carrier, order):
        repository.add(order)

        result = await orchestrator.create_shipment(order.id, "ECO")

        assert carrier.quote_calls == 0
        assert carrier.create_calls == 1
        assert result.rate_source == "stored"
        assert result.shipping_cost == Decimal("115.00")
        assert result.tracking_number == "TCG000001"
        assert result.carrier_shipment_id == "1001"
        assert result.status == OrderStatus.PROCESSING
        assert result.parcel_count == 1
        assert result.label_url == "https://labels.example.test/label.pdf"

        stored = repository.peek(order.id)
        assert stored.tracking_number == "TCG000001"
        assert stored.carrier_shipment_id == "1001"
        assert stored.carrier_name == "Fake Courier"
        assert stored.status == OrderStatus.PROCESSING
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_different_service_level_is_requoted(self, orchestrator, repository, carrier, order):
        repository.add(order)

        result = await orchestrator.create_shipment(order.id, "EXPRESS")

        assert carrier.quote_calls == 1
        assert result.rate_source == "requoted"
        assert result.shipping_cost == Decimal("230.00")
        assert result.service_level_name == "Express"

        stored = repository.peek(order.id)
        assert stored.service_level_code == "EXPRESS"
        assert stored.shipping_cost == Decimal("230.00")

    @pytest.mark.asyncio
    async def test_requote_over_free_shipping_threshold_costs_nothing(self, orchestrator, repository, order):
        repository.add(make_order(total_amount=Decimal("600.00"), service_level_code=None, shipping_cost=None))

        result = await orchestrator.create_shipment(order.id, "EXPRESS")

        assert result.rate_source == "requoted"
        assert result.shipping_cost == Decimal("0")

    @pytest.mark.asyncio
    async def test_stored_free_shipping_is_trusted(self, orchestrator, repository, carrier, order):
        repository.add(make_order(shipping_cost=Decimal("0")))

        result = await orchestrator.create_shipment(order.id, "ECO")

        assert carrier.quote_calls == 0
        assert result.shipping_cost == Decimal("0")

    @pytest.mark.asyncio
    async def test_unavailable_service_level(self, orchestrator, repository, carrier, order):
        repository.add(order)

        with pytest.raises(ServiceLevelNotFoundError) as exc_info:
            await orchestrator.create_shipment(order.id, "OVERNIGHT")

        assert exc_info.value.details["available"] == ["ECO", "EXPRESS"]
        assert carrier.create_calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [None, "", "   "])
    async def test_service_level_is_required(self, orchestrator, repository, carrier, order, code):
        repository.add(order)

        with pytest.raises(ServiceLevelRequiredError):
            await orchestrator.create_shipment(order.id, code)

        assert carrier.quote_calls == 0
        assert carrier.create_calls == 0

    @pytest.mark.asyncio
    async def test_missing_order(self, orchestrator):
        with pytest.raises(OrderNotFoundError):
            await orchestrator.create_shipment(404, "ECO")

    @pytest.mark.asyncio
    async def test_second_create_is_rejected(self, orchestrator, repository, carrier, shipped_order):
        with pytest.raises(ShipmentAlreadyExistsError) as exc_info:
            await orchestrator.create_shipment(shipped_order.id, "ECO")

        assert exc_info.value.details["tracking_number"] == "TCG000123"
        assert carrier.create_calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
    async def test_terminal_orders_cannot_ship(self, orchestrator, repository, carrier, status):
        repository.add(make_order(status=status))

        with pytest.raises(InvalidOrderError):
            await orchestrator.create_shipment(1, "ECO")

        assert carrier.create_calls == 0

    @pytest.mark.asyncio
    async def test_incomplete_address_rejected_before_carrier(self, orchestrator, repository, carrier):
        repository.add(make_order(shipping_city=None))

        with pytest.raises(ShippingValidationError) as exc_info:
            await orchestrator.create_shipment(1, "ECO")

        assert "city" in exc_info.value.details["missing_fields"]
        assert carrier.create_calls == 0

    @pytest.mark.asyncio
    async def test_order_without_lines_needs_explicit_parcels(self, orchestrator, repository, carrier):
        repository.add(make_order(lines=[]))

        with pytest.raises(InvalidOrderError):
            await orchestrator.create_shipment(1, "ECO")

        parcels = [Parcel(40, 30, 10, 2.0), Parcel(40, 30, 10, 1.5)]
        result = await orchestrator.create_shipment(1, "ECO", parcels)

        assert result.parcel_count == 2
        assert carrier.created[0].parcels == parcels

    @pytest.mark.asyncio
    async def test_shipment_request_carries_order_details(self, orchestrator, repository, carrier, order):
        repository.add(order)

        await orchestrator.create_shipment(order.id, "ECO")

        request = carrier.created[0]
        assert request.reference == "JITS-00001"
        assert request.destination.city == "Johannesburg"
        assert request.destination_contact.name == "Thandi Mokoena"
        assert request.declared_value == Decimal("350.00")

    @pytest.mark.asyncio
    async def test_already_processing_order_keeps_status(self, orchestrator, repository):
        repository.add(make_order(status=OrderStatus.PROCESSING))

        result = await orchestrator.create_shipment(1, "ECO")

        assert result.status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_missing_label_does_not_fail_creation(self, orchestrator, repository, carrier, order):
        repository.add(order)
        carrier.label_error = CarrierAPIError("Label not generated", code="500")

        result = await orchestrator.create_shipment(order.id, "ECO")

        assert result.label_url is None
        assert repository.peek(order.id).tracking_number == "TCG000001"


class TestConcurrentCreate:

    def test_injected_lock_table_is_used(self, repository, carrier, shipping_config):
        locks = OrderLockManager()

        orchestrator = ShipmentOrchestrator(repository, carrier, config=shipping_config, locks=locks)

        assert orchestrator.locks is locks

    @pytest.mark.asyncio
    async def test_concurrent_creates_produce_one_shipment(self, orchestrator, repository, carrier, order):
        repository.add(order)

        results = await asyncio.gather(
            orchestrator.create_shipment(order.id, "ECO"),
            orchestrator.create_shipment(order.id, "ECO"),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, ShipmentAlreadyExistsError)]
        assert len(created) == 1
        assert len(rejected) == 1
        assert carrier.create_calls == 1
        assert repository.peek(order.id).tracking_number == created[0].tracking_number

    @pytest.mark.asyncio
    async def test_separate_processes_are_caught_by_version_check(
        self, repository, carrier, shipping_config, order
    ):
        # Two lock tables behave like two worker processes
        first = ShipmentOrchestrator(repository, carrier, config=shipping_config, locks=OrderLockManager())
        second = ShipmentOrchestrator(repository, carrier, config=shipping_config, locks=OrderLockManager())
        repository.add(order)
        carrier.create_delay = 0.01

        results = await asyncio.gather(
            first.create_shipment(order.id, "ECO"),
            second.create_shipment(order.id, "ECO"),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        diverged = [r for r in results if isinstance(r, ShipmentCreatedButNotPersistedError)]
        assert len(created) == 1
        assert len(diverged) == 1
        assert diverged[0].tracking_number != created[0].tracking_number
        assert repository.peek(order.id).tracking_number == created[0].tracking_number


class TestCreatePartialFailure:

    @pytest.mark.asyncio
    async def test_save_failure_after_carrier_success(self, orchestrator, repository, carrier, order):
        repository.add(order)
        repository.fail_next_apply = RuntimeError("connection reset by peer")

        with pytest.raises(ShipmentCreatedButNotPersistedError) as exc_info:
            await orchestrator.create_shipment(order.id, "ECO")

        error = exc_info.value
        assert error.code == "SHIPMENT_CREATED_NOT_PERSISTED"
        assert error.severity == "P0"
        assert error.carrier_shipment_id == "1001"
        assert error.tracking_number == "TCG000001"
        assert error.details["order_id"] == order.id
        assert repository.peek(order.id).tracking_number is None

    @pytest.mark.asyncio
    async def test_unrelated_concurrent_write_is_retried(self, orchestrator, repository, order):
        repository.add(order)

        async def concurrent_writer(order_id):
            repository.bump(order_id, estimated_delivery=None)

        repository.before_apply = concurrent_writer

        result = await orchestrator.create_shipment(order.id, "ECO")

        assert result.tracking_number == "TCG000001"
        assert repository.apply_calls == 2
        stored = repository.peek(order.id)
        assert stored.tracking_number == "TCG000001"
        assert stored.version == 3

    @pytest.mark.asyncio
    async def test_order_deleted_during_creation(self, orchestrator, repository, order):
        repository.add(order)

        async def delete(order_id):
            repository.delete(order_id)

        repository.before_apply = delete

        with pytest.raises(ShipmentCreatedButNotPersistedError):
            await orchestrator.create_shipment(order.id, "ECO")

    @pytest.mark.asyncio
    async def test_blank_tracking_reference_is_never_saved(self, orchestrator, repository, carrier, order):
        repository.add(order)
        carrier.blank_tracking = True

        with pytest.raises(ShipmentCreatedButNotPersistedError) as exc_info:
            await orchestrator.create_shipment(order.id, "ECO")

        assert exc_info.value.carrier_shipment_id == "1001"
        assert repository.apply_calls == 0
        assert repository.peek(order.id).tracking_number is None

    @pytest.mark.asyncio
    async def test_timeout_is_outcome_unknown_and_not_retried(self, orchestrator, repository, carrier, order):
        repository.add(order)
        carrier.create_delay = 1

        with pytest.raises(CarrierOutcomeUnknownError) as exc_info:
            await orchestrator.create_shipment(order.id, "ECO")

        assert exc_info.value.details["operation"] == "create_shipment"
        assert carrier.create_calls == 1
        assert repository.peek(order.id).tracking_number is None

    @pytest.mark.asyncio
    async def test_carrier_timeout_error_is_outcome_unknown(self, orchestrator, repository, carrier, order):
        repository.add(order)
        carrier.create_error = CarrierTimeoutError("Ship Logic POST /shipments timed out")

        with pytest.raises(CarrierOutcomeUnknownError):
            await orchestrator.create_shipment(order.id, "ECO")

        assert repository.apply_calls == 0

    @pytest.mark.asyncio
    async def test_carrier_rejection_leaves_order_untouched(self, orchestrator, repository, carrier, order):
        repository.add(order)
        carrier.create_error = CarrierAPIError("Invalid delivery address", code="400")

        with pytest.raises(CarrierRequestError) as exc_info:
            await orchestrator.create_shipment(order.id, "ECO")

        assert exc_info.value.details["carrier_code"] == "400"
        assert repository.apply_calls == 0


class TestShipLogicCreateOutcomes:

    @staticmethod
    def shiplogic_orchestrator(repository, shipping_config, locks, handler):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://api.shiplogic.test"
        )
        gateway = ShipLogicCarrier(api_key="test-key", base_url="https://api.shiplogic.test", http_client=client)
        return ShipmentOrchestrator(repository, gateway, config=shipping_config, locks=locks)

    @pytest.mark.asyncio
    async def test_created_without_tracking_reference(self, repository, shipping_config, locks, order):
        repository.add(order)
        created = []

        def handler(request):
            created.append(request.url.path)
            return httpx.Response(200, json={"id": 7001, "status": "submitted"})

        orchestrator = self.shiplogic_orchestrator(repository, shipping_config, locks, handler)

        with pytest.raises(CarrierOutcomeUnknownError):
            await orchestrator.create_shipment(order.id, "ECO")

        assert created == ["/shipments"]
        assert repository.apply_calls == 0
        assert repository.peek(order.id).tracking_number is None

    @pytest.mark.asyncio
    async def test_gateway_timeout_on_create(self, repository, shipping_config, locks, order):
        repository.add(order)

        def handler(request):
            return httpx.Response(504, json={"message": "upstream timed out"})

        orchestrator = self.shiplogic_orchestrator(repository, shipping_config, locks, handler)

        with pytest.raises(CarrierOutcomeUnknownError) as exc_info:
            await orchestrator.create_shipment(order.id, "ECO")

        assert exc_info.value.details["operation"] == "create_shipment"
        assert repository.peek(order.id).tracking_number is None


# ==================== Cancellation ====================


class TestCancelShipment:

    @pytest.mark.asyncio
    async def test_cancel_then_recreate(self, orchestrator, repository, carrier, order):
        repository.add(order)
        first = await orchestrator.create_shipment(order.id, "ECO")

        cancelled = await orchestrator.cancel_shipment(order.id)

        assert cancelled.cancelled_tracking_number == first.tracking_number
        assert cancelled.status == OrderStatus.PROCESSING
        assert carrier.cancelled == [first.tracking_number]
        stored = repository.peek(order.id)
        assert stored.tracking_number is None
        assert stored.carrier_shipment_id is None
        assert stored.shipping_cost is None

        second = await orchestrator.create_shipment(order.id, "ECO")

        assert second.tracking_number != first.tracking_number
        # The cleared cost forces a fresh quote
        assert second.rate_source == "requoted"
        assert repository.peek(order.id).tracking_number == second.tracking_number

    @pytest.mark.asyncio
    async def test_rejected_cancel_keeps_shipment(self, orchestrator, repository, carrier, shipped_order):
        carrier.cancel_result = CancelResult(success=False, reason="Parcel already collected")

        with pytest.raises(CancellationRejectedError) as exc_info:
            await orchestrator.cancel_shipment(shipped_order.id)

        assert exc_info.value.reason == "Parcel already collected"
        stored = repository.peek(shipped_order.id)
        assert stored.tracking_number == "TCG000123"
        assert stored.carrier_shipment_id == "555"
        assert stored.version == shipped_order.version

    @pytest.mark.asyncio
    async def test_nothing_to_cancel(self, orchestrator, repository, carrier, order):
        repository.add(order)

        with pytest.raises(NoActiveShipmentError):
            await orchestrator.cancel_shipment(order.id)

        assert carrier.cancel_calls == 0

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_cancelled(self, orchestrator, repository, carrier):
        repository.add(make_order(status=OrderStatus.DELIVERED, tracking_number="TCG000123", carrier_shipment_id="555"))

        with pytest.raises(CancellationRejectedError) as exc_info:
            await orchestrator.cancel_shipment(1)

        assert exc_info.value.reason == "delivered"
        assert carrier.cancel_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_timeout_is_outcome_unknown(self, orchestrator, repository, carrier, shipped_order):
        carrier.cancel_delay = 1

        with pytest.raises(CarrierOutcomeUnknownError) as exc_info:
            await orchestrator.cancel_shipment(shipped_order.id)

        assert exc_info.value.details["operation"] == "cancel_shipment"
        assert repository.peek(shipped_order.id).tracking_number == "TCG000123"

    @pytest.mark.asyncio
    async def test_cancel_request_failure(self, orchestrator, repository, carrier, shipped_order):
        carrier.cancel_error = CarrierAPIError("Unauthorized", code="401")

        with pytest.raises(CarrierRequestError):
            await orchestrator.cancel_shipment(shipped_order.id)

        assert repository.peek(shipped_order.id).tracking_number == "TCG000123"

    @pytest.mark.asyncio
    async def test_save_failure_after_carrier_cancel(self, orchestrator, repository, carrier, shipped_order):
        repository.fail_next_apply = RuntimeError("database unavailable")

        with pytest.raises(ShipmentCancelledButNotPersistedError) as exc_info:
            await orchestrator.cancel_shipment(shipped_order.id)

        assert exc_info.value.tracking_number == "TCG000123"
        assert carrier.cancelled == ["TCG000123"]

    @pytest.mark.asyncio
    async def test_concurrent_clear_counts_as_cancelled(self, orchestrator, repository, shipped_order):
        async def cleared_elsewhere(order_id):
            repository.bump(order_id, tracking_number=None, carrier_shipment_id=None, shipping_cost=None)

        repository.before_apply = cleared_elsewhere

        result = await orchestrator.cancel_shipment(shipped_order.id)

        assert result.cancelled_tracking_number == "TCG000123"
        assert repository.peek(shipped_order.id).tracking_number is None


# ==================== Labels ====================


class TestLabels:

    @pytest.mark.asyncio
    async def test_label_for_order(self, orchestrator, shipped_order, carrier):
        url = await orchestrator.get_label_url_for_order(shipped_order.id)

        assert url == "https://labels.example.test/label.pdf"
        assert carrier.label_calls == 1

    @pytest.mark.asyncio
    async def test_label_without_shipment(self, orchestrator, repository, order):
        repository.add(order)

        with pytest.raises(NoActiveShipmentError):
            await orchestrator.get_label_url_for_order(order.id)

    @pytest.mark.asyncio
    async def test_label_not_generated_yet(self, orchestrator, carrier):
        carrier.label_url = None

        with pytest.raises(LabelNotAvailableError) as exc_info:
            await orchestrator.get_label_url("555")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_blank_shipment_id(self, orchestrator, carrier):
        with pytest.raises(ShippingValidationError):
            await orchestrator.get_label_url("  ")

        assert carrier.label_calls == 0

    @pytest.mark.asyncio
    async def test_label_carrier_failure(self, orchestrator, carrier):
        carrier.label_error = CarrierAPIError("Bad gateway", code="502")

        with pytest.raises(CarrierRequestError):
            await orchestrator.get_label_url("555")
