"""
Tests for the SQLAlchemy order repository against a mocked session.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from jits_shipping.models.order import Order, OrderItem, OrderStatus
from jits_shipping.modules.shipping.repository import SqlAlchemyOrderRepository, StaleOrderError


def make_row(**overrides) -> Order:
    values = dict(
        id=1,
        order_number="JITS-00001",
        status="pending",
        version=2,
        user_id=42,
        total_amount=Decimal("350.00"),
        shipping_address_line1="12 Jan Smuts Avenue",
        shipping_city="Johannesburg",
        shipping_province="Gauteng",
        shipping_postal_code="2196",
        shipping_country="South Africa",
        service_level_code="ECO",
        shipping_cost=Decimal("115.00"),
    )
    values.update(overrides)
    order = Order(**values)
    order.items = [OrderItem(product_name="Gi - White A2", quantity=2, unit_price=Decimal("250.00"))]
    return order


def select_result(row):
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    result.scalars.return_value.first.return_value = row
    result.scalars.return_value.all.return_value = [row] if row is not None else []
    return result


def update_result(rowcount):
    result = MagicMock()
    result.rowcount = rowcount
    return result


class TestReads:

    @pytest.mark.asyncio
    async def test_get_maps_row_to_snapshot(self, mock_db):
        mock_db.execute.return_value = select_result(make_row())
        repo = SqlAlchemyOrderRepository(mock_db)

        order = await repo.get(1)

        assert order.status == OrderStatus.PENDING
        assert order.version == 2
        assert order.shipping_cost == Decimal("115.00")
        assert order.lines[0].quantity == 2
        assert order.has_active_shipment is False

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_db):
        mock_db.execute.return_value = select_result(None)

        assert await SqlAlchemyOrderRepository(mock_db).get(99) is None

    @pytest.mark.asyncio
    async def test_find_without_identifiers_skips_query(self, mock_db):
        repo = SqlAlchemyOrderRepository(mock_db)

        assert await repo.find_by_carrier_reference(None, ["", None]) is None
        mock_db.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_by_tracking_reference(self, mock_db):
        mock_db.execute.return_value = select_result(
            make_row(status="processing", tracking_number="TCG000123", carrier_shipment_id="555")
        )
        repo = SqlAlchemyOrderRepository(mock_db)

        order = await repo.find_by_carrier_reference(None, ["TCG000123"])

        assert order.tracking_number == "TCG000123"
        assert order.has_active_shipment is True

    @pytest.mark.asyncio
    async def test_list_active_shipments(self, mock_db):
        mock_db.execute.return_value = select_result(
            make_row(status="shipped", tracking_number="TCG000123")
        )

        orders = await SqlAlchemyOrderRepository(mock_db).list_active_shipments(limit=50)

        assert [o.status for o in orders] == [OrderStatus.SHIPPED]

        statement = mock_db.execute.call_args.args[0]
        assert "last_tracking_sync_at ASC NULLS FIRST" in str(statement)


class TestTrackingSyncStamp:

    @pytest.mark.asyncio
    async def test_stamps_without_version_bump(self, mock_db):
        synced_at = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
        repo = SqlAlchemyOrderRepository(mock_db)

        await repo.mark_tracking_synced([1, 2], synced_at)

        params = mock_db.execute.call_args.args[0].compile().params
        assert params["last_tracking_sync_at"] == synced_at
        assert "version" not in params
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_batch_skips_query(self, mock_db):
        await SqlAlchemyOrderRepository(mock_db).mark_tracking_synced([], datetime.now(timezone.utc))

        mock_db.execute.assert_not_called()


class TestApplyChanges:

    @pytest.mark.asyncio
    async def test_versioned_update_commits_and_rereads(self, mock_db):
        mock_db.execute.side_effect = [
            update_result(1),
            select_result(make_row(status="processing", version=3, tracking_number="TCG000001")),
        ]
        repo = SqlAlchemyOrderRepository(mock_db)

        order = await repo.apply_changes(
            1, 2, {"status": OrderStatus.PROCESSING, "tracking_number": "TCG000001"}
        )

        assert order.version == 3
        assert order.tracking_number == "TCG000001"
        mock_db.commit.assert_awaited_once()

        statement = mock_db.execute.call_args_list[0].args[0]
        params = statement.compile().params
        assert params["status"] == "processing"
        assert params["tracking_number"] == "TCG000001"
        assert params["version"] == 3

    @pytest.mark.asyncio
    async def test_version_mismatch_is_stale(self, mock_db):
        mock_db.execute.return_value = update_result(0)
        repo = SqlAlchemyOrderRepository(mock_db)

        with pytest.raises(StaleOrderError) as exc_info:
            await repo.apply_changes(1, 2, {"tracking_number": "TCG000001"})

        assert exc_info.value.expected_version == 2
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_shipping_columns_are_refused(self, mock_db):
        repo = SqlAlchemyOrderRepository(mock_db)

        with pytest.raises(ValueError):
            await repo.apply_changes(1, 2, {"total_amount": Decimal("0")})

        mock_db.execute.assert_not_called()
