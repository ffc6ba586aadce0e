"""Tests for inventory holds: reserve, confirm, release and the order event consumer."""

from types import SimpleNamespace

import pytest

from storefront.inventory import commands, queries
from storefront.shared.errors import InsufficientStockError, NotFoundError, ValidationError

from .helpers import asgi_client, stock_row

BOLTS = 101
NUTS = 102


@pytest.fixture
async def stocked(inventory_app):
    async with inventory_app.state.sessions() as session:
        north = await commands.add_warehouse(session, "WH-N", "North")
    async with inventory_app.state.sessions() as session:
        south = await commands.add_warehouse(session, "WH-S", "South")
    async with inventory_app.state.sessions() as session:
        await commands.receive_stock(session, north, BOLTS, 4)
    async with inventory_app.state.sessions() as session:
        await commands.receive_stock(session, south, BOLTS, 10)
    async with inventory_app.state.sessions() as session:
        await commands.receive_stock(session, north, NUTS, 2)
    return SimpleNamespace(north=north, south=south)


async def _reserve(inventory_app, bus, order_id, items):
    async with inventory_app.state.sessions() as session:
        return await commands.reserve(session, bus, order_id, items)


def _assert_balanced(row):
    assert row["available"] >= 0
    assert row["reserved"] >= 0
    assert row["available"] + row["reserved"] <= row["total"]


class TestReserve:
    async def test_moves_stock_from_available_to_reserved(self, inventory_app, bus, stocked):
        rows = await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])

        assert len(rows) == 1
        assert rows[0]["reservation_id"].startswith("RES-")
        assert rows[0]["warehouse_id"] == stocked.north
        north = await stock_row(inventory_app, stocked.north, BOLTS)
        assert (north["available"], north["reserved"], north["total"]) == (1, 3, 4)
        _assert_balanced(north)
        assert bus.topics() == ["warehouse.stock.reserved"]

    async def test_first_warehouse_that_covers_the_line_wins(self, inventory_app, bus, stocked):
        rows = await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 6)])

        assert rows[0]["warehouse_id"] == stocked.south
        assert (await stock_row(inventory_app, stocked.north, BOLTS))["available"] == 4

    async def test_shortfall_rolls_back_every_line(self, inventory_app, bus, stocked):
        with pytest.raises(InsufficientStockError) as exc:
            await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 2), (NUTS, 3)])

        assert exc.value.product_id == NUTS
        north = await stock_row(inventory_app, stocked.north, BOLTS)
        assert (north["available"], north["reserved"]) == (4, 0)
        async with inventory_app.state.sessions() as session:
            assert await queries.list_reservations(session, "ORD-1") == []
        assert bus.topics() == ["warehouse.stock.insufficient"]

    async def test_repeat_returns_existing_hold(self, inventory_app, bus, stocked):
        first = await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])
        second = await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])

        assert [r["reservation_id"] for r in second] == [r["reservation_id"] for r in first]
        assert (await stock_row(inventory_app, stocked.north, BOLTS))["reserved"] == 3

    @pytest.mark.parametrize("items", [[], [(BOLTS, 0)]])
    async def test_rejects_bad_lines(self, inventory_app, bus, stocked, items):
        with pytest.raises(ValidationError):
            await _reserve(inventory_app, bus, "ORD-1", items)


class TestConfirmAndRelease:
    async def test_confirm_deducts_once(self, inventory_app, bus, stocked):
        await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])

        async with inventory_app.state.sessions() as session:
            confirmed = await commands.confirm(session, bus, "ORD-1")
        async with inventory_app.state.sessions() as session:
            again = await commands.confirm(session, bus, "ORD-1")

        assert [r["status"] for r in confirmed] == ["CONFIRMED"]
        assert again == []
        north = await stock_row(inventory_app, stocked.north, BOLTS)
        assert (north["available"], north["reserved"], north["total"]) == (1, 0, 1)
        assert bus.topics().count("warehouse.stock.deducted") == 1

    async def test_release_restores_once(self, inventory_app, bus, stocked):
        await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])

        async with inventory_app.state.sessions() as session:
            released = await commands.release(session, "ORD-1")
        async with inventory_app.state.sessions() as session:
            again = await commands.release(session, "ORD-1")

        assert [r["status"] for r in released] == ["CANCELLED"]
        assert again == []
        north = await stock_row(inventory_app, stocked.north, BOLTS)
        assert (north["available"], north["reserved"], north["total"]) == (4, 0, 4)

    async def test_release_after_confirm_changes_nothing(self, inventory_app, bus, stocked):
        await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])
        async with inventory_app.state.sessions() as session:
            await commands.confirm(session, bus, "ORD-1")

        async with inventory_app.state.sessions() as session:
            assert await commands.release(session, "ORD-1") == []
        north = await stock_row(inventory_app, stocked.north, BOLTS)
        assert (north["available"], north["reserved"], north["total"]) == (1, 0, 1)

    async def test_every_movement_is_audited(self, inventory_app, bus, stocked):
        await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])
        async with inventory_app.state.sessions() as session:
            await commands.release(session, "ORD-1")

        async with inventory_app.state.sessions() as session:
            audit = await queries.list_audit(session, BOLTS)
        assert [a["transaction_type"] for a in audit] == ["RECEIVE", "RECEIVE", "RESERVE", "RELEASE"]


class TestOrderEventConsumer:
    async def test_order_paid_confirms(self, inventory_app, bus, stocked):
        await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])

        await bus.publish("order.paid", {"order_id": "ORD-1"})

        assert (await stock_row(inventory_app, stocked.north, BOLTS))["total"] == 1

    async def test_order_cancelled_releases(self, inventory_app, bus, stocked):
        await _reserve(inventory_app, bus, "ORD-1", [(BOLTS, 3)])

        await bus.publish("order.cancelled", {"order_id": "ORD-1"})
        await bus.publish("order.cancelled", {"order_id": "ORD-1"})

        assert (await stock_row(inventory_app, stocked.north, BOLTS))["available"] == 4


class TestInventoryApi:
    async def test_stock_is_summed_across_warehouses(self, inventory_app, stocked):
        async with asgi_client(inventory_app, "http://inventory") as client:
            resp = await client.get(f"/inventory/{BOLTS}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["stock_available"] == 14
        assert [w["warehouse_code"] for w in body["warehouses"]] == ["WH-N", "WH-S"]

    async def test_unknown_product_is_404(self, inventory_app, stocked):
        async with asgi_client(inventory_app, "http://inventory") as client:
            resp = await client.get("/inventory/999")

        assert resp.status_code == 404

    async def test_reserve_shortfall_names_the_product(self, inventory_app, stocked):
        async with asgi_client(inventory_app, "http://inventory") as client:
            resp = await client.post(
                "/reserve", json={"order_id": "ORD-1", "items": [{"product_id": NUTS, "quantity": 5}]}
            )

        assert resp.status_code == 409
        assert resp.json()["product_id"] == NUTS

    async def test_reserve_and_list(self, inventory_app, stocked):
        async with asgi_client(inventory_app, "http://inventory") as client:
            resp = await client.post(
                "/reserve", json={"order_id": "ORD-1", "items": [{"product_id": BOLTS, "quantity": 1}]}
            )
            assert resp.status_code == 201

            resp = await client.get("/reservations/ORD-1")
            assert [r["status"] for r in resp.json()] == ["PENDING"]

    async def test_receive_stock_into_unknown_warehouse(self, inventory_app, stocked):
        async with inventory_app.state.sessions() as session:
            with pytest.raises(NotFoundError):
                await commands.receive_stock(session, 999, BOLTS, 1)
