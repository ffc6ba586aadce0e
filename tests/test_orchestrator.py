"""
End-to-end saga tests. Every service runs for real; only the email service
and, where a test says so, a ledger call are faked.
"""

from decimal import Decimal

import pytest

from storefront.delivery import commands as delivery_commands
from storefront.delivery import queries as delivery_queries
from storefront.inventory import queries as inventory_queries
from storefront.ledger import queries as ledger_queries
from storefront.orders import commands as order_commands
from storefront.orders import queries as order_queries
from storefront.shared.errors import (
    ConflictError,
    InsufficientBalanceError,
    InsufficientStockError,
    NotFoundError,
    RemoteUnavailableError,
    ValidationError,
)

from .helpers import (
    OWNER,
    POOR_OWNER,
    STRANGER,
    balance_of,
    load_order,
    make_scheduler,
    place_order,
    run_scans,
    stock_row,
)

SAGA_STEPS = [
    "ValidateItems",
    "CreateOrder",
    "CheckInventory",
    "ReserveInventory",
    "ProcessPayment",
    "ConfirmInventory",
    "CreateDelivery",
    "SendConfirmation",
]


async def _only_order(orders_app, owner_id: int) -> dict:
    async with orders_app.state.sessions() as session:
        orders = await order_queries.list_orders(session, owner_id)
    assert len(orders) == 1
    return orders[0]


def _templates(emails):
    return [template for template, _ in emails]


class TestCreateOrder:
    async def test_happy_path(self, orders_app, ledger_app, inventory_app, settings, store, bus, emails):
        order = await place_order(orders_app, OWNER, [(store.widget, 2)])

        assert order["order_number"].startswith("ORD-")
        assert order["total_amount"] == Decimal("99.98")
        assert order["payment_status"] == "PAID"
        assert order["payment_reference"].startswith("TXN-")
        assert order["delivery_id"].startswith("DEL-")
        assert order["status"] == "PENDING_PICKUP"
        assert [s["action"] for s in order["saga_log"]] == SAGA_STEPS
        assert {s["status"] for s in order["saga_log"]} == {"COMPLETED"}

        widget = await stock_row(inventory_app, store.sydney, store.widget)
        assert (widget["available"], widget["reserved"], widget["total"]) == (3, 0, 3)
        assert await balance_of(ledger_app, settings.customer_id(OWNER)) == Decimal("900.02")
        async with ledger_app.state.sessions() as session:
            payments = await ledger_queries.list_transactions(session, order["order_number"])
        assert [(t["transaction_type"], t["status"], t["amount"]) for t in payments] == [
            ("PAYMENT", "SUCCESS", Decimal("99.98"))
        ]
        assert sum(item["line_total"] for item in order["items"]) == order["total_amount"]
        assert {"order.created", "order.paid", "delivery.status.pending_pickup"} <= set(bus.topics())
        assert _templates(emails) == ["order-confirmation"]

    async def test_taken_order_number_is_drawn_again(self, orders_app, store, monkeypatch):
        numbers = iter(["ORD-20260101000000-0001", "ORD-20260101000000-0001", "ORD-20260101000000-0002"])
        monkeypatch.setattr(order_commands, "order_number", lambda: next(numbers))

        first = await place_order(orders_app, OWNER, [(store.widget, 1)])
        second = await place_order(orders_app, OWNER, [(store.widget, 1)])

        assert first["order_number"] == "ORD-20260101000000-0001"
        assert second["order_number"] == "ORD-20260101000000-0002"
        assert second["status"] == "PENDING_PICKUP"

    async def test_history_follows_the_saga(self, orders_app, store):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        assert [h["status"] for h in order["history"]] == ["PENDING", "PAID", "PENDING_PICKUP"]

    async def test_line_goes_to_a_warehouse_that_covers_it(self, orders_app, inventory_app, store):
        order = await place_order(orders_app, OWNER, [(store.gadget, 5)])

        async with inventory_app.state.sessions() as session:
            reservations = await inventory_queries.list_reservations(session, order["order_number"])
        assert [(r["warehouse_id"], r["status"]) for r in reservations] == [(store.melbourne, "CONFIRMED")]
        assert (await stock_row(inventory_app, store.sydney, store.gadget))["available"] == 3
        assert (await stock_row(inventory_app, store.melbourne, store.gadget))["total"] == 5

    async def test_insufficient_stock(self, orders_app, inventory_app, ledger_app, settings, store, emails):
        with pytest.raises(InsufficientStockError):
            await place_order(orders_app, OWNER, [(store.widget, 6)])

        order = await _only_order(orders_app, OWNER)
        assert order["status"] == "INVENTORY_FAILED"
        assert order["payment_status"] == "PENDING"
        async with inventory_app.state.sessions() as session:
            assert await inventory_queries.list_reservations(session, order["order_number"]) == []
        assert await balance_of(ledger_app, settings.customer_id(OWNER)) == Decimal("1000.00")
        assert emails[-1][1]["status"] == "INVENTORY_INSUFFICIENT"

    async def test_payment_failure_restores_stock(self, orders_app, inventory_app, store, monkeypatch, emails):
        during_payment = {}

        async def declined(*args, **kwargs):
            during_payment.update(await stock_row(inventory_app, store.sydney, store.widget))
            raise InsufficientBalanceError("Insufficient balance: available 0.00, required 99.98")

        monkeypatch.setattr(orders_app.state.collaborators.ledger, "pay", declined)

        with pytest.raises(InsufficientBalanceError):
            await place_order(orders_app, OWNER, [(store.widget, 2)])

        assert (during_payment["available"], during_payment["reserved"]) == (3, 2)
        widget = await stock_row(inventory_app, store.sydney, store.widget)
        assert (widget["available"], widget["reserved"], widget["total"]) == (5, 0, 5)
        order = await _only_order(orders_app, OWNER)
        assert (order["status"], order["payment_status"]) == ("PAYMENT_FAILED", "FAILED")
        assert emails[-1][1]["subject"].startswith("Payment Failed - Insufficient Balance")

    async def test_poor_customer_is_declined_by_the_ledger(self, orders_app, ledger_app, inventory_app, store):
        with pytest.raises(InsufficientBalanceError):
            await place_order(orders_app, POOR_OWNER, [(store.widget, 1)])

        order = await _only_order(orders_app, POOR_OWNER)
        assert order["status"] == "PAYMENT_FAILED"
        async with ledger_app.state.sessions() as session:
            attempts = await ledger_queries.list_transactions(session, order["order_number"])
        assert [t["status"] for t in attempts] == ["FAILED"]
        assert (await stock_row(inventory_app, store.sydney, store.widget))["available"] == 5

    @pytest.mark.parametrize(
        "items,message",
        [
            ([], "At least one item"),
            ([(1, 0)], "Quantity must be at least 1"),
            ([(999, 1)], "Some products not found"),
        ],
    )
    async def test_invalid_lines_persist_nothing(self, orders_app, store, items, message):
        with pytest.raises(ValidationError, match=message):
            await place_order(orders_app, OWNER, items)

        async with orders_app.state.sessions() as session:
            assert await order_queries.list_orders(session, OWNER) == []

    async def test_inactive_product(self, orders_app, store):
        with pytest.raises(ValidationError, match="Product is not active"):
            await place_order(orders_app, OWNER, [(store.retired, 1)])


class TestLedgerOutage:
    async def test_transient_failure_is_retried(self, orders_app, store, monkeypatch, sleeps):
        ledger = orders_app.state.collaborators.ledger
        real_pay = ledger.pay
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RemoteUnavailableError("ledger service unreachable")
            return await real_pay(*args, **kwargs)

        monkeypatch.setattr(ledger, "pay", flaky)

        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        assert order["payment_status"] == "PAID"
        assert len(calls) == 2
        assert len(sleeps) == 1

    async def test_outage_fails_the_payment(self, orders_app, inventory_app, store, monkeypatch, sleeps):
        async def down(*args, **kwargs):
            raise RemoteUnavailableError("ledger service unreachable")

        monkeypatch.setattr(orders_app.state.collaborators.ledger, "pay", down)

        with pytest.raises(RemoteUnavailableError):
            await place_order(orders_app, OWNER, [(store.widget, 1)])

        order = await _only_order(orders_app, OWNER)
        assert order["status"] == "PAYMENT_FAILED"
        assert len(sleeps) == 2
        assert (await stock_row(inventory_app, store.sydney, store.widget))["reserved"] == 0

    async def test_simulated_payment_when_enabled(self, orders_app, settings, store, monkeypatch):
        async def down(*args, **kwargs):
            raise RemoteUnavailableError("ledger service unreachable")

        monkeypatch.setattr(orders_app.state.collaborators.ledger, "pay", down)
        monkeypatch.setattr(settings, "payment_simulate_on_failure", True)

        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        assert order["payment_status"] == "SIMULATED"
        assert order["payment_reference"].startswith("SIM-")
        assert order["delivery_id"] is not None


class TestDeliveryFlow:
    async def test_order_follows_the_delivery_to_completion(self, orders_app, delivery_app, bus, store, emails):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        await run_scans(make_scheduler(delivery_app, bus), 3)

        refreshed = await load_order(orders_app, order["order_number"])
        assert refreshed["status"] == "DELIVERED"
        assert [h["status"] for h in refreshed["history"]][-3:] == ["PICKED_UP", "IN_TRANSIT", "DELIVERED"]
        assert _templates(emails).count("shipping-update") == 3
        assert bus.topics()[-1] == "order.completed"

    async def test_lost_package_is_refunded(self, orders_app, delivery_app, ledger_app, settings, bus, store, emails):
        order = await place_order(orders_app, OWNER, [(store.widget, 2)])
        delivery_app.state.loss_probability.set(1.0)

        await run_scans(make_scheduler(delivery_app, bus), 3)

        refreshed = await load_order(orders_app, order["order_number"])
        assert (refreshed["status"], refreshed["payment_status"]) == ("LOST", "REFUNDED")
        assert await balance_of(ledger_app, settings.customer_id(OWNER)) == Decimal("1000.00")
        assert "package-lost" in _templates(emails)

    async def test_reported_loss_is_refunded(self, orders_app, delivery_app, ledger_app, settings, bus, store):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        async with delivery_app.state.sessions() as session:
            await delivery_commands.report_lost(session, bus, order["delivery_id"], "Van stolen")

        refreshed = await load_order(orders_app, order["order_number"])
        assert (refreshed["status"], refreshed["payment_status"]) == ("LOST", "REFUNDED")
        assert await balance_of(ledger_app, settings.customer_id(OWNER)) == Decimal("1000.00")


class TestCancelOrder:
    async def test_paid_order_is_refunded(self, orders_app, delivery_app, ledger_app, settings, store, emails):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        result = await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"], "Changed my mind")

        assert result["status"] == "CANCELLED"
        assert result["payment_status"] == "REFUNDED"
        assert result["refunded"] is True
        assert result["refund_transaction_id"].startswith("TXN-")
        assert await balance_of(ledger_app, settings.customer_id(OWNER)) == Decimal("1000.00")
        async with delivery_app.state.sessions() as session:
            delivery = await delivery_queries.get_delivery_for_order(session, order["order_number"])
        assert delivery["status"] == "CANCELLED"
        refreshed = await load_order(orders_app, order["order_number"])
        assert refreshed["status"] == "CANCELLED"
        assert emails[-1][0] == "refund-notification"
        assert emails[-1][1]["status"] == "REFUNDED"

    async def test_cancelled_order_ignores_later_delivery_events(self, orders_app, delivery_app, bus, store):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])
        await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"])

        await run_scans(make_scheduler(delivery_app, bus), 3)

        assert (await load_order(orders_app, order["order_number"]))["status"] == "CANCELLED"

    async def test_cancel_twice_is_conflict(self, orders_app, store):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])
        await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"])

        with pytest.raises(ConflictError, match="already cancelled"):
            await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"])

    async def test_delivered_order_cannot_be_cancelled(self, orders_app, delivery_app, bus, store):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])
        await run_scans(make_scheduler(delivery_app, bus), 3)

        with pytest.raises(ConflictError, match="Delivered orders"):
            await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"])

    async def test_someone_elses_order_is_not_found(self, orders_app, store):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        with pytest.raises(NotFoundError):
            await orders_app.state.orchestrator.cancel_order(STRANGER, order["order_number"])

    async def test_unpaid_order_is_cancelled_without_refund(self, orders_app, store, emails):
        with pytest.raises(InsufficientStockError):
            await place_order(orders_app, OWNER, [(store.widget, 6)])
        order = await _only_order(orders_app, OWNER)

        result = await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"])

        assert result["refunded"] is False
        assert result["message"] == "Order cancelled successfully"
        assert emails[-1][1]["status"] == "CANCELLED"

    async def test_refund_failure_is_reported_not_raised(self, orders_app, store, monkeypatch):
        order = await place_order(orders_app, OWNER, [(store.widget, 1)])

        async def down(*args, **kwargs):
            raise RemoteUnavailableError("ledger service unreachable")

        monkeypatch.setattr(orders_app.state.collaborators.ledger, "refund", down)

        result = await orders_app.state.orchestrator.cancel_order(OWNER, order["order_number"])

        assert result["status"] == "CANCELLED"
        assert result["refunded"] is False
        assert result["payment_status"] == "PAID"
        refreshed = await load_order(orders_app, order["order_number"])
        assert refreshed["history"][-1]["note"].startswith("Refund failed")

    async def test_cancel_during_delivery_request_stops_the_shipment(
        self, orders_app, delivery_app, ledger_app, settings, bus, store, emails, monkeypatch
    ):
        delivery = orders_app.state.collaborators.delivery
        real_request = delivery.request_delivery

        async def cancel_first(order_id, *args, **kwargs):
            await orders_app.state.orchestrator.cancel_order(OWNER, order_id, "Changed my mind")
            return await real_request(order_id, *args, **kwargs)

        monkeypatch.setattr(delivery, "request_delivery", cancel_first)

        order = await place_order(orders_app, OWNER, [(store.widget, 1)])
        await run_scans(make_scheduler(delivery_app, bus), 3)

        async with delivery_app.state.sessions() as session:
            shipment = await delivery_queries.get_delivery_for_order(session, order["order_number"])
        assert shipment["status"] == "CANCELLED"
        refreshed = await load_order(orders_app, order["order_number"])
        assert (refreshed["status"], refreshed["payment_status"]) == ("CANCELLED", "REFUNDED")
        assert refreshed["delivery_id"] == shipment["delivery_id"]
        assert await balance_of(ledger_app, settings.customer_id(OWNER)) == Decimal("1000.00")
        assert "order-confirmation" not in _templates(emails)
