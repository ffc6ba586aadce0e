"""Helpers shared by the test modules."""

from datetime import timedelta
from decimal import Decimal

import httpx
from sqlalchemy import select

from storefront.delivery.scheduler import DeliveryScheduler
from storefront.inventory.tables import inventory
from storefront.ledger import queries as ledger_queries
from storefront.orders import commands as order_commands
from storefront.orders import queries as order_queries
from storefront.orders.address import Address
from storefront.shared.db import utcnow

OWNER = 7
POOR_OWNER = 8
STRANGER = 9

ADDRESS = Address(street="1 George St", locality="Sydney", region="NSW", postcode="2000")
ADDRESS_JSON = ADDRESS.model_dump()


def asgi_client(app, base_url: str, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=base_url, **kwargs)


async def stock_row(inventory_app, warehouse_id: int, product_id: int) -> dict:
    async with inventory_app.state.sessions() as session:
        result = await session.execute(
            select(inventory).where(inventory.c.warehouse_id == warehouse_id, inventory.c.product_id == product_id)
        )
        return dict(result.one()._mapping)


async def balance_of(ledger_app, customer_id: str) -> Decimal:
    async with ledger_app.state.sessions() as session:
        return (await ledger_queries.get_balance(session, customer_id))["balance"]


async def load_order(orders_app, order_number: str) -> dict:
    async with orders_app.state.sessions() as session:
        return await order_queries.find_order(session, order_number)


async def place_order(orders_app, owner_id: int, items: list[tuple[int, int]]) -> dict:
    return await orders_app.state.orchestrator.create_order(owner_id, items, ADDRESS)


async def seed_order(
    orders_app,
    owner_id: int = OWNER,
    status: str = "PROCESSING",
    payment_status: str = "PAID",
    payment_reference: str | None = "TXN-1-SEEDED01",
    delivery_id: str | None = None,
    total: str = "49.99",
    number: str | None = None,
) -> str:
    """Insert an order row directly, bypassing the saga."""
    number = number or order_commands.order_number()
    async with orders_app.state.sessions() as session:
        order_id = await order_commands.insert_order(
            session,
            number,
            owner_id,
            [
                {
                    "product_id": 1,
                    "product_name": "Widget",
                    "quantity": 1,
                    "unit_price": Decimal(total),
                    "line_total": Decimal(total),
                }
            ],
            Decimal(total),
            "AUD",
            ADDRESS_JSON,
            None,
            "CREDIT_CARD",
            "",
            status,
            payment_status,
        )
        await order_commands.update_order(
            session, order_id, payment_reference=payment_reference, delivery_id=delivery_id
        )
        await session.commit()
    return number


def delivery_event(order_number: str, status: str, delivery_id: str = "DEL-TEST0001", **extra) -> dict:
    return {
        "delivery_id": delivery_id,
        "order_id": order_number,
        "status": status,
        "tracking_number": "DEL-1700000000000",
        "note": "Automatic status update",
        "timestamp": utcnow().isoformat(),
        **extra,
    }


def make_scheduler(delivery_app, bus, dwell_seconds: float = 5.0) -> DeliveryScheduler:
    return DeliveryScheduler(
        delivery_app.state.sessions,
        bus,
        delivery_app.state.loss_probability,
        dwell_seconds=dwell_seconds,
        interval_seconds=0.01,
    )


async def run_scans(scheduler: DeliveryScheduler, count: int, step_seconds: float = 6.0) -> list[list[dict]]:
    """Run ``count`` scans, each ``step_seconds`` further in the future."""
    start = utcnow()
    return [await scheduler.tick(start + timedelta(seconds=step_seconds * (i + 1))) for i in range(count)]
