"""
Shared pytest fixtures.

Every service runs as its real FastAPI app against its own SQLite file
database. The apps share one ``InMemoryEventBus`` and talk to each other
through ``httpx.ASGITransport``; the email service is an
``httpx.MockTransport`` that records what it was sent.
"""

import json
from types import SimpleNamespace

import httpx
import pytest

from storefront.delivery import main as delivery_main
from storefront.delivery import subscriber as delivery_subscriber
from storefront.delivery import tables as delivery_tables
from storefront.inventory import commands as inventory_commands
from storefront.inventory import main as inventory_main
from storefront.inventory import subscriber as inventory_subscriber
from storefront.inventory import tables as inventory_tables
from storefront.ledger import commands as ledger_commands
from storefront.ledger import main as ledger_main
from storefront.ledger import tables as ledger_tables
from storefront.orders import commands as order_commands
from storefront.orders import main as orders_main
from storefront.orders import tables as order_tables
from storefront.orders.clients import (
    Collaborators,
    DeliveryClient,
    InventoryClient,
    LedgerClient,
    NotificationClient,
)
from storefront.shared.bus import InMemoryEventBus
from storefront.shared.config import Settings
from storefront.shared.db import create_session_factory, create_tables

from .helpers import OWNER, POOR_OWNER, asgi_client


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        orders_database_url=f"sqlite+aiosqlite:///{tmp_path}/orders.db",
        ledger_database_url=f"sqlite+aiosqlite:///{tmp_path}/ledger.db",
        inventory_database_url=f"sqlite+aiosqlite:///{tmp_path}/inventory.db",
        delivery_database_url=f"sqlite+aiosqlite:///{tmp_path}/delivery.db",
        delivery_lost_probability=0.0,
        retry_base_delay=0.01,
        retry_jitter=0.0,
    )


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


async def _attach_database(app, url, metadata):
    engine, app.state.sessions = create_session_factory(url)
    await create_tables(engine, metadata)
    return engine


@pytest.fixture
async def ledger_app(settings, bus):
    app = ledger_main.create_app(settings)
    app.state.bus = bus
    engine = await _attach_database(app, settings.ledger_database_url, ledger_tables.metadata)
    yield app
    await engine.dispose()


@pytest.fixture
async def inventory_app(settings, bus):
    app = inventory_main.create_app(settings)
    app.state.bus = bus
    engine = await _attach_database(app, settings.inventory_database_url, inventory_tables.metadata)
    inventory_subscriber.bind(bus, app.state.sessions)
    yield app
    await engine.dispose()


@pytest.fixture
async def delivery_app(settings, bus):
    app = delivery_main.create_app(settings)
    app.state.bus = bus
    engine = await _attach_database(app, settings.delivery_database_url, delivery_tables.metadata)
    delivery_subscriber.bind(bus, app.state.sessions)
    yield app
    await engine.dispose()


@pytest.fixture
def emails() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
async def email_http(emails):
    def handler(request: httpx.Request) -> httpx.Response:
        emails.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
        return httpx.Response(202, json={"status": "queued"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://email") as client:
        yield client


@pytest.fixture
async def orders_app(settings, bus, ledger_app, inventory_app, delivery_app, email_http, fake_sleep):
    app = orders_main.create_app(settings)
    app.state.bus = bus
    engine = await _attach_database(app, settings.orders_database_url, order_tables.metadata)
    async with asgi_client(ledger_app, "http://ledger") as ledger_http, asgi_client(
        inventory_app, "http://inventory"
    ) as inventory_http, asgi_client(delivery_app, "http://delivery") as delivery_http:
        orders_main.wire(
            app,
            Collaborators(
                ledger=LedgerClient(ledger_http),
                inventory=InventoryClient(inventory_http),
                delivery=DeliveryClient(delivery_http),
                notifier=NotificationClient(email_http),
            ),
        )
        app.state.orchestrator.sleep = fake_sleep
        app.state.reconciler.sleep = fake_sleep
        app.state.compensator.sleep = fake_sleep
        yield app
    await engine.dispose()


@pytest.fixture
async def store(settings, ledger_app, inventory_app, orders_app):
    """
    Seed data:

    - accounts: store, OWNER with 1000.00, POOR_OWNER with 10.00
    - widget 49.99: 5 in Sydney
    - gadget 19.50: 3 in Sydney, 10 in Melbourne
    - retired 5.00: inactive
    """
    async with ledger_app.state.sessions() as session:
        await ledger_commands.open_account(
            session, "STORE", "STORE", 0, "AUD", account_number=settings.store_account_number
        )
    async with ledger_app.state.sessions() as session:
        await ledger_commands.open_account(session, settings.customer_id(OWNER), "CUSTOMER", "1000.00", "AUD")
    async with ledger_app.state.sessions() as session:
        await ledger_commands.open_account(session, settings.customer_id(POOR_OWNER), "CUSTOMER", "10.00", "AUD")

    async with orders_app.state.sessions() as session:
        widget = await order_commands.add_product(session, "WID-1", "Widget", "49.99")
    async with orders_app.state.sessions() as session:
        gadget = await order_commands.add_product(session, "GAD-1", "Gadget", "19.50")
    async with orders_app.state.sessions() as session:
        retired = await order_commands.add_product(session, "RET-1", "Retired", "5.00", is_active=False)

    async with inventory_app.state.sessions() as session:
        sydney = await inventory_commands.add_warehouse(session, "WH-SYD", "Sydney")
    async with inventory_app.state.sessions() as session:
        melbourne = await inventory_commands.add_warehouse(session, "WH-MEL", "Melbourne")
    async with inventory_app.state.sessions() as session:
        await inventory_commands.receive_stock(session, sydney, widget, 5)
    async with inventory_app.state.sessions() as session:
        await inventory_commands.receive_stock(session, sydney, gadget, 3)
    async with inventory_app.state.sessions() as session:
        await inventory_commands.receive_stock(session, melbourne, gadget, 10)

    return SimpleNamespace(widget=widget, gadget=gadget, retired=retired, sydney=sydney, melbourne=melbourne)


@pytest.fixture
async def orders_client(orders_app):
    async with asgi_client(orders_app, "http://orders", headers={"X-User-Id": str(OWNER)}) as client:
        yield client
