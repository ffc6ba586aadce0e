"""
Inventory Service: FastAPI entry point

Reservation engine behind HTTP, plus a background consumer of
``order.paid`` / ``order.cancelled``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.bus import EventBus
from ..shared.config import Settings, get_settings
from ..shared.errors import register_error_handlers
from ..shared.service import get_bus, get_session, service_resources
from . import commands, queries, subscriber
from .tables import metadata

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────

class ReserveItem(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)


class ReserveRequest(BaseModel):
    order_id: str
    items: list[ReserveItem] = Field(min_length=1)


class ReservationOut(BaseModel):
    reservation_id: str
    order_id: str
    warehouse_id: int
    product_id: int
    quantity: int
    status: str
    expires_at: datetime


class ReserveResponse(BaseModel):
    order_id: str
    reservations: list[ReservationOut]


class WarehouseStock(BaseModel):
    warehouse_id: int
    warehouse_code: str
    warehouse_name: str
    available: int
    reserved: int
    total: int


class InventoryOut(BaseModel):
    product_id: int
    stock_available: int
    warehouses: list[WarehouseStock]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with service_resources(
            app, settings, settings.inventory_database_url, metadata, "inventory-service"
        ):
            subscriber.bind(app.state.bus, app.state.sessions)
            await app.state.bus.start()
            try:
                yield
            finally:
                await app.state.bus.stop()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.settings = settings
    register_error_handlers(app)

    # ── Command Endpoints ────────────────────────

    @app.post("/reserve", response_model=ReserveResponse, status_code=201)
    async def reserve(
        req: ReserveRequest,
        session: AsyncSession = Depends(get_session),
        bus: EventBus = Depends(get_bus),
    ):
        """All-or-nothing reservation of every line of an order."""
        rows = await commands.reserve(
            session,
            bus,
            req.order_id,
            [(item.product_id, item.quantity) for item in req.items],
            settings.reservation_expiry_minutes,
        )
        return {"order_id": req.order_id, "reservations": rows}

    @app.post("/confirm/{order_id}", response_model=ReserveResponse)
    async def confirm(
        order_id: str,
        session: AsyncSession = Depends(get_session),
        bus: EventBus = Depends(get_bus),
    ):
        rows = await commands.confirm(session, bus, order_id)
        return {"order_id": order_id, "reservations": rows}

    @app.post("/release/{order_id}", response_model=ReserveResponse)
    async def release(order_id: str, session: AsyncSession = Depends(get_session)):
        rows = await commands.release(session, order_id)
        return {"order_id": order_id, "reservations": rows}

    # ── Query Endpoints ──────────────────────────

    @app.get("/inventory/{product_id}", response_model=InventoryOut)
    async def get_inventory(product_id: int, session: AsyncSession = Depends(get_session)):
        return await queries.get_inventory(session, product_id)

    @app.get("/reservations/{order_id}", response_model=list[ReservationOut])
    async def reservations(order_id: str, session: AsyncSession = Depends(get_session)):
        return await queries.list_reservations(session, order_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "inventory-service"}

    return app


app = create_app()
