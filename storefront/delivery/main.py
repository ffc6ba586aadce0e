"""
Delivery Service: FastAPI entry point

  POST /delivery/request ──▶ PENDING_PICKUP
  scanner (background)   ──▶ one hop per dwell period
  order.cancelled        ──▶ CANCELLED
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.bus import EventBus
from ..shared.config import Settings, get_settings
from ..shared.errors import register_error_handlers
from ..shared.service import get_bus, get_session, service_resources
from . import commands, queries, subscriber
from .lifecycle import LossProbability
from .scheduler import DeliveryScheduler
from .tables import metadata

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────

class DeliveryRequest(BaseModel):
    order_id: str
    customer_id: str
    shipping_address: str
    carrier: str | None = None
    warehouse_id: int | None = None
    notes: str = ""


class LostPackageRequest(BaseModel):
    reason: str


class LostProbabilityConfig(BaseModel):
    probability: float


class HistoryEntry(BaseModel):
    status: str
    note: str
    created_at: datetime


class DeliveryOut(BaseModel):
    delivery_id: str
    order_id: str
    customer_id: str
    status: str
    tracking_number: str
    carrier: str
    shipping_address: str
    warehouse_id: int | None = None
    estimated_pickup: datetime | None = None
    estimated_delivery: datetime | None = None
    actual_pickup: datetime | None = None
    actual_delivery: datetime | None = None
    notes: str = ""
    created_at: datetime
    updated_at: datetime
    history: list[HistoryEntry] = []


def get_loss_probability(request: Request) -> LossProbability:
    return request.app.state.loss_probability


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with service_resources(
            app, settings, settings.delivery_database_url, metadata, "delivery-service"
        ):
            subscriber.bind(app.state.bus, app.state.sessions)
            await app.state.bus.start()

            scheduler = DeliveryScheduler(
                app.state.sessions,
                app.state.bus,
                app.state.loss_probability,
                dwell_seconds=settings.delivery_dwell_seconds,
                interval_seconds=settings.delivery_scan_interval_seconds,
            )
            shutdown_event = asyncio.Event()
            task = asyncio.create_task(scheduler.run(shutdown_event))
            try:
                yield
            finally:
                shutdown_event.set()
                await task
                await app.state.bus.stop()

    app = FastAPI(title="Delivery Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.loss_probability = LossProbability(settings.delivery_lost_probability)
    register_error_handlers(app)

    # ── Command Endpoints ────────────────────────

    @app.post("/delivery/request", response_model=DeliveryOut, status_code=201)
    async def request_delivery(
        req: DeliveryRequest,
        session: AsyncSession = Depends(get_session),
        bus: EventBus = Depends(get_bus),
    ):
        return await commands.create_delivery(
            session,
            bus,
            req.order_id,
            req.customer_id,
            req.shipping_address,
            req.carrier or settings.delivery_carrier,
            tracking_prefix=settings.tracking_number_prefix,
            warehouse_id=req.warehouse_id,
            notes=req.notes,
        )

    @app.post("/delivery/{delivery_id}/lost", response_model=DeliveryOut)
    async def report_lost(
        delivery_id: str,
        req: LostPackageRequest,
        session: AsyncSession = Depends(get_session),
        bus: EventBus = Depends(get_bus),
    ):
        return await commands.report_lost(session, bus, delivery_id, req.reason)

    # ── Admin ────────────────────────────────────

    @app.get("/delivery/config/lost-probability", response_model=LostProbabilityConfig)
    async def get_lost_probability(loss: LossProbability = Depends(get_loss_probability)):
        return {"probability": loss.get()}

    @app.put("/delivery/config/lost-probability", response_model=LostProbabilityConfig)
    async def set_lost_probability(
        req: LostProbabilityConfig, loss: LossProbability = Depends(get_loss_probability)
    ):
        logger.info("Setting lost probability to: %s", req.probability)
        return {"probability": loss.set(req.probability)}

    # ── Query Endpoints ──────────────────────────

    @app.get("/delivery/lost", response_model=list[DeliveryOut])
    async def lost_packages(session: AsyncSession = Depends(get_session)):
        return await queries.list_lost(session)

    @app.get("/delivery/order/{order_id}", response_model=DeliveryOut)
    async def delivery_for_order(order_id: str, session: AsyncSession = Depends(get_session)):
        return await queries.get_delivery_for_order(session, order_id)

    @app.get("/delivery/{delivery_id}", response_model=DeliveryOut)
    async def get_delivery(delivery_id: str, session: AsyncSession = Depends(get_session)):
        return await queries.get_delivery(session, delivery_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "delivery-service"}

    return app


app = create_app()
