"""
Order Service: FastAPI entry point

Customer-facing surface. The caller's identity comes from the ``X-User-Id``
header set by the auth gateway in front of this service.

  POST /orders               → saga (orchestrator.py)
  POST /orders/{id}/cancel   → cancellation + refund
  GET  /orders, /orders/{id} → read side (queries.py)
  WS   /ws/orders            → status pushes (push.py)
"""

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from decimal import Decimal

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.config import Settings, get_settings
from ..shared.errors import register_error_handlers
from ..shared.retry import RetryPolicy
from ..shared.service import get_session, service_resources
from . import queries, subscriber
from .address import Address
from .clients import Collaborators, DeliveryClient, InventoryClient, LedgerClient, NotificationClient
from .notifications import OrderNotifier
from .orchestrator import OrderSagaOrchestrator
from .push import OrderPushHub
from .reconciler import DeliveryStatusReconciler, LostDeliveryCompensator
from .tables import metadata

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────

class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    items: list[OrderItemIn] = Field(min_length=1)
    shipping_address: Address
    billing_address: Address | None = None
    payment_method: str = "CREDIT_CARD"
    notes: str = ""


class CancelOrderRequest(BaseModel):
    reason: str | None = None


class OrderItemOut(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class HistoryOut(BaseModel):
    status: str
    note: str
    created_at: datetime


class OrderOut(BaseModel):
    order_number: str
    owner_id: int
    total_amount: Decimal
    currency: str
    status: str
    payment_status: str
    payment_method: str
    payment_reference: str | None = None
    delivery_id: str | None = None
    shipping_address: Address
    billing_address: Address | None = None
    notes: str = ""
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemOut]
    history: list[HistoryOut]
    saga_log: list[dict] | None = None


class CancelOrderResponse(BaseModel):
    order_number: str
    status: str
    payment_status: str
    refund_transaction_id: str | None = None
    refunded: bool
    message: str


# ── Dependencies ─────────────────────────────────

def get_owner_id(x_user_id: str | None = Header(default=None)) -> int:
    if not x_user_id:
        raise HTTPException(401, "Authentication required")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(401, "Invalid user identity") from None


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


def wire(app: FastAPI, collaborators: Collaborators) -> None:
    """Build the saga and the event consumers on top of ``app.state``."""
    state = app.state
    retry = RetryPolicy.from_settings(state.settings)
    notifier = OrderNotifier(collaborators.notifier)
    state.collaborators = collaborators
    state.orchestrator = OrderSagaOrchestrator(state.sessions, state.bus, collaborators, state.settings)
    state.reconciler = DeliveryStatusReconciler(state.sessions, state.bus, state.push, notifier, retry)
    state.compensator = LostDeliveryCompensator(state.sessions, collaborators.ledger, notifier, retry)
    subscriber.bind(state.bus, state.reconciler, state.compensator)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with service_resources(
            app, settings, settings.orders_database_url, metadata, "order-service"
        ), AsyncExitStack() as stack:
            if getattr(app.state, "orchestrator", None) is None:
                http = {
                    name: await stack.enter_async_context(
                        httpx.AsyncClient(base_url=url, timeout=settings.http_timeout_seconds)
                    )
                    for name, url in (
                        ("ledger", settings.ledger_service_url),
                        ("inventory", settings.inventory_service_url),
                        ("delivery", settings.delivery_service_url),
                        ("notifier", settings.notification_service_url),
                    )
                }
                wire(
                    app,
                    Collaborators(
                        ledger=LedgerClient(http["ledger"]),
                        inventory=InventoryClient(http["inventory"]),
                        delivery=DeliveryClient(http["delivery"]),
                        notifier=NotificationClient(http["notifier"]),
                    ),
                )
            await app.state.bus.start()
            try:
                yield
            finally:
                await app.state.bus.stop()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.push = OrderPushHub()
    register_error_handlers(app)

    # ── Command Endpoints ────────────────────────

    @app.post("/orders", response_model=OrderOut, status_code=201)
    async def create_order(
        req: CreateOrderRequest,
        owner_id: int = Depends(get_owner_id),
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        return await orchestrator.create_order(
            owner_id,
            [(item.product_id, item.quantity) for item in req.items],
            req.shipping_address,
            payment_method=req.payment_method,
            billing_address=req.billing_address,
            notes=req.notes,
        )

    @app.post("/orders/{order_number}/cancel", response_model=CancelOrderResponse)
    async def cancel_order(
        order_number: str,
        req: CancelOrderRequest | None = None,
        owner_id: int = Depends(get_owner_id),
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        return await orchestrator.cancel_order(owner_id, order_number, req.reason if req else None)

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders", response_model=list[OrderOut])
    async def list_orders(owner_id: int = Depends(get_owner_id), session: AsyncSession = Depends(get_session)):
        return await queries.list_orders(session, owner_id)

    @app.get("/orders/{order_number}", response_model=OrderOut)
    async def get_order(
        order_number: str,
        owner_id: int = Depends(get_owner_id),
        session: AsyncSession = Depends(get_session),
    ):
        return await queries.get_order(session, owner_id, order_number)

    @app.get("/admin/abandoned-events", dependencies=[Depends(get_owner_id)])
    async def abandoned_events(session: AsyncSession = Depends(get_session)):
        """Delivery events given up after the last retry."""
        return await queries.list_abandoned(session)

    # ── Push ─────────────────────────────────────

    @app.websocket("/ws/orders")
    async def order_updates(websocket: WebSocket):
        raw = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
        if not raw or not raw.isdigit():
            await websocket.close(code=4401)
            return
        owner_id = int(raw)
        hub: OrderPushHub = websocket.app.state.push
        await websocket.accept()
        hub.connect(owner_id, websocket)
        await websocket.send_json({"type": "CONNECTED", "owner_id": owner_id})
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect(owner_id, websocket)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
