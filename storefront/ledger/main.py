"""
Ledger Service: FastAPI entry point

Accounts and double-entry transfers. Leaf service: it calls nobody and only
publishes ``bank.*`` events.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.bus import EventBus
from ..shared.config import Settings, get_settings
from ..shared.errors import register_error_handlers
from ..shared.service import get_bus, get_session, service_resources
from . import commands, queries
from .tables import metadata

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────

class PaymentRequest(BaseModel):
    customer_id: str
    order_id: str
    amount: Decimal = Field(gt=0)
    currency: str = "AUD"
    payment_method: str = ""
    description: str = ""


class RefundRequest(BaseModel):
    transaction_id: str
    order_id: str
    amount: Decimal = Field(gt=0)
    reason: str = ""


class TransactionOut(BaseModel):
    transaction_id: str
    from_account: str
    to_account: str
    amount: Decimal
    currency: str
    transaction_type: str
    status: str
    reference_id: str
    original_transaction_id: str | None = None
    description: str = ""
    failure_reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class BalanceOut(BaseModel):
    customer_id: str
    account_number: str
    balance: Decimal
    currency: str
    is_active: bool


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with service_resources(
            app, settings, settings.ledger_database_url, metadata, "ledger-service"
        ):
            yield

    app = FastAPI(title="Ledger Service", lifespan=lifespan)
    app.state.settings = settings
    register_error_handlers(app)

    # ── Command Endpoints ────────────────────────

    @app.post("/payment", response_model=TransactionOut)
    async def pay(
        req: PaymentRequest,
        session: AsyncSession = Depends(get_session),
        bus: EventBus = Depends(get_bus),
    ):
        """Customer → store payment. Idempotent per order id."""
        return await commands.process_payment(
            session,
            bus,
            settings.store_account_number,
            req.customer_id,
            req.order_id,
            req.amount,
            req.currency,
            req.description,
        )

    @app.post("/refund", response_model=TransactionOut)
    async def refund(
        req: RefundRequest,
        session: AsyncSession = Depends(get_session),
        bus: EventBus = Depends(get_bus),
    ):
        return await commands.process_refund(
            session, bus, req.transaction_id, req.order_id, req.amount, req.reason
        )

    # ── Query Endpoints ──────────────────────────

    @app.get("/balance/{customer_id}", response_model=BalanceOut)
    async def balance(customer_id: str, session: AsyncSession = Depends(get_session)):
        return await queries.get_balance(session, customer_id)

    @app.get("/transactions", response_model=list[TransactionOut])
    async def transactions(order_id: str | None = None, session: AsyncSession = Depends(get_session)):
        return await queries.list_transactions(session, order_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "ledger-service"}

    return app


app = create_app()
