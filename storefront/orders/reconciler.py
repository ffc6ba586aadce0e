"""
Order Service: delivery status consumers

  delivery.status.# ──▶ [store.delivery.status] ──▶ DeliveryStatusReconciler
  delivery.status.lost
  delivery.status.failed ──▶ [store.delivery.lost] ──▶ LostDeliveryCompensator

Both consumers are idempotent. An event can arrive before the order row it
refers to is visible; that raises ``NotReadyError`` and the event is retried
with backoff inside its own task. The compensator also retries a ledger it
cannot reach. When the attempts run out the event is written to
``abandoned_events`` and logged as an error.

Reconciler guards, in order:
  1. order not visible yet           → NotReadyError (retried)
  2. order CANCELLED/REFUNDED/LOST   → ignored
  3. different delivery id bound     → ForeignEventError (ignored)
  4. status behind the current one   → ignored (out-of-order redelivery)
  5. same status                     → no state write; history + push only
"""

import asyncio
import logging
import random

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..shared.bus import EventBus
from ..shared.db import utcnow
from ..shared.errors import ForeignEventError, NotReadyError, RemoteUnavailableError, StorefrontError
from ..shared.retry import RetryPolicy
from . import commands
from .clients import LedgerClient
from .events import ORDER_COMPLETED, OrderEvent
from .notifications import OrderNotifier
from .push import OrderPushHub
from .status import TERMINAL, OrderStatus, PaymentStatus, from_delivery_status, is_stale

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


class RetryingConsumer:
    queue = ""
    patterns: list[str] = []
    retry_on: tuple[type[StorefrontError], ...] = (NotReadyError,)

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        retry: RetryPolicy,
        sleep=asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.sessions = sessions
        self.retry = retry
        self.sleep = sleep
        self.rng = rng

    def bind(self, bus: EventBus) -> None:
        bus.bind(self.queue, self.patterns, self.handle)

    async def apply(self, event: dict) -> str:
        raise NotImplementedError

    async def handle(self, topic: str, event: dict) -> str:
        """Bus entry point: apply with retry on ``retry_on`` errors, record the give-up."""
        error: StorefrontError | None = None
        for failures in range(self.retry.max_attempts):
            try:
                return await self.apply(event)
            except ForeignEventError as e:
                logger.info("Ignoring %s: %s", topic, e)
                return IGNORED
            except self.retry_on as e:
                error = e
                if failures + 1 >= self.retry.max_attempts:
                    break
                delay = self.retry.backoff(failures, self.rng)
                logger.warning(
                    "Queue %s retrying order %s in %.2fs: %s", self.queue, event.get("order_id"), delay, e
                )
                await self.sleep(delay)

        logger.error(
            "Giving up on delivery notification after %d attempts. queue=%s orderId=%s status=%s reason=%s",
            self.retry.max_attempts,
            self.queue,
            event.get("order_id"),
            event.get("status"),
            error,
        )
        async with self.sessions() as session:
            await commands.record_abandoned(
                session, self.queue, topic, event, str(error), self.retry.max_attempts
            )
        return IGNORED

    async def _lock(self, session: AsyncSession, event: dict) -> dict:
        order_number = event.get("order_id")
        order = await commands.lock_order(session, order_number) if order_number else None
        if order is None:
            raise NotReadyError(f"Order not ready for consumption: {order_number}")
        delivery_id = event.get("delivery_id")
        if delivery_id and order["delivery_id"] and delivery_id != order["delivery_id"]:
            raise ForeignEventError(
                f"deliveryId mismatch for order {order_number}: msg={delivery_id}, order={order['delivery_id']}"
            )
        return order


class DeliveryStatusReconciler(RetryingConsumer):
    """Folds delivery status events into order status. Never moves money."""

    queue = "store.delivery.status"
    patterns = ["delivery.status.#"]

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        bus: EventBus,
        push: OrderPushHub,
        notifier: OrderNotifier,
        retry: RetryPolicy,
        sleep=asyncio.sleep,
        rng: random.Random | None = None,
    ):
        super().__init__(sessions, retry, sleep, rng)
        self.bus = bus
        self.push = push
        self.notifier = notifier

    async def apply(self, event: dict) -> str:
        try:
            status = from_delivery_status(event.get("status", ""))
        except ValueError:
            raise ForeignEventError(f"Unknown delivery status: {event.get('status')}") from None
        note = event.get("note") or f"Delivery {event['status'].lower()}"

        async with self.sessions() as session:
            order = await self._lock(session, event)
            current = order["status"]
            if current in TERMINAL:
                logger.info(
                    "Ignoring delivery update for terminal order %s (current status: %s)",
                    order["order_number"],
                    current,
                )
                return IGNORED
            if is_stale(current, status):
                logger.info(
                    "Ignoring stale delivery update for order %s: %s after %s",
                    order["order_number"],
                    status.value,
                    current,
                )
                return IGNORED

            values = {}
            if status != current:
                values["status"] = status.value
            if event.get("delivery_id") and not order["delivery_id"]:
                values["delivery_id"] = event["delivery_id"]
            if values:
                await commands.update_order(session, order["id"], **values)
            await commands.add_history(session, order["id"], status.value, note)
            await session.commit()

        changed = "status" in values
        if changed:
            logger.info("Order %s status: %s -> %s", order["order_number"], current, status.value)
        else:
            logger.info("Order %s already in status %s, idempotent skip", order["order_number"], status.value)

        await self.push.notify(
            order["owner_id"],
            {
                "type": "ORDER_UPDATE",
                "order_number": order["order_number"],
                "old_status": current,
                "new_status": status.value,
                "tracking_number": event.get("tracking_number"),
                "message": note,
                "timestamp": utcnow().isoformat(),
            },
        )
        if changed:
            await self.notifier.shipping_update(order, status.value, event.get("tracking_number"))
            if status is OrderStatus.DELIVERED:
                await self.bus.publish(
                    ORDER_COMPLETED,
                    OrderEvent(
                        order_id=order["order_number"],
                        owner_id=order["owner_id"],
                        status=status.value,
                        amount=order["total_amount"],
                        payment_reference=order["payment_reference"],
                        delivery_id=event.get("delivery_id") or order["delivery_id"],
                        note="Order delivered",
                        timestamp=utcnow(),
                    ).model_dump(mode="json"),
                )
        return APPLIED if changed else DUPLICATE


class LostDeliveryCompensator(RetryingConsumer):
    """
    Refunds a really-paid order whose package was lost.

    Runs once per order: the payment status moves PAID → REFUNDED, and the
    ledger returns the existing refund if a redelivered event races past
    that check. Simulated payments are never refunded.
    """

    queue = "store.delivery.lost"
    patterns = ["delivery.status.lost", "delivery.status.failed"]
    retry_on = (NotReadyError, RemoteUnavailableError)

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        ledger: LedgerClient,
        notifier: OrderNotifier,
        retry: RetryPolicy,
        sleep=asyncio.sleep,
        rng: random.Random | None = None,
    ):
        super().__init__(sessions, retry, sleep, rng)
        self.ledger = ledger
        self.notifier = notifier

    async def apply(self, event: dict) -> str:
        async with self.sessions() as session:
            order = await self._lock(session, event)
            await session.rollback()
        if order["payment_status"] != PaymentStatus.PAID or not order["payment_reference"]:
            logger.info(
                "No refund for lost delivery of order %s (payment status %s)",
                order["order_number"],
                order["payment_status"],
            )
            return IGNORED

        reason = event.get("note") or "Package lost during delivery"
        logger.info("Processing lost package refund for order: %s", order["order_number"])
        try:
            refund = await self.ledger.refund(
                order["payment_reference"], order["order_number"], order["total_amount"], reason
            )
        except StorefrontError:
            logger.error("Lost package refund failed for order %s", order["order_number"])
            raise

        async with self.sessions() as session:
            current = await commands.lock_order(session, order["order_number"])
            if current["payment_status"] == PaymentStatus.REFUNDED:
                await session.rollback()
                return DUPLICATE
            await commands.update_order(session, current["id"], payment_status=PaymentStatus.REFUNDED.value)
            await commands.add_history(
                session,
                current["id"],
                current["status"],
                f"Refund issued for lost package: {refund['transaction_id']}",
            )
            await session.commit()

        logger.info("Refunded lost package order %s: %s", order["order_number"], refund["transaction_id"])
        await self.notifier.package_lost(order, refund["transaction_id"], reason)
        return APPLIED
