"""
Order Service: order saga orchestrator

Orchestrated saga: this class drives every step against the remote
services and runs the compensations itself. The order row is committed
after each step, so an interrupted saga leaves a readable status.

  ┌──────────────────────────────────────────────────────────────────┐
  │ 1. Validate lines against the catalog, compute the total          │
  │ 2. Persist the order PENDING                      → order.created │
  │ 3. Check stock            ── short ─▶ INVENTORY_FAILED            │
  │ 4. Reserve stock          ── fail ──▶ release, INVENTORY_FAILED   │
  │ 5. Pay via the ledger     ── fail ──▶ release, PAYMENT_FAILED     │
  │ 6. PAID                                           → order.paid    │
  │    confirm stock, request delivery, PAID ─▶ PROCESSING            │
  │    (failures here are logged; the order is already paid)         │
  │    cancelled meanwhile ─▶ re-publish order.cancelled              │
  │ 7. Confirmation email (best effort)                               │
  └──────────────────────────────────────────────────────────────────┘

Cancellation publishes ``order.cancelled`` (inventory releases, delivery
stops) and refunds a real payment in full.
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..shared.bus import EventBus
from ..shared.config import Settings
from ..shared.db import money, utcnow
from ..shared.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    RemoteUnavailableError,
    StorefrontError,
    ValidationError,
)
from ..shared.retry import RetryPolicy
from . import commands, queries
from .address import Address
from .clients import Collaborators
from .events import ORDER_CANCELLED, ORDER_CREATED, ORDER_PAID, OrderEvent
from .notifications import OrderNotifier
from .status import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

PAYMENT_RETRY = RetryPolicy(max_attempts=3, base_delay=0.5, multiplier=2.0, max_delay=5.0)
ORDER_NUMBER_ATTEMPTS = 5


class SagaLog:
    """Step-by-step record of one saga run, logged when it ends."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.steps: list[dict] = []

    def begin(self, action: str) -> None:
        self.steps.append(
            {
                "step": len(self.steps) + 1,
                "action": action,
                "status": "EXECUTING",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        logger.info("[%s] %s", self.request_id, action)

    def complete(self, **info) -> None:
        self.steps[-1]["status"] = "COMPLETED"
        self.steps[-1].update(info)

    def fail(self, error) -> None:
        self.steps[-1]["status"] = "FAILED"
        self.steps[-1]["error"] = str(error)
        logger.warning("[%s] %s failed: %s", self.request_id, self.steps[-1]["action"], error)

    def finish(self, outcome: str) -> None:
        logger.info("[%s] %s %s", self.request_id, outcome, json.dumps(self.steps, default=str))


class OrderSagaOrchestrator:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        bus: EventBus,
        collaborators: Collaborators,
        settings: Settings,
        sleep=asyncio.sleep,
    ):
        self.sessions = sessions
        self.bus = bus
        self.remote = collaborators
        self.notifier = OrderNotifier(collaborators.notifier)
        self.settings = settings
        self.sleep = sleep

    # ── Create ───────────────────────────────────

    async def create_order(
        self,
        owner_id: int,
        items: list[tuple[int, int]],
        shipping_address: Address,
        payment_method: str = "CREDIT_CARD",
        billing_address: Address | None = None,
        notes: str = "",
    ) -> dict:
        """
        Run the order saga. Returns the order with its saga log.

        Raises ``ValidationError`` for bad input (nothing persisted),
        ``InsufficientResourceError`` for stock or balance shortfalls and
        ``RemoteUnavailableError`` when a collaborator on the critical path
        is down. The order row records how far the saga got in every case.
        """
        saga = SagaLog(uuid.uuid4().hex[:8])
        logger.info("[%s] Creating order for owner: %s", saga.request_id, owner_id)

        # ── Step 1: validate and price ──────────────
        saga.begin("ValidateItems")
        lines, total = await self._price_lines(items)
        saga.complete(total=str(total))

        # ── Step 2: persist PENDING ─────────────────
        saga.begin("CreateOrder")
        order = await self._insert(owner_id, lines, total, shipping_address, billing_address, payment_method, notes)
        saga.complete(order_number=order["order_number"])
        await self._publish(ORDER_CREATED, order, "Order created")

        # ── Step 3: stock check ─────────────────────
        saga.begin("CheckInventory")
        try:
            await self._check_stock(lines)
        except StorefrontError as e:
            saga.fail(e)
            await self._transition(order, OrderStatus.INVENTORY_FAILED, f"Inventory check failed: {e}")
            await self.notifier.inventory_unavailable(order, str(e))
            saga.finish("SagaFailed")
            raise
        saga.complete()

        # ── Step 4: reserve ─────────────────────────
        saga.begin("ReserveInventory")
        try:
            await self.remote.inventory.reserve(
                order["order_number"], [(line["product_id"], line["quantity"]) for line in lines]
            )
        except StorefrontError as e:
            saga.fail(e)
            await self._release(saga, order)
            await self._transition(order, OrderStatus.INVENTORY_FAILED, f"Inventory reservation failed: {e}")
            await self.notifier.inventory_unavailable(order, str(e))
            saga.finish("SagaCompensated")
            raise
        saga.complete()

        # ── Step 5: payment ─────────────────────────
        # Shielded: once the ledger call starts it runs to an outcome even if
        # the client goes away.
        await asyncio.shield(self._payment_step(saga, order))

        # ── Step 6: confirm stock, request delivery ─
        saga.begin("ConfirmInventory")
        try:
            await self.remote.inventory.confirm(order["order_number"])
            saga.complete()
        except StorefrontError as e:
            saga.fail(e)
            logger.warning(
                "[%s] Stock confirmation for %s left to the order.paid consumer",
                saga.request_id,
                order["order_number"],
            )

        saga.begin("CreateDelivery")
        try:
            delivery = await self.remote.delivery.request_delivery(
                order["order_number"],
                self.settings.customer_id(owner_id),
                shipping_address.single_line(),
                self.settings.delivery_carrier,
                notes=notes or "Order from storefront",
            )
            await self._bind_delivery(order, delivery["delivery_id"])
            saga.complete(delivery_id=delivery["delivery_id"])
        except StorefrontError as e:
            saga.fail(e)
            logger.error(
                "[%s] Delivery creation failed for order %s: %s", saga.request_id, order["order_number"], e
            )

        # ── Step 7: confirmation email ──────────────
        saga.begin("SendConfirmation")
        if order["status"] in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            saga.fail("order cancelled during the saga")
        elif await self.notifier.order_confirmed(order):
            saga.complete()
        else:
            saga.fail("notification service unavailable")

        saga.finish("SagaCompleted")
        async with self.sessions() as session:
            result = await queries.find_order(session, order["order_number"])
        result["saga_log"] = saga.steps
        return result

    async def _price_lines(self, items: list[tuple[int, int]]) -> tuple[list[dict], Decimal]:
        if not items:
            raise ValidationError("At least one item is required")
        for product_id, quantity in items:
            if quantity < 1:
                raise ValidationError(f"Quantity must be at least 1 for product: {product_id}")

        async with self.sessions() as session:
            catalog = await queries.get_products(session, [p for p, _ in items])
        missing = sorted({p for p, _ in items if p not in catalog})
        if missing:
            raise ValidationError(f"Some products not found: {missing}")

        lines = []
        for product_id, quantity in items:
            product = catalog[product_id]
            if not product["is_active"]:
                raise ValidationError(f"Product is not active: {product['name']}")
            unit_price = money(product["price"])
            lines.append(
                {
                    "product_id": product_id,
                    "product_name": product["name"],
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "line_total": money(unit_price * quantity),
                }
            )
        return lines, money(sum((line["line_total"] for line in lines), Decimal("0")))

    async def _insert(
        self,
        owner_id: int,
        lines: list[dict],
        total: Decimal,
        shipping_address: Address,
        billing_address: Address | None,
        payment_method: str,
        notes: str,
    ) -> dict:
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            number = commands.order_number()
            async with self.sessions() as session:
                try:
                    order_id = await commands.insert_order(
                        session,
                        number,
                        owner_id,
                        lines,
                        total,
                        self.settings.currency,
                        shipping_address.model_dump(),
                        billing_address.model_dump() if billing_address else None,
                        payment_method,
                        notes,
                        OrderStatus.PENDING.value,
                        PaymentStatus.PENDING.value,
                    )
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning("Order number %s already taken, drawing another", number)
                    continue
            break
        else:
            raise ConflictError("Could not allocate an order number")
        logger.info("Order created with order number: %s", number)
        return {
            "id": order_id,
            "order_number": number,
            "owner_id": owner_id,
            "total_amount": total,
            "currency": self.settings.currency,
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": payment_method,
            "payment_reference": None,
            "delivery_id": None,
        }

    async def _check_stock(self, lines: list[dict]) -> None:
        needed: dict[int, int] = defaultdict(int)
        for line in lines:
            needed[line["product_id"]] += line["quantity"]
        for product_id, quantity in needed.items():
            try:
                stock = await self.remote.inventory.stock(product_id)
                available = stock["stock_available"]
            except NotFoundError:
                available = 0
            if available < quantity:
                raise InsufficientStockError(
                    product_id,
                    f"Insufficient inventory for product: {product_id}. "
                    f"Available: {available}, Required: {quantity}",
                )

    async def _payment_step(self, saga: SagaLog, order: dict) -> None:
        saga.begin("ProcessPayment")
        try:
            txn = await self._pay(saga, order)
            reference, payment_status, note = txn["transaction_id"], PaymentStatus.PAID, "Payment successful"
        except RemoteUnavailableError as e:
            if not self.settings.payment_simulate_on_failure:
                await self._payment_failed(saga, order, e)
                raise
            reference = f"SIM-{uuid.uuid4().hex[:8].upper()}"
            payment_status, note = PaymentStatus.SIMULATED, "Payment simulated due to gateway failure"
            logger.warning(
                "[%s] Payment gateway failed, simulated payment applied: %s (%s)", saga.request_id, reference, e
            )
        except StorefrontError as e:
            await self._payment_failed(saga, order, e)
            raise

        saga.complete(payment_reference=reference, payment_status=payment_status.value)
        await self._transition(
            order,
            OrderStatus.PAID,
            note,
            payment_status=payment_status.value,
            payment_reference=reference,
        )
        await self._publish(ORDER_PAID, order, note)

    async def _pay(self, saga: SagaLog, order: dict) -> dict:
        """
        Ledger payment, retried on transport failure. The order number is the
        ledger's idempotency key, so a retry after an unseen success returns
        the original transaction instead of charging twice.
        """
        for failures in range(PAYMENT_RETRY.max_attempts):
            try:
                return await self.remote.ledger.pay(
                    self.settings.customer_id(order["owner_id"]),
                    order["order_number"],
                    order["total_amount"],
                    order["currency"],
                    order["payment_method"],
                )
            except RemoteUnavailableError as e:
                if failures + 1 >= PAYMENT_RETRY.max_attempts:
                    raise
                delay = PAYMENT_RETRY.backoff(failures)
                logger.warning("[%s] Ledger unavailable (%s), retrying in %.2fs", saga.request_id, e, delay)
                await self.sleep(delay)
        raise AssertionError("unreachable")

    async def _payment_failed(self, saga: SagaLog, order: dict, error: Exception) -> None:
        saga.fail(error)
        await self._release(saga, order)
        await self._transition(
            order,
            OrderStatus.PAYMENT_FAILED,
            f"Payment failed: {error}",
            payment_status=PaymentStatus.FAILED.value,
        )
        await self.notifier.payment_failed(order, str(error))
        saga.finish("SagaCompensated")

    async def _release(self, saga: SagaLog, order: dict) -> None:
        """Compensation for steps 3-4. Idempotent on the inventory side."""
        saga.begin("ReleaseInventory (COMPENSATING)")
        try:
            await self.remote.inventory.release(order["order_number"])
            saga.complete()
        except StorefrontError as e:
            saga.fail(e)
            logger.error(
                "[%s] Releasing reservations for %s failed, stock still held: %s",
                saga.request_id,
                order["order_number"],
                e,
            )

    async def _bind_delivery(self, order: dict, delivery_id: str) -> None:
        # The delivery's own status events may already have moved the order on.
        cancelled = False
        async with self.sessions() as session:
            current = await commands.lock_order(session, order["order_number"])
            if current["status"] in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                # Cancelled while the delivery was being requested: the earlier
                # order.cancelled found no delivery to stop.
                cancelled = True
                if current["delivery_id"] is None:
                    await commands.update_order(session, current["id"], delivery_id=delivery_id)
                await commands.add_history(
                    session, current["id"], current["status"], f"Stopping delivery {delivery_id} for cancelled order"
                )
                order["status"] = current["status"]
                order["payment_status"] = current["payment_status"]
            elif current["status"] == OrderStatus.PAID:
                await commands.update_order(
                    session, current["id"], status=OrderStatus.PROCESSING.value, delivery_id=delivery_id
                )
                await commands.add_history(
                    session, current["id"], OrderStatus.PROCESSING.value, f"Delivery created: {delivery_id}"
                )
                order["status"] = OrderStatus.PROCESSING.value
            elif current["delivery_id"] is None:
                await commands.update_order(session, current["id"], delivery_id=delivery_id)
            await session.commit()
        order["delivery_id"] = delivery_id
        if cancelled:
            logger.warning("Order %s was cancelled before delivery %s was bound", order["order_number"], delivery_id)
            await self._publish(ORDER_CANCELLED, order, "Order cancelled before shipment")

    # ── Cancel ───────────────────────────────────

    async def cancel_order(self, owner_id: int, order_number: str, reason: str | None = None) -> dict:
        reason = reason or "Cancelled by user"
        logger.info("Canceling order: %s for owner: %s", order_number, owner_id)

        async with self.sessions() as session:
            order = await commands.lock_order(session, order_number)
            if order is None or order["owner_id"] != owner_id:
                raise NotFoundError("Order not found")
            if order["status"] in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                raise ConflictError("Order is already cancelled or refunded")
            if order["status"] == OrderStatus.DELIVERED:
                raise ConflictError("Delivered orders cannot be cancelled")
            await commands.update_order(session, order["id"], status=OrderStatus.CANCELLED.value)
            await commands.add_history(session, order["id"], OrderStatus.CANCELLED.value, reason)
            await session.commit()
        order["status"] = OrderStatus.CANCELLED.value
        await self._publish(ORDER_CANCELLED, order, reason)

        refund_id = None
        message = "Order cancelled successfully"
        if order["payment_status"] == PaymentStatus.PAID and order["payment_reference"]:
            try:
                refund = await self.remote.ledger.refund(
                    order["payment_reference"], order_number, order["total_amount"], reason
                )
            except StorefrontError as e:
                logger.error("Refund processing failed for order %s: %s", order_number, e)
                async with self.sessions() as session:
                    await commands.add_history(
                        session, order["id"], OrderStatus.CANCELLED.value, f"Refund failed: {e}"
                    )
                    await session.commit()
                message = f"Order cancelled; refund could not be processed: {e}"
            else:
                refund_id = refund["transaction_id"]
                async with self.sessions() as session:
                    await commands.update_order(session, order["id"], payment_status=PaymentStatus.REFUNDED.value)
                    await commands.add_history(
                        session, order["id"], OrderStatus.CANCELLED.value, f"Refund issued: {refund_id}"
                    )
                    await session.commit()
                order["payment_status"] = PaymentStatus.REFUNDED.value
                message = "Order cancelled and refunded successfully"
                logger.info("Refund successful for order %s: %s", order_number, refund_id)

        if refund_id:
            await self.notifier.refunded(order, refund_id)
        else:
            await self.notifier.cancelled(order)

        return {
            "order_number": order_number,
            "status": order["status"],
            "payment_status": order["payment_status"],
            "refund_transaction_id": refund_id,
            "refunded": refund_id is not None,
            "message": message,
        }

    # ── Helpers ──────────────────────────────────

    async def _transition(self, order: dict, status: OrderStatus, note: str, **values) -> None:
        async with self.sessions() as session:
            await commands.update_order(session, order["id"], status=status.value, **values)
            await commands.add_history(session, order["id"], status.value, note)
            await session.commit()
        order["status"] = status.value
        order.update(values)

    async def _publish(self, topic: str, order: dict, note: str) -> None:
        await self.bus.publish(
            topic,
            OrderEvent(
                order_id=order["order_number"],
                owner_id=order["owner_id"],
                status=order["status"],
                amount=order["total_amount"],
                payment_reference=order.get("payment_reference"),
                delivery_id=order.get("delivery_id"),
                note=note,
                timestamp=utcnow(),
            ).model_dump(mode="json"),
        )
