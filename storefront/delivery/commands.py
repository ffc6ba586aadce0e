"""
Delivery Service: command handlers

Every transition locks the delivery row, re-checks the status it is moving
from, writes the row and a history entry in one transaction, and publishes
``delivery.status.<status>`` after the commit.
"""

import logging
import random
import uuid
from datetime import datetime, timedelta

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.bus import EventBus
from ..shared.db import ensure_utc, utcnow
from ..shared.errors import ConflictError, NotFoundError, ValidationError
from .events import DeliveryStatusChanged
from .lifecycle import TERMINAL, DeliveryStatus, next_status, status_topic
from .tables import deliveries, delivery_status_history

logger = logging.getLogger(__name__)

PICKUP_ESTIMATE = timedelta(hours=1)
DELIVERY_ESTIMATE = timedelta(days=2)


def _delivery_id() -> str:
    return f"DEL-{uuid.uuid4().hex[:8].upper()}"


def _tracking_number(prefix: str, now: datetime) -> str:
    return f"{prefix}-{int(now.timestamp() * 1000)}"


async def _find_by_order(session: AsyncSession, order_id: str, lock: bool = False) -> dict | None:
    stmt = select(deliveries).where(deliveries.c.order_id == order_id)
    if lock:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).first()
    return dict(row._mapping) if row else None


async def _lock(session: AsyncSession, delivery_id: str) -> dict | None:
    result = await session.execute(
        select(deliveries).where(deliveries.c.delivery_id == delivery_id).with_for_update()
    )
    row = result.first()
    return dict(row._mapping) if row else None


async def _history(session: AsyncSession, delivery_id: str, status: str, note: str, now: datetime) -> None:
    await session.execute(
        insert(delivery_status_history).values(
            delivery_id=delivery_id, status=status, note=note, created_at=now
        )
    )


async def _publish(bus: EventBus, delivery: dict, note: str, now: datetime) -> None:
    await bus.publish(
        status_topic(delivery["status"]),
        DeliveryStatusChanged(
            delivery_id=delivery["delivery_id"],
            order_id=delivery["order_id"],
            status=delivery["status"],
            tracking_number=delivery["tracking_number"],
            note=note,
            timestamp=now,
        ).model_dump(mode="json"),
    )


async def _transition(
    session: AsyncSession,
    delivery: dict,
    status: DeliveryStatus,
    note: str,
    now: datetime,
    **values,
) -> dict:
    values.update(status=status.value, updated_at=now)
    await session.execute(
        update(deliveries).where(deliveries.c.delivery_id == delivery["delivery_id"]).values(**values)
    )
    await _history(session, delivery["delivery_id"], status.value, note, now)
    delivery.update(values)
    return delivery


async def create_delivery(
    session: AsyncSession,
    bus: EventBus,
    order_id: str,
    customer_id: str,
    shipping_address: str,
    carrier: str,
    tracking_prefix: str = "DEL",
    warehouse_id: int | None = None,
    notes: str = "",
) -> dict:
    """Create the shipment for an order. A second request returns the first."""
    if not shipping_address.strip():
        raise ValidationError("Shipping address is required")

    existing = await _find_by_order(session, order_id)
    if existing is not None:
        logger.info("Delivery already exists for order %s: %s", order_id, existing["delivery_id"])
        return existing

    logger.info("Creating delivery for order: %s", order_id)
    now = utcnow()
    row = {
        "delivery_id": _delivery_id(),
        "order_id": order_id,
        "customer_id": customer_id,
        "status": DeliveryStatus.PENDING_PICKUP.value,
        "tracking_number": _tracking_number(tracking_prefix, now),
        "carrier": carrier,
        "shipping_address": shipping_address,
        "warehouse_id": warehouse_id,
        "estimated_pickup": now + PICKUP_ESTIMATE,
        "estimated_delivery": now + DELIVERY_ESTIMATE,
        "actual_pickup": None,
        "actual_delivery": None,
        "notes": notes,
        "created_at": now,
        "updated_at": now,
    }
    try:
        await session.execute(insert(deliveries).values(**row))
        await _history(session, row["delivery_id"], row["status"], "Delivery created", now)
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent request for the same order.
        await session.rollback()
        existing = await _find_by_order(session, order_id)
        if existing is None:
            raise
        return existing

    logger.info("Successfully created delivery: %s", row["delivery_id"])
    await _publish(bus, row, "Delivery created", now)
    return row


async def advance(
    session: AsyncSession,
    bus: EventBus,
    delivery_id: str,
    now: datetime,
    dwell: timedelta,
    loss_probability: float,
    rng: random.Random,
) -> dict | None:
    """
    Move one delivery one hop if it has sat in its state for ``dwell``.

    Re-checked under the row lock, so two overlapping scans cannot both
    advance the same delivery.
    """
    delivery = await _lock(session, delivery_id)
    if delivery is None or DeliveryStatus(delivery["status"]) in TERMINAL:
        await session.rollback()
        return None
    if now - ensure_utc(delivery["updated_at"]) < dwell:
        await session.rollback()
        return None

    status = next_status(delivery["status"], loss_probability, rng)
    if status is None:
        await session.rollback()
        return None

    note = "Automatic status update"
    values = {}
    if status is DeliveryStatus.PICKED_UP:
        values["actual_pickup"] = now
    elif status is DeliveryStatus.DELIVERED:
        values["actual_delivery"] = now
    elif status is DeliveryStatus.LOST:
        note = "Package lost in transit"
        logger.info("Delivery %s marked as LOST due to configured loss probability", delivery_id)

    previous = delivery["status"]
    await _transition(session, delivery, status, note, now, **values)
    await session.commit()
    logger.info("Auto-updated delivery %s from %s to %s", delivery_id, previous, status.value)
    await _publish(bus, delivery, note, now)
    return delivery


async def report_lost(session: AsyncSession, bus: EventBus, delivery_id: str, reason: str) -> dict:
    """Force a delivery to FAILED, regardless of where the scanner has it."""
    logger.info("Handling lost package for delivery: %s", delivery_id)
    delivery = await _lock(session, delivery_id)
    if delivery is None:
        raise NotFoundError(f"Delivery not found: {delivery_id}")
    if DeliveryStatus(delivery["status"]) in TERMINAL:
        await session.rollback()
        raise ConflictError(f"Delivery {delivery_id} is already {delivery['status']}")

    now = utcnow()
    note = f"Package lost: {reason}"
    await _transition(session, delivery, DeliveryStatus.FAILED, note, now, notes=reason)
    await session.commit()
    logger.info("Successfully marked delivery as lost: %s", delivery_id)
    await _publish(bus, delivery, note, now)
    return delivery


async def cancel_for_order(
    session: AsyncSession, bus: EventBus, order_id: str, reason: str = "Order cancelled"
) -> dict | None:
    """Stop the shipment of a cancelled order. No-op when absent or already terminal."""
    delivery = await _find_by_order(session, order_id, lock=True)
    if delivery is None or DeliveryStatus(delivery["status"]) in TERMINAL:
        await session.rollback()
        logger.info("No active delivery to cancel for order %s", order_id)
        return None

    now = utcnow()
    await _transition(session, delivery, DeliveryStatus.CANCELLED, reason, now)
    await session.commit()
    logger.info("Cancelled delivery %s for order %s", delivery["delivery_id"], order_id)
    await _publish(bus, delivery, reason, now)
    return delivery
