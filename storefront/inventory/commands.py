"""
Inventory Service: command handlers

Two-phase stock hold:

  reserve ──▶ PENDING ──confirm──▶ CONFIRMED   (reserved −q, total −q)
                  └─────release──▶ CANCELLED   (reserved −q, available +q)

Confirm and release only touch PENDING reservations, so repeating either
after an event redelivery is a no-op.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.bus import EventBus
from ..shared.db import utcnow
from ..shared.errors import InsufficientStockError, NotFoundError, ValidationError
from .events import (
    STOCK_DEDUCTED,
    STOCK_INSUFFICIENT,
    STOCK_RESERVED,
    StockDeducted,
    StockInsufficient,
    StockLine,
    StockReserved,
)
from .tables import inventory, inventory_transactions, reservations, warehouses

logger = logging.getLogger(__name__)


def _reservation_id() -> str:
    return f"RES-{uuid.uuid4().hex[:8].upper()}"


def _lines(rows: list[dict]) -> list[StockLine]:
    return [
        StockLine(
            reservation_id=r["reservation_id"],
            warehouse_id=r["warehouse_id"],
            product_id=r["product_id"],
            quantity=r["quantity"],
        )
        for r in rows
    ]


async def _audit(
    session: AsyncSession,
    warehouse_id: int,
    product_id: int,
    transaction_type: str,
    quantity: int,
    reference_id: str,
    reference_type: str,
    note: str,
) -> None:
    await session.execute(
        insert(inventory_transactions).values(
            warehouse_id=warehouse_id,
            product_id=product_id,
            transaction_type=transaction_type,
            quantity=quantity,
            reference_id=reference_id,
            reference_type=reference_type,
            note=note,
            created_at=utcnow(),
        )
    )


async def _open_reservations(session: AsyncSession, order_id: str, status: str) -> list[dict]:
    result = await session.execute(
        select(reservations)
        .where(reservations.c.order_id == order_id, reservations.c.status == status)
        .order_by(reservations.c.reservation_id)
        .with_for_update()
    )
    return [dict(row._mapping) for row in result]


async def reserve(
    session: AsyncSession,
    bus: EventBus,
    order_id: str,
    items: list[tuple[int, int]],
    expiry_minutes: int = 30,
) -> list[dict]:
    """
    Hold stock for every line of an order.

    Each line goes to the first warehouse (by id) that can cover it alone.
    If any line cannot be covered the whole call is rolled back and
    ``InsufficientStockError`` names the product. A repeated call for an
    order that already holds stock returns the existing hold.
    """
    if not items:
        raise ValidationError("At least one item is required")
    for product_id, quantity in items:
        if quantity < 1:
            raise ValidationError(f"Quantity must be at least 1 for product: {product_id}")

    logger.info("Reserving inventory for order: %s", order_id)
    held = await _open_reservations(session, order_id, "PENDING")
    if held:
        logger.info("Order %s already holds %d reservations", order_id, len(held))
        await session.commit()
        return held

    now = utcnow()
    expires_at = now + timedelta(minutes=expiry_minutes)
    created: list[dict] = []
    for product_id, quantity in items:
        result = await session.execute(
            select(inventory)
            .join(warehouses, warehouses.c.id == inventory.c.warehouse_id)
            .where(
                inventory.c.product_id == product_id,
                inventory.c.available >= quantity,
                warehouses.c.is_active.is_(True),
            )
            .order_by(inventory.c.warehouse_id)
            .limit(1)
            .with_for_update(of=inventory)
        )
        stock = result.first()
        if stock is None:
            await session.rollback()
            logger.warning(
                "Insufficient inventory for order %s: product %s x%d", order_id, product_id, quantity
            )
            await bus.publish(
                STOCK_INSUFFICIENT,
                StockInsufficient(
                    order_id=order_id,
                    product_id=product_id,
                    quantity_requested=quantity,
                    note=f"Insufficient inventory for product: {product_id}",
                    timestamp=utcnow(),
                ).model_dump(mode="json"),
            )
            raise InsufficientStockError(product_id)

        await session.execute(
            update(inventory)
            .where(inventory.c.id == stock.id)
            .values(
                available=inventory.c.available - quantity,
                reserved=inventory.c.reserved + quantity,
                updated_at=now,
            )
        )
        row = {
            "reservation_id": _reservation_id(),
            "order_id": order_id,
            "warehouse_id": stock.warehouse_id,
            "product_id": product_id,
            "quantity": quantity,
            "status": "PENDING",
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }
        await session.execute(insert(reservations).values(**row))
        await _audit(
            session,
            stock.warehouse_id,
            product_id,
            "RESERVE",
            quantity,
            row["reservation_id"],
            "RESERVATION",
            f"Reserved for order: {order_id}",
        )
        created.append(row)

    await session.commit()
    logger.info("Reserved %d lines for order %s", len(created), order_id)
    await bus.publish(
        STOCK_RESERVED,
        StockReserved(
            order_id=order_id,
            reservations=_lines(created),
            note=f"Reserved {len(created)} lines",
            timestamp=now,
        ).model_dump(mode="json"),
    )
    return created


async def confirm(session: AsyncSession, bus: EventBus, order_id: str) -> list[dict]:
    """Turn PENDING holds into permanent deductions."""
    logger.info("Confirming reservations for order: %s", order_id)
    pending = await _open_reservations(session, order_id, "PENDING")
    now = utcnow()
    for r in pending:
        await session.execute(
            update(inventory)
            .where(
                inventory.c.warehouse_id == r["warehouse_id"],
                inventory.c.product_id == r["product_id"],
            )
            .values(
                reserved=inventory.c.reserved - r["quantity"],
                total=inventory.c.total - r["quantity"],
                updated_at=now,
            )
        )
        await session.execute(
            update(reservations)
            .where(reservations.c.reservation_id == r["reservation_id"])
            .values(status="CONFIRMED", updated_at=now)
        )
        await _audit(
            session,
            r["warehouse_id"],
            r["product_id"],
            "DEDUCT",
            r["quantity"],
            order_id,
            "ORDER",
            f"Deducted for order: {order_id}",
        )
        r["status"] = "CONFIRMED"
    await session.commit()

    if not pending:
        logger.info("No pending reservations to confirm for order: %s", order_id)
        return []
    await bus.publish(
        STOCK_DEDUCTED,
        StockDeducted(
            order_id=order_id,
            reservations=_lines(pending),
            note=f"Deducted {len(pending)} lines",
            timestamp=now,
        ).model_dump(mode="json"),
    )
    return pending


async def release(session: AsyncSession, order_id: str) -> list[dict]:
    """Return PENDING holds to available stock. Compensation; safe to repeat."""
    logger.info("Releasing reservations for order: %s", order_id)
    pending = await _open_reservations(session, order_id, "PENDING")
    now = utcnow()
    for r in pending:
        await session.execute(
            update(inventory)
            .where(
                inventory.c.warehouse_id == r["warehouse_id"],
                inventory.c.product_id == r["product_id"],
            )
            .values(
                reserved=inventory.c.reserved - r["quantity"],
                available=inventory.c.available + r["quantity"],
                updated_at=now,
            )
        )
        await session.execute(
            update(reservations)
            .where(reservations.c.reservation_id == r["reservation_id"])
            .values(status="CANCELLED", updated_at=now)
        )
        await _audit(
            session,
            r["warehouse_id"],
            r["product_id"],
            "RELEASE",
            r["quantity"],
            order_id,
            "ORDER_CANCELLATION",
            f"Released for order: {order_id}",
        )
        r["status"] = "CANCELLED"
        logger.info("Released reservation %s and restored %d units", r["reservation_id"], r["quantity"])
    await session.commit()
    return pending


# ── Stock intake ─────────────────────────────────

async def add_warehouse(session: AsyncSession, code: str, name: str, location: str = "") -> int:
    result = await session.execute(
        insert(warehouses).values(code=code, name=name, location=location, is_active=True)
    )
    await session.commit()
    return result.inserted_primary_key[0]


async def receive_stock(session: AsyncSession, warehouse_id: int, product_id: int, quantity: int) -> dict:
    """Add physical stock to a warehouse, creating the inventory row if needed."""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    result = await session.execute(select(warehouses.c.id).where(warehouses.c.id == warehouse_id))
    if result.scalar() is None:
        raise NotFoundError(f"Warehouse not found: {warehouse_id}")

    now = utcnow()
    result = await session.execute(
        select(inventory)
        .where(inventory.c.warehouse_id == warehouse_id, inventory.c.product_id == product_id)
        .with_for_update()
    )
    if result.first() is None:
        await session.execute(
            insert(inventory).values(
                warehouse_id=warehouse_id,
                product_id=product_id,
                available=quantity,
                reserved=0,
                total=quantity,
                updated_at=now,
            )
        )
    else:
        await session.execute(
            update(inventory)
            .where(inventory.c.warehouse_id == warehouse_id, inventory.c.product_id == product_id)
            .values(
                available=inventory.c.available + quantity,
                total=inventory.c.total + quantity,
                updated_at=now,
            )
        )
    await _audit(
        session, warehouse_id, product_id, "RECEIVE", quantity, f"WH-{warehouse_id}", "RESTOCK", "Stock received"
    )
    await session.commit()

    result = await session.execute(
        select(inventory).where(inventory.c.warehouse_id == warehouse_id, inventory.c.product_id == product_id)
    )
    return dict(result.one()._mapping)
