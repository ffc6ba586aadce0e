"""
Order Service: command handlers (write side)

Row-level writes used by the orchestrator, the delivery status reconciler
and the lost-delivery compensator. Callers own the transaction and commit.
"""

import random
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import utcnow
from .tables import abandoned_events, order_items, order_status_history, orders, products


def order_number(now: datetime | None = None) -> str:
    """``ORD-<yyyymmddHHMMSS>-<4 digits>``"""
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d%H%M%S}-{random.randint(0, 9999):04d}"


async def insert_order(
    session: AsyncSession,
    number: str,
    owner_id: int,
    lines: list[dict],
    total: Decimal,
    currency: str,
    shipping_address: dict,
    billing_address: dict | None,
    payment_method: str,
    notes: str,
    status: str,
    payment_status: str,
) -> int:
    now = utcnow()
    result = await session.execute(
        insert(orders).values(
            order_number=number,
            owner_id=owner_id,
            total_amount=total,
            currency=currency,
            status=status,
            payment_status=payment_status,
            payment_method=payment_method,
            shipping_address=shipping_address,
            billing_address=billing_address,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
    )
    order_id = result.inserted_primary_key[0]
    await session.execute(insert(order_items), [{"order_id": order_id, **line} for line in lines])
    await add_history(session, order_id, status, "Order created")
    return order_id


async def lock_order(session: AsyncSession, number: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.order_number == number).with_for_update())
    row = result.first()
    return dict(row._mapping) if row else None


async def update_order(session: AsyncSession, order_id: int, **values) -> None:
    values["updated_at"] = utcnow()
    await session.execute(update(orders).where(orders.c.id == order_id).values(**values))


async def add_history(session: AsyncSession, order_id: int, status: str, note: str) -> None:
    await session.execute(
        insert(order_status_history).values(order_id=order_id, status=status, note=note, created_at=utcnow())
    )


async def record_abandoned(
    session: AsyncSession,
    queue: str,
    topic: str,
    payload: dict,
    reason: str,
    attempts: int,
) -> None:
    await session.execute(
        insert(abandoned_events).values(
            queue=queue,
            topic=topic,
            order_number=payload.get("order_id"),
            delivery_id=payload.get("delivery_id"),
            status=payload.get("status"),
            payload=payload,
            reason=reason,
            attempts=attempts,
            created_at=utcnow(),
        )
    )
    await session.commit()


async def add_product(session: AsyncSession, sku: str, name: str, price, is_active: bool = True) -> int:
    result = await session.execute(
        insert(products).values(sku=sku, name=name, price=Decimal(str(price)), is_active=is_active)
    )
    await session.commit()
    return result.inserted_primary_key[0]
