"""
Delivery Service: query handlers
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.errors import NotFoundError
from .lifecycle import DeliveryStatus
from .tables import deliveries, delivery_status_history


async def _with_history(session: AsyncSession, row) -> dict:
    delivery = dict(row._mapping)
    delivery["history"] = await get_history(session, delivery["delivery_id"])
    return delivery


async def get_delivery(session: AsyncSession, delivery_id: str) -> dict:
    row = (await session.execute(select(deliveries).where(deliveries.c.delivery_id == delivery_id))).first()
    if row is None:
        raise NotFoundError(f"Delivery not found: {delivery_id}")
    return await _with_history(session, row)


async def get_delivery_for_order(session: AsyncSession, order_id: str) -> dict:
    row = (await session.execute(select(deliveries).where(deliveries.c.order_id == order_id))).first()
    if row is None:
        raise NotFoundError(f"No delivery for order: {order_id}")
    return await _with_history(session, row)


async def list_lost(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(deliveries)
        .where(deliveries.c.status.in_([DeliveryStatus.LOST.value, DeliveryStatus.FAILED.value]))
        .order_by(deliveries.c.updated_at.desc())
    )
    return [dict(row._mapping) for row in result]


async def get_history(session: AsyncSession, delivery_id: str) -> list[dict]:
    result = await session.execute(
        select(delivery_status_history.c.status, delivery_status_history.c.note, delivery_status_history.c.created_at)
        .where(delivery_status_history.c.delivery_id == delivery_id)
        .order_by(delivery_status_history.c.id)
    )
    return [dict(row._mapping) for row in result]
