"""
Order Service: query handlers (read side)

Orders are only visible to their owner; someone else's order reads as
"not found".
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.errors import NotFoundError
from .tables import abandoned_events, order_items, order_status_history, orders, products


async def get_products(session: AsyncSession, product_ids: list[int]) -> dict[int, dict]:
    result = await session.execute(select(products).where(products.c.id.in_(product_ids)))
    return {row.id: dict(row._mapping) for row in result}


async def _detail(session: AsyncSession, row) -> dict:
    order = dict(row._mapping)
    items = await session.execute(
        select(
            order_items.c.product_id,
            order_items.c.product_name,
            order_items.c.quantity,
            order_items.c.unit_price,
            order_items.c.line_total,
        )
        .where(order_items.c.order_id == order["id"])
        .order_by(order_items.c.id)
    )
    order["items"] = [dict(r._mapping) for r in items]
    order["history"] = await get_history(session, order["id"])
    return order


async def get_history(session: AsyncSession, order_id: int) -> list[dict]:
    result = await session.execute(
        select(order_status_history.c.status, order_status_history.c.note, order_status_history.c.created_at)
        .where(order_status_history.c.order_id == order_id)
        .order_by(order_status_history.c.id)
    )
    return [dict(r._mapping) for r in result]


async def find_order(session: AsyncSession, number: str) -> dict | None:
    row = (await session.execute(select(orders).where(orders.c.order_number == number))).first()
    return await _detail(session, row) if row else None


async def get_order(session: AsyncSession, owner_id: int, number: str) -> dict:
    order = await find_order(session, number)
    if order is None or order["owner_id"] != owner_id:
        raise NotFoundError("Order not found")
    return order


async def list_orders(session: AsyncSession, owner_id: int) -> list[dict]:
    """Newest first."""
    result = await session.execute(
        select(orders).where(orders.c.owner_id == owner_id).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    return [await _detail(session, row) for row in result.all()]


async def list_abandoned(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(abandoned_events).order_by(abandoned_events.c.id))
    return [dict(r._mapping) for r in result]
