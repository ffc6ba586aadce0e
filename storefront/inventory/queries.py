"""
Inventory Service: query handlers
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.errors import NotFoundError
from .tables import inventory, inventory_transactions, reservations, warehouses


async def get_inventory(session: AsyncSession, product_id: int) -> dict:
    """Per-warehouse stock for a product plus the sum available to sell."""
    result = await session.execute(
        select(
            inventory.c.warehouse_id,
            warehouses.c.code.label("warehouse_code"),
            warehouses.c.name.label("warehouse_name"),
            inventory.c.available,
            inventory.c.reserved,
            inventory.c.total,
        )
        .join(warehouses, warehouses.c.id == inventory.c.warehouse_id)
        .where(inventory.c.product_id == product_id, warehouses.c.is_active.is_(True))
        .order_by(inventory.c.warehouse_id)
    )
    rows = [dict(row._mapping) for row in result]
    if not rows:
        raise NotFoundError(f"No inventory found for product: {product_id}")
    return {
        "product_id": product_id,
        "stock_available": sum(r["available"] for r in rows),
        "warehouses": rows,
    }


async def list_reservations(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(reservations)
        .where(reservations.c.order_id == order_id)
        .order_by(reservations.c.created_at, reservations.c.reservation_id)
    )
    return [dict(row._mapping) for row in result]


async def list_audit(session: AsyncSession, product_id: int) -> list[dict]:
    result = await session.execute(
        select(inventory_transactions)
        .where(inventory_transactions.c.product_id == product_id)
        .order_by(inventory_transactions.c.id)
    )
    return [dict(row._mapping) for row in result]
