"""
Inventory Service: order event consumer

  order.paid      ──▶ confirm(order)
  order.cancelled ──▶ release(order)

Both are idempotent, so the orchestrator's own confirm call and this
consumer can both run for the same order.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..shared.bus import EventBus
from . import commands

logger = logging.getLogger(__name__)

QUEUE = "warehouse.order.events"
PATTERNS = ["order.paid", "order.cancelled"]


def bind(bus: EventBus, sessions: async_sessionmaker[AsyncSession]) -> None:
    async def handle(topic: str, data: dict) -> None:
        order_id = data.get("order_id")
        if not order_id:
            logger.warning("Ignoring %s without order_id", topic)
            return
        async with sessions() as session:
            if topic == "order.paid":
                await commands.confirm(session, bus, order_id)
            elif topic == "order.cancelled":
                await commands.release(session, order_id)
        logger.info("Handled %s for order %s", topic, order_id)

    bus.bind(QUEUE, PATTERNS, handle)
