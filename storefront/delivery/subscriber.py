"""
Delivery Service: order event consumer

  order.cancelled ──▶ cancel_for_order(order)   (absorbing CANCELLED)
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..shared.bus import EventBus
from . import commands

logger = logging.getLogger(__name__)

QUEUE = "delivery.order.events"
PATTERNS = ["order.cancelled"]


def bind(bus: EventBus, sessions: async_sessionmaker[AsyncSession]) -> None:
    async def handle(topic: str, data: dict) -> None:
        order_id = data.get("order_id")
        if not order_id:
            logger.warning("Ignoring %s without order_id", topic)
            return
        reason = data.get("note") or "Order cancelled"
        async with sessions() as session:
            await commands.cancel_for_order(session, bus, order_id, reason)

    bus.bind(QUEUE, PATTERNS, handle)
