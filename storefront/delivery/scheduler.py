"""
Delivery Service: lifecycle scanner

Background task started in the app lifespan. Every tick it walks the
active deliveries and lets ``commands.advance`` move each one at most one
hop. A failure on one delivery is logged and the scan continues.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..shared.bus import EventBus
from ..shared.db import utcnow
from . import commands
from .lifecycle import ACTIVE, LossProbability
from .tables import deliveries

logger = logging.getLogger(__name__)


class DeliveryScheduler:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        bus: EventBus,
        loss_probability: LossProbability,
        dwell_seconds: float = 5.0,
        interval_seconds: float = 5.0,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sessions = sessions
        self.bus = bus
        self.loss_probability = loss_probability
        self.dwell = timedelta(seconds=dwell_seconds)
        self.interval = interval_seconds
        self.rng = rng or random.Random()
        self.clock = clock

    async def _active_ids(self) -> list[str]:
        async with self.sessions() as session:
            result = await session.execute(
                select(deliveries.c.delivery_id)
                .where(deliveries.c.status.in_([s.value for s in ACTIVE]))
                .order_by(deliveries.c.created_at)
            )
            return list(result.scalars())

    async def tick(self, now: datetime | None = None) -> list[dict]:
        """One scan. Returns the deliveries that moved."""
        now = now or self.clock()
        probability = self.loss_probability.get()
        moved = []
        for delivery_id in await self._active_ids():
            try:
                async with self.sessions() as session:
                    delivery = await commands.advance(
                        session, self.bus, delivery_id, now, self.dwell, probability, self.rng
                    )
            except Exception:
                logger.exception("Error processing delivery %s", delivery_id)
                continue
            if delivery is not None:
                moved.append(delivery)
        return moved

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info("Delivery scanner started (every %.1fs)", self.interval)
        while not shutdown_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Delivery scan failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Delivery scanner stopped")
