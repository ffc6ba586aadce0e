"""
Shared: service wiring

Every service app keeps its engine, session factory and event bus on
``app.state``. The lifespan only creates what is not already there, so a
test (or a single-process runner) can hand in its own database and an
``InMemoryEventBus`` before the app starts.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession

from .bus import EventBus, RedisEventBus
from .config import Settings
from .db import create_session_factory, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def service_resources(
    app: FastAPI,
    settings: Settings,
    database_url: str,
    metadata: MetaData,
    consumer_name: str,
) -> AsyncIterator[None]:
    created_engine = None
    created_redis = None

    if getattr(app.state, "sessions", None) is None:
        created_engine, app.state.sessions = create_session_factory(database_url)
        await create_tables(created_engine, metadata)
    if getattr(app.state, "bus", None) is None:
        created_redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.bus = RedisEventBus(created_redis, settings.event_stream, consumer_name=consumer_name)

    try:
        yield
    finally:
        if created_redis is not None:
            await created_redis.aclose()
            app.state.bus = None
        if created_engine is not None:
            await created_engine.dispose()
            app.state.sessions = None


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.sessions() as session:
        yield session


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus
