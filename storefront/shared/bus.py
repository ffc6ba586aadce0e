"""
Shared: event fabric

Topic-exchange style publish/subscribe:

  publisher ──publish(topic)──▶ stream ──▶ queue A (bound to "order.*")
                                       └─▶ queue B (bound to "delivery.status.#")

Topics are dot-segmented. In a binding pattern ``*`` matches exactly one
word and ``#`` matches zero or more words.

RedisEventBus keeps every event in one Redis Stream and gives each queue its
own consumer group, so a queue keeps its backlog while its service is down
and an event is only acknowledged after the handler finished. Delivery is
at-least-once: consumers must be idempotent.

InMemoryEventBus dispatches inside the publishing call. It is used for tests
and for running every service in one process.
"""

import asyncio
import json
import logging
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


def topic_matches(pattern: str, topic: str) -> bool:
    return _match(pattern.split("."), topic.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    return (head == "*" or head == words[0]) and _match(rest, words[1:])


@dataclass
class Binding:
    queue: str
    patterns: list[str]
    handler: EventHandler

    def accepts(self, topic: str) -> bool:
        return any(topic_matches(p, topic) for p in self.patterns)


def _to_wire(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str)


class EventBus(Protocol):
    async def publish(self, topic: str, data: dict[str, Any]) -> None: ...

    def bind(self, queue: str, patterns: list[str], handler: EventHandler) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class InMemoryEventBus:
    """Same-process bus. Handler failures are logged and isolated."""

    def __init__(self) -> None:
        self._bindings: list[Binding] = []
        self.published: list[tuple[str, dict[str, Any]]] = []

    def bind(self, queue: str, patterns: list[str], handler: EventHandler) -> None:
        self._bindings.append(Binding(queue, list(patterns), handler))

    async def publish(self, topic: str, data: dict[str, Any]) -> None:
        # Round-trip through JSON so handlers see exactly what Redis would give them.
        data = json.loads(_to_wire(data))
        self.published.append((topic, data))
        for binding in list(self._bindings):
            if not binding.accepts(topic):
                continue
            try:
                await binding.handler(topic, data)
            except Exception:
                logger.exception("Handler for queue %s failed on %s", binding.queue, topic)

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


@dataclass
class _Consumer:
    binding: Binding
    task: asyncio.Task | None = None
    in_flight: set[asyncio.Task] = field(default_factory=set)


class RedisEventBus:
    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        consumer_name: str | None = None,
        max_in_flight: int = 32,
        block_ms: int = 1000,
    ) -> None:
        self.redis = redis
        self.stream = stream
        self.consumer_name = consumer_name or socket.gethostname()
        self.block_ms = block_ms
        self._consumers: list[_Consumer] = []
        self._slots = asyncio.Semaphore(max_in_flight)
        self._shutdown = asyncio.Event()

    def bind(self, queue: str, patterns: list[str], handler: EventHandler) -> None:
        self._consumers.append(_Consumer(Binding(queue, list(patterns), handler)))

    async def publish(self, topic: str, data: dict[str, Any]) -> None:
        await self.redis.xadd(self.stream, {"topic": topic, "data": _to_wire(data)})
        logger.debug("Published %s", topic)

    async def start(self) -> None:
        for consumer in self._consumers:
            await self._ensure_group(consumer.binding.queue)
            consumer.task = asyncio.create_task(self._consume(consumer))
            logger.info(
                "Queue %s bound to %s on stream %s",
                consumer.binding.queue,
                ", ".join(consumer.binding.patterns),
                self.stream,
            )

    async def stop(self) -> None:
        self._shutdown.set()
        for consumer in self._consumers:
            if consumer.task is not None:
                consumer.task.cancel()
            pending = [consumer.task, *consumer.in_flight] if consumer.task else list(consumer.in_flight)
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _ensure_group(self, queue: str) -> None:
        try:
            await self.redis.xgroup_create(self.stream, queue, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _consume(self, consumer: _Consumer) -> None:
        queue = consumer.binding.queue

        # Entries delivered to us before a restart and never acknowledged.
        cursor = "0"
        while not self._shutdown.is_set():
            entries = await self._read(queue, cursor, block=None)
            if not entries:
                break
            for msg_id, fields in entries:
                await self._dispatch(consumer, msg_id, fields)
            cursor = entries[-1][0]

        while not self._shutdown.is_set():
            entries = await self._read(queue, ">", block=self.block_ms)
            for msg_id, fields in entries:
                await self._dispatch(consumer, msg_id, fields)

    async def _read(self, queue: str, cursor: str, block: int | None) -> list[tuple[str, dict]]:
        response = await self.redis.xreadgroup(
            queue, self.consumer_name, {self.stream: cursor}, count=100, block=block
        )
        entries: list[tuple[str, dict]] = []
        for _stream, messages in response or []:
            entries.extend(messages)
        return entries

    async def _dispatch(self, consumer: _Consumer, msg_id: str, fields: dict) -> None:
        queue = consumer.binding.queue
        topic = fields.get("topic", "")
        if not consumer.binding.accepts(topic):
            await self.redis.xack(self.stream, queue, msg_id)
            return

        try:
            data = json.loads(fields.get("data") or "{}")
        except json.JSONDecodeError:
            logger.error("Queue %s dropping undecodable message %s", queue, msg_id)
            await self.redis.xack(self.stream, queue, msg_id)
            return

        # One task per event: a slow retry on one order never holds up the others.
        await self._slots.acquire()
        task = asyncio.create_task(self._deliver(consumer, msg_id, topic, data))
        consumer.in_flight.add(task)
        task.add_done_callback(consumer.in_flight.discard)

    async def _deliver(self, consumer: _Consumer, msg_id: str, topic: str, data: dict) -> None:
        queue = consumer.binding.queue
        try:
            await consumer.binding.handler(topic, data)
        except Exception:
            # Left unacknowledged; re-read from the pending list on the next start.
            logger.exception("Queue %s failed to handle %s (%s)", queue, topic, msg_id)
        else:
            await self.redis.xack(self.stream, queue, msg_id)
        finally:
            self._slots.release()
