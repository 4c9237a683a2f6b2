"""Publish/subscribe bus for crawl, chunk, embed and source progress events.

Subscribers register a glob pattern on the event type (``crawl:*``, ``*``,
``embed:completed``) and a handler (sync or async). A failing handler is
logged and never affects other handlers or the publisher.

Two backends share the contract:
- ``InMemoryEventBus``: single process (tests, ``event_bus_backend=memory``)
- ``RedisEventBus``: Redis pub/sub, so events published by the arq worker
  reach SSE subscribers in the API process
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from fnmatch import fnmatchcase
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from pydantic import ValidationError

from app.schemas.events import Event, parse_event

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class EventBus(ABC):
    """Base bus: local handler registry and isolated dispatch."""

    def __init__(self) -> None:
        self._handlers: dict[int, tuple[str, Handler]] = {}
        self._next_id = 0

    async def start(self) -> None:
        """Open backend connections (no-op for in-memory)."""

    async def close(self) -> None:
        """Release backend connections and drop all handlers."""
        self._handlers.clear()

    @abstractmethod
    async def publish(self, event: Event) -> None:
        """Deliver ``event`` to every matching subscriber."""

    def subscribe(self, pattern: str, handler: Handler) -> Unsubscribe:
        """Register ``handler`` for event types matching ``pattern``.

        Returns a callable that removes the subscription; calling it twice is
        harmless.
        """
        handler_id = self._next_id
        self._next_id += 1
        self._handlers[handler_id] = (pattern, handler)
        logger.debug("Subscribed handler %d to %s", handler_id, pattern)

        def unsubscribe() -> None:
            if self._handlers.pop(handler_id, None) is not None:
                logger.debug("Unsubscribed handler %d from %s", handler_id, pattern)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def _dispatch(self, event: Event) -> None:
        for handler_id, (pattern, handler) in list(self._handlers.items()):
            if not fnmatchcase(event.type, pattern):
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event handler %d failed for %s", handler_id, event.type
                )


class InMemoryEventBus(EventBus):
    """Dispatches synchronously within the current process."""

    async def publish(self, event: Event) -> None:
        await self._dispatch(event)


class RedisEventBus(EventBus):
    """Redis pub/sub bus: one ``psubscribe`` on the channel prefix, one listener task."""

    def __init__(self, redis_url: str, channel_prefix: str = "kb:events:"):
        super().__init__()
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self._redis: Any = None
        self._pubsub: Any = None
        self._listener: asyncio.Task | None = None

    async def start(self) -> None:
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.psubscribe(f"{self.channel_prefix}*")
        self._listener = asyncio.create_task(self._listen())
        logger.info("Event bus listening on %s*", self.channel_prefix)

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug("Ignoring pubsub close error: %s", e)
            self._pubsub = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        await super().close()

    async def publish(self, event: Event) -> None:
        if self._redis is None:
            raise RuntimeError("RedisEventBus.publish called before start()")
        try:
            await self._redis.publish(
                f"{self.channel_prefix}{event.type}",
                event.model_dump_json(by_alias=True),
            )
        except Exception:
            # Progress is best-effort; the source row stays authoritative
            logger.warning("Failed to publish %s", event.type, exc_info=True)

    async def _listen(self) -> None:
        while True:
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    try:
                        event = parse_event(message["data"])
                    except ValidationError as e:
                        logger.warning("Dropping malformed event on %s: %s", message.get("channel"), e)
                        continue
                    await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Event bus listener failed, resubscribing")
                await asyncio.sleep(1.0)
                try:
                    await self._pubsub.psubscribe(f"{self.channel_prefix}*")
                except Exception:
                    logger.warning("Resubscribe failed", exc_info=True)


def create_event_bus(settings: Any) -> EventBus:
    """Build the bus selected by ``settings.event_bus_backend``."""
    if settings.event_bus_backend == "memory":
        return InMemoryEventBus()
    return RedisEventBus(settings.redis_url, settings.event_channel_prefix)
