"""Outbound event bus for republished ledger events.

Design goals
------------
1.  **Batched publish**: ``publish_batch()`` takes every entry of one
    change-feed batch and reports the entries that were *not* accepted,
    so callers retry only those.
2.  **Type-partitioned**: each entry carries a ``detail_type``; the
    Redis backend writes one stream per detail type.
3.  **Transport errors are typed**: connection-level failures raise
    ``EventBusUnavailableError``; nothing is swallowed here.  Retry
    policy belongs to the forwarder.

This module provides:

*  ``BusEntry``: one outbound message.
*  ``EventBus``: the protocol.
*  ``InMemoryEventBus``: deterministic implementation for tests.
*  ``RedisStreamsEventBus``: production implementation on Redis Streams.
*  ``create_event_bus``: factory keyed on ``BusBackend``.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from account_ledger.core.enums import BusBackend
from account_ledger.core.errors import EventBusUnavailableError

logger = logging.getLogger(__name__)

EntryHandler = Callable[["BusEntry"], Awaitable[None]]


@dataclass(frozen=True)
class BusEntry:
    """One republished event.

    ``resources`` references the originating change-feed record.
    """

    source: str
    detail_type: str
    detail: str
    time: datetime
    resources: tuple[str, ...] = ()
    event_bus_name: str = ""

    def to_message(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "detail_type": self.detail_type,
            "detail": self.detail,
            "time": self.time.isoformat(),
            "resources": list(self.resources),
            "event_bus_name": self.event_bus_name,
        }


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class EventBus(Protocol):
    async def publish_batch(self, entries: Sequence[BusEntry]) -> list[BusEntry]:
        """Publish *entries*; return the ones that were rejected.

        Raises ``EventBusUnavailableError`` when the bus is unreachable.
        """
        ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventBus:
    """In-process bus.  Handlers run in publish order.

    Handler errors are logged and do not fail the publish; delivery to
    the bus is what the forwarder is accountable for.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EntryHandler]] = defaultdict(list)
        self._history: list[BusEntry] = []
        self._reject_next = 0
        self._unavailable_next = 0
        self._running = False

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    def subscribe(self, detail_type: str, handler: EntryHandler) -> None:
        self._handlers[detail_type].append(handler)

    async def publish_batch(self, entries: Sequence[BusEntry]) -> list[BusEntry]:
        if self._unavailable_next:
            self._unavailable_next -= 1
            raise EventBusUnavailableError("in-memory bus unavailable")

        failed: list[BusEntry] = []
        for entry in entries:
            if self._reject_next:
                self._reject_next -= 1
                failed.append(entry)
                continue
            self._history.append(entry)
            for handler in self._handlers.get(entry.detail_type, []):
                try:
                    await handler(entry)
                except Exception:
                    logger.exception(
                        "Handler error detail_type=%s resources=%s",
                        entry.detail_type, entry.resources,
                    )
        return failed

    # -- Testing helpers ---------------------------------------------------

    def reject_next(self, count: int) -> None:
        """Report the next *count* entries as failed."""
        self._reject_next = count

    def fail_next_publishes(self, count: int) -> None:
        """Raise ``EventBusUnavailableError`` on the next *count* publishes."""
        self._unavailable_next = count

    def get_history(self, detail_type: str | None = None) -> list[BusEntry]:
        if detail_type is None:
            return list(self._history)
        return [e for e in self._history if e.detail_type == detail_type]

    def clear_history(self) -> None:
        self._history.clear()


# ---------------------------------------------------------------------------
# Redis Streams implementation
# ---------------------------------------------------------------------------

_clients: dict[str, aioredis.Redis] = {}


def get_redis_client(redis_url: str) -> aioredis.Redis:
    """Return the process-wide Redis client for *redis_url*.

    Created lazily on first use; the connection pool is shared by every
    caller in the process.
    """
    client = _clients.get(redis_url)
    if client is None:
        client = aioredis.from_url(redis_url, decode_responses=True)
        _clients[redis_url] = client
    return client


async def close_redis_clients() -> None:
    while _clients:
        _url, client = _clients.popitem()
        await client.aclose()


class RedisStreamsEventBus:
    """Event bus backed by Redis Streams, one stream per detail type."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        stream_prefix: str = "ledger:",
        max_stream_length: int = 10_000,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = stream_prefix
        self._max_len = max_stream_length
        self._redis = client

    async def start(self) -> None:
        if self._redis is None:
            self._redis = get_redis_client(self._redis_url)

    async def stop(self) -> None:
        # Shared client; released by close_redis_clients() at process exit.
        self._redis = None

    def stream_name(self, detail_type: str) -> str:
        return f"{self._prefix}{detail_type}"

    async def publish_batch(self, entries: Sequence[BusEntry]) -> list[BusEntry]:
        if self._redis is None:
            raise RuntimeError("RedisStreamsEventBus not started")
        if not entries:
            return []

        pipe = self._redis.pipeline(transaction=False)
        for entry in entries:
            pipe.xadd(
                self.stream_name(entry.detail_type),
                {"_type": entry.detail_type, "_data": json.dumps(entry.to_message())},
                maxlen=self._max_len,
                approximate=True,
            )
        try:
            results = await pipe.execute(raise_on_error=False)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            logger.exception(
                "Redis publish failed for %d entries on %s",
                len(entries), self._redis_url.split("@")[-1],
            )
            raise EventBusUnavailableError(str(exc)) from exc

        failed = []
        for entry, result in zip(entries, results):
            if isinstance(result, Exception):
                logger.warning(
                    "XADD rejected stream=%s resources=%s: %s",
                    self.stream_name(entry.detail_type), entry.resources, result,
                )
                failed.append(entry)
        return failed


def create_event_bus(
    backend: BusBackend,
    redis_url: str = "redis://localhost:6379/0",
    *,
    stream_prefix: str = "ledger:",
    max_stream_length: int = 10_000,
) -> InMemoryEventBus | RedisStreamsEventBus:
    """Create an event bus for the given backend.

    - MEMORY: InMemoryEventBus (no external deps, deterministic)
    - REDIS: RedisStreamsEventBus (persistent, observable)
    """
    if backend == BusBackend.MEMORY:
        return InMemoryEventBus()
    return RedisStreamsEventBus(
        redis_url,
        stream_prefix=stream_prefix,
        max_stream_length=max_stream_length,
    )
