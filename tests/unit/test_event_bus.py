"""Tests for the event bus backends.

Redis is mocked; the pipeline API is exercised without a server.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from account_ledger.core.enums import BusBackend
from account_ledger.core.errors import EventBusUnavailableError
from account_ledger.infrastructure.event_bus import (
    BusEntry,
    InMemoryEventBus,
    RedisStreamsEventBus,
    create_event_bus,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _entry(detail_type: str = "CREDITED", seq: int = 1) -> BusEntry:
    return BusEntry(
        source="ledger.accounts",
        detail_type=detail_type,
        detail=json.dumps({"kind": detail_type}),
        time=T0,
        resources=(f"Accounts/{seq}",),
        event_bus_name="AccountEvents",
    )


def _mock_redis(results=None, exc=None) -> tuple[MagicMock, MagicMock]:
    pipe = MagicMock()
    if exc is not None:
        pipe.execute = AsyncMock(side_effect=exc)
    else:
        pipe.execute = AsyncMock(return_value=results or [])
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client, pipe


class TestBusEntry:
    def test_to_message(self):
        msg = _entry().to_message()
        assert msg["detail_type"] == "CREDITED"
        assert msg["time"] == "2024-01-01T00:00:00+00:00"
        assert msg["resources"] == ["Accounts/1"]
        assert msg["event_bus_name"] == "AccountEvents"


class TestInMemoryEventBus:
    @pytest.mark.asyncio
    async def test_publish_delivers_to_subscribers(self):
        bus = InMemoryEventBus()
        received: list[BusEntry] = []

        async def handler(entry):
            received.append(entry)

        bus.subscribe("CREDITED", handler)
        failed = await bus.publish_batch([_entry("CREDITED", 1), _entry("DEBITED", 2)])
        assert failed == []
        assert [e.resources for e in received] == [("Accounts/1",)]
        assert len(bus.get_history()) == 2
        assert len(bus.get_history("DEBITED")) == 1

    @pytest.mark.asyncio
    async def test_handler_error_does_not_fail_publish(self):
        bus = InMemoryEventBus()

        async def broken(_entry):
            raise RuntimeError("boom")

        bus.subscribe("CREDITED", broken)
        assert await bus.publish_batch([_entry()]) == []
        assert len(bus.get_history()) == 1

    @pytest.mark.asyncio
    async def test_reject_next(self):
        bus = InMemoryEventBus()
        bus.reject_next(1)
        entries = [_entry(seq=1), _entry(seq=2)]
        failed = await bus.publish_batch(entries)
        assert failed == [entries[0]]
        assert bus.get_history() == [entries[1]]

    @pytest.mark.asyncio
    async def test_fail_next_publishes(self):
        bus = InMemoryEventBus()
        bus.fail_next_publishes(1)
        with pytest.raises(EventBusUnavailableError):
            await bus.publish_batch([_entry()])
        assert await bus.publish_batch([_entry()]) == []

    @pytest.mark.asyncio
    async def test_clear_history(self):
        bus = InMemoryEventBus()
        await bus.publish_batch([_entry()])
        bus.clear_history()
        assert bus.get_history() == []


class TestRedisStreamsEventBus:
    @pytest.mark.asyncio
    async def test_publish_adds_one_stream_entry_each(self):
        client, pipe = _mock_redis(results=["1-0", "2-0"])
        bus = RedisStreamsEventBus(client=client, stream_prefix="ledger:", max_stream_length=500)
        await bus.start()

        failed = await bus.publish_batch([_entry("CREDITED", 1), _entry("SNAPSHOT", 2)])

        assert failed == []
        client.pipeline.assert_called_once_with(transaction=False)
        assert pipe.xadd.call_count == 2
        stream, fields = pipe.xadd.call_args_list[1].args
        assert stream == "ledger:SNAPSHOT"
        assert fields["_type"] == "SNAPSHOT"
        assert json.loads(fields["_data"])["resources"] == ["Accounts/2"]
        assert pipe.xadd.call_args_list[1].kwargs == {"maxlen": 500, "approximate": True}

    @pytest.mark.asyncio
    async def test_rejected_commands_reported(self):
        client, _pipe = _mock_redis(results=["1-0", ResponseError("OOM")])
        bus = RedisStreamsEventBus(client=client)
        await bus.start()
        entries = [_entry(seq=1), _entry(seq=2)]
        assert await bus.publish_batch(entries) == [entries[1]]

    @pytest.mark.asyncio
    async def test_connection_failure_is_typed(self):
        client, _pipe = _mock_redis(exc=RedisConnectionError("refused"))
        bus = RedisStreamsEventBus(client=client)
        await bus.start()
        with pytest.raises(EventBusUnavailableError, match="refused"):
            await bus.publish_batch([_entry()])

    @pytest.mark.asyncio
    async def test_empty_batch_skips_redis(self):
        client, _pipe = _mock_redis()
        bus = RedisStreamsEventBus(client=client)
        await bus.start()
        assert await bus.publish_batch([]) == []
        client.pipeline.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_before_start(self):
        bus = RedisStreamsEventBus()
        with pytest.raises(RuntimeError, match="not started"):
            await bus.publish_batch([_entry()])


class TestCreateEventBus:
    def test_memory(self):
        assert isinstance(create_event_bus(BusBackend.MEMORY), InMemoryEventBus)

    def test_redis(self):
        bus = create_event_bus(BusBackend.REDIS, "redis://cache:6379/1", stream_prefix="x:")
        assert isinstance(bus, RedisStreamsEventBus)
        assert bus.stream_name("CREATED") == "x:CREATED"
