"""Shared fixtures for the account-ledger test suite."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from account_ledger.infrastructure.event_bus import InMemoryEventBus
from account_ledger.infrastructure.event_store import EventStore
from account_ledger.infrastructure.table import InMemoryLedgerTable
from account_ledger.ledger import (
    AccountLedger,
    AggregateReconstructor,
    ChangeForwarder,
    FeedPump,
    ListingIndex,
    SnapshotPolicy,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Deterministic ids and time
# ---------------------------------------------------------------------------

class StepClock:
    """Advances one second per call."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start

    def __call__(self) -> datetime:
        current = self._now
        self._now += timedelta(seconds=1)
        return current


def sequential_ids(prefix: str = "acct"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter):04d}"


def build_ledger(
    table: InMemoryLedgerTable,
    *,
    threshold: int = 9,
    probe_window: int = 10,
    id_factory=None,
    clock=None,
) -> AccountLedger:
    """Wire an ``AccountLedger`` over *table* the way the app does."""
    store = EventStore(table)
    return AccountLedger(
        store,
        AggregateReconstructor(store, probe_window=probe_window),
        ListingIndex(table, consistent_reads=True),
        SnapshotPolicy(threshold),
        id_factory=id_factory or sequential_ids(),
        clock=clock or StepClock(),
    )


async def no_sleep(_delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def table() -> InMemoryLedgerTable:
    return InMemoryLedgerTable()


@pytest.fixture
def store(table) -> EventStore:
    return EventStore(table)


@pytest.fixture
def ledger(table) -> AccountLedger:
    return build_ledger(table)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def forwarder(bus) -> ChangeForwarder:
    return ChangeForwarder(bus, event_bus_name="AccountEvents", sleep=no_sleep)


@pytest.fixture
def pump(table, forwarder) -> FeedPump:
    return FeedPump(table, forwarder, batch_size=10, poll_interval_seconds=0.01)
