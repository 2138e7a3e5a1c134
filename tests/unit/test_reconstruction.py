"""Tests for the snapshot policy and the aggregate reconstructor."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from account_ledger.domain.account import fold
from account_ledger.domain.events import (
    AccountCreated,
    AccountCredited,
    AccountDebited,
    AccountSnapshot,
)
from account_ledger.ledger.reconstructor import AggregateReconstructor
from account_ledger.ledger.snapshot_policy import SnapshotPolicy

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _opening(account_id: str = "a1", balance: int = 1) -> list:
    return [
        AccountCreated(account_id=account_id, version=1, occurred_at=T0,
                       owner_ref="u1", contact="a@x.com", balance=balance),
        AccountSnapshot(account_id=account_id, version=2, occurred_at=T0,
                        owner_ref="u1", contact="a@x.com", balance=balance),
    ]


def _credits(first_version: int, count: int, amount: int = 1) -> list:
    return [
        AccountCredited(account_id="a1", version=v, occurred_at=T0, amount=amount)
        for v in range(first_version, first_version + count)
    ]


# ===========================================================================
# SnapshotPolicy
# ===========================================================================

class TestSnapshotPolicy:
    def test_not_due_below_threshold(self):
        policy = SnapshotPolicy(9)
        assert not policy.is_due(_credits(3, 8))

    def test_due_at_threshold(self):
        policy = SnapshotPolicy(9)
        assert policy.is_due(_credits(3, 9))

    def test_snapshots_do_not_count(self):
        policy = SnapshotPolicy(2)
        assert not policy.is_due(_opening())

    def test_snapshot_takes_next_version_with_prior_state(self):
        policy = SnapshotPolicy(2)
        state = fold(_opening()[1], _credits(3, 2, amount=4))
        snap = policy.snapshot_for(state, _credits(3, 2, amount=4), T0)
        assert snap is not None
        assert snap.version == 5
        assert snap.balance == 9

    def test_snapshot_for_returns_none_when_not_due(self):
        policy = SnapshotPolicy(9)
        state = fold(_opening()[1])
        assert policy.snapshot_for(state, (), T0) is None

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            SnapshotPolicy(0)


# ===========================================================================
# AggregateReconstructor
# ===========================================================================

class TestReconstructor:
    @pytest.mark.asyncio
    async def test_fresh_account(self, store):
        await store.append("a1", _opening())
        result = await AggregateReconstructor(store).reconstruct("a1")
        assert result is not None
        assert result.account.balance == 1
        assert result.account.version == 2
        assert result.snapshot.version == 2
        assert result.events_since_snapshot == ()

    @pytest.mark.asyncio
    async def test_folds_events_after_snapshot_oldest_first(self, store):
        await store.append("a1", _opening())
        await store.append("a1", [
            AccountCredited(account_id="a1", version=3, occurred_at=T0, amount=5),
            AccountDebited(account_id="a1", version=4, occurred_at=T0, amount=3),
        ])
        result = await AggregateReconstructor(store).reconstruct("a1")
        assert result.account.balance == 3
        assert result.account.version == 4
        assert [e.version for e in result.events_since_snapshot] == [3, 4]

    @pytest.mark.asyncio
    async def test_uses_most_recent_snapshot(self, store):
        await store.append("a1", _opening() + _credits(3, 3))
        await store.append("a1", [
            AccountSnapshot(account_id="a1", version=6, occurred_at=T0,
                            owner_ref="u1", contact="a@x.com", balance=4),
            AccountCredited(account_id="a1", version=7, occurred_at=T0, amount=10),
        ])
        result = await AggregateReconstructor(store).reconstruct("a1")
        assert result.snapshot.version == 6
        assert result.account.balance == 14
        assert len(result.events_since_snapshot) == 1

    @pytest.mark.asyncio
    async def test_unknown_account(self, store):
        assert await AggregateReconstructor(store).reconstruct("nobody") is None

    @pytest.mark.asyncio
    async def test_no_snapshot_in_window_is_not_found(self, store):
        await store.append("a1", _opening() + _credits(3, 10))
        assert await AggregateReconstructor(store, probe_window=10).reconstruct("a1") is None

    @pytest.mark.asyncio
    async def test_snapshot_at_window_edge(self, store):
        await store.append("a1", _opening() + _credits(3, 9))
        result = await AggregateReconstructor(store, probe_window=10).reconstruct("a1")
        assert result is not None
        assert result.account.balance == 10
        assert result.account.version == 11

    @pytest.mark.asyncio
    async def test_created_without_snapshot_is_not_found(self, store):
        await store.append("a1", _opening()[:1])
        assert await AggregateReconstructor(store).reconstruct("a1") is None
