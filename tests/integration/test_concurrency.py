"""Integration: concurrent operations racing on the same account.

``InterleavingTable`` yields to the event loop after every read, so all
concurrent callers reconstruct the same (soon stale) state before any of
them appends.  The conditional append must pick exactly one winner.
"""

from __future__ import annotations

import asyncio
from functools import partial

import pytest

from account_ledger.core.enums import EventKind
from account_ledger.core.errors import (
    AccountAlreadyExistsError,
    InsufficientBalanceError,
    VersionConflictError,
)
from account_ledger.infrastructure.table import InMemoryLedgerTable
from account_ledger.ledger import retry_on_conflict

from conftest import build_ledger


class InterleavingTable(InMemoryLedgerTable):
    async def query(self, pk, **kwargs):
        page = await super().query(pk, **kwargs)
        await asyncio.sleep(0)
        return page


fast_retry = partial(
    retry_on_conflict, max_attempts=200, backoff_base_seconds=0.0005, backoff_max_seconds=0.002,
)


@pytest.fixture
def racing_table() -> InterleavingTable:
    return InterleavingTable()


class TestConcurrentCredits:
    @pytest.mark.asyncio
    async def test_racing_credits_have_one_winner(self, racing_table):
        ledger = build_ledger(racing_table)
        account = await ledger.create_account("u1", "a@x.com")

        results = await asyncio.gather(
            *(ledger.credit_account(account.account_id, 1) for _ in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, VersionConflictError)]
        assert len(winners) == 1
        assert len(losers) == 4
        assert all(e.versions == (3,) for e in losers)
        assert (await ledger.get_account(account.account_id)).balance == 2

    @pytest.mark.asyncio
    async def test_retrying_credits_are_all_applied_once(self, racing_table):
        ledger = build_ledger(racing_table)
        account = await ledger.create_account("u1", "a@x.com")
        amounts = list(range(1, 13))

        await asyncio.gather(*(
            fast_retry(partial(ledger.credit_account, account.account_id, amount))
            for amount in amounts
        ))

        final = await ledger.get_account(account.account_id)
        assert final.balance == 1 + sum(amounts)

        history = await ledger._store.history(account.account_id)
        credited = sorted(e.amount for e in history if e.kind == EventKind.CREDITED)
        assert credited == amounts
        assert [e.version for e in history] == list(range(1, len(history) + 1))


class TestConcurrentDebits:
    @pytest.mark.asyncio
    async def test_no_double_spend(self, racing_table):
        ledger = build_ledger(racing_table)
        account = await ledger.create_account("u1", "a@x.com")
        await ledger.credit_account(account.account_id, 9)

        results = await asyncio.gather(
            fast_retry(partial(ledger.debit_account, account.account_id, 7)),
            fast_retry(partial(ledger.debit_account, account.account_id, 7)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, InsufficientBalanceError)) == 1
        final = await ledger.get_account(account.account_id)
        assert final.balance == 3

        history = await ledger._store.history(account.account_id)
        assert sum(1 for e in history if e.kind == EventKind.DEBITED) == 1


class TestConcurrentCreates:
    @pytest.mark.asyncio
    async def test_colliding_identifiers(self):
        table = InterleavingTable()
        ledger = build_ledger(table, id_factory=lambda: "dup")

        results = await asyncio.gather(
            *(ledger.create_account(f"u{i}", f"{i}@x.com") for i in range(3)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, AccountAlreadyExistsError)) == 2
        page = await ledger.list_accounts(page_size=10)
        assert [e.account_id for e in page.entries] == ["dup"]
