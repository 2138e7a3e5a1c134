"""Durable key-sorted table and its change feed.

The ledger talks to storage only through two narrow protocols:

*  ``LedgerTable``: items addressed by ``(pk, sk)``.  Writes happen in
   all-or-nothing batches where every item is conditioned on nothing
   existing at its exact key.  Reads are range queries within one
   partition, ordered by ``sk``, limited, and resumable from an
   exclusive start key.
*  ``ChangeFeed``: one record per item written, carrying the new image,
   numbered by a feed sequence, plus per-consumer checkpoints.

This module provides the protocols and ``InMemoryLedgerTable``, which
implements both for unit tests and local development.  The SQL backend
lives in ``account_ledger.storage.postgres.sql_table``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from account_ledger.core.errors import ConditionalCheckFailedError
from account_ledger.core.ids import utc_now

logger = logging.getLogger(__name__)

Item = dict[str, Any]
Key = dict[str, str]


def item_key(item: Item) -> tuple[str, str]:
    return item["pk"], item["sk"]


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueryPage:
    """One page of a partition query.

    ``last_evaluated_key`` is ``None`` when the partition is exhausted.
    """

    items: list[Item]
    last_evaluated_key: Key | None = None


@dataclass(frozen=True)
class ChangeRecord:
    """New image of one item, as delivered by the change feed."""

    sequence: int
    event_source: str
    new_image: Item
    created_at: datetime = field(default_factory=utc_now)

    @property
    def record_id(self) -> str:
        """Stable reference back to this feed record."""
        return f"{self.event_source}/{self.sequence}"


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class LedgerTable(Protocol):
    """Key-sorted table with conditional batch writes."""

    async def transact_put(self, items: list[Item]) -> None:
        """Write *items* atomically, each only if its key is absent.

        Raises ``ConditionalCheckFailedError`` (nothing written) when any
        key already exists, and ``StoreUnavailableError`` on transport
        failure.
        """
        ...

    async def query(
        self,
        pk: str,
        *,
        limit: int,
        descending: bool = False,
        consistent: bool = True,
        exclusive_start_key: Key | None = None,
    ) -> QueryPage:
        """Return up to *limit* items of partition *pk* ordered by ``sk``."""
        ...


class ChangeFeed(Protocol):
    """Ordered stream of ``ChangeRecord`` with consumer checkpoints."""

    async def read_batch(self, after_sequence: int, limit: int) -> list[ChangeRecord]:
        """Return up to *limit* records with ``sequence > after_sequence``."""
        ...

    async def load_checkpoint(self, consumer: str) -> int:
        """Last sequence acknowledged by *consumer* (0 if none)."""
        ...

    async def save_checkpoint(self, consumer: str, sequence: int) -> None:
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryLedgerTable:
    """Dict-backed table and change feed.  No persistence across restarts.

    Good for: unit tests, local development.

    ``transact_put`` performs its existence checks and writes without
    yielding to the event loop, so concurrent coroutines observe each
    batch as a single atomic step.  Reads are always consistent; the
    ``consistent`` flag is accepted for interface parity.
    """

    def __init__(self, table_name: str = "Accounts") -> None:
        self._table_name = table_name
        self._partitions: dict[str, dict[str, Item]] = {}
        self._changes: list[ChangeRecord] = []
        self._checkpoints: dict[str, int] = {}

    @property
    def table_name(self) -> str:
        return self._table_name

    # -- LedgerTable -------------------------------------------------------

    async def transact_put(self, items: list[Item]) -> None:
        keys = [item_key(item) for item in items]
        repeated = {k for k in keys if keys.count(k) > 1}
        taken = [
            k for k in keys
            if k in repeated or k[1] in self._partitions.get(k[0], {})
        ]
        if taken:
            raise ConditionalCheckFailedError(tuple(taken))

        for item in items:
            pk, sk = item_key(item)
            stored = copy.deepcopy(item)
            self._partitions.setdefault(pk, {})[sk] = stored
            self._changes.append(ChangeRecord(
                sequence=len(self._changes) + 1,
                event_source=self._table_name,
                new_image=copy.deepcopy(stored),
            ))

    async def query(
        self,
        pk: str,
        *,
        limit: int,
        descending: bool = False,
        consistent: bool = True,
        exclusive_start_key: Key | None = None,
    ) -> QueryPage:
        partition = self._partitions.get(pk, {})
        sort_keys = sorted(partition, reverse=descending)
        if exclusive_start_key is not None:
            start = exclusive_start_key["sk"]
            if descending:
                sort_keys = [sk for sk in sort_keys if sk < start]
            else:
                sort_keys = [sk for sk in sort_keys if sk > start]

        page = sort_keys[:limit]
        items = [copy.deepcopy(partition[sk]) for sk in page]
        last_key: Key | None = None
        if page and len(sort_keys) > limit:
            last_key = {"pk": pk, "sk": page[-1]}
        return QueryPage(items=items, last_evaluated_key=last_key)

    # -- ChangeFeed --------------------------------------------------------

    async def read_batch(self, after_sequence: int, limit: int) -> list[ChangeRecord]:
        return self._changes[after_sequence:after_sequence + limit]

    async def load_checkpoint(self, consumer: str) -> int:
        return self._checkpoints.get(consumer, 0)

    async def save_checkpoint(self, consumer: str, sequence: int) -> None:
        self._checkpoints[consumer] = sequence

    # -- Testing helpers ---------------------------------------------------

    def item_count(self, pk: str | None = None) -> int:
        if pk is not None:
            return len(self._partitions.get(pk, {}))
        return sum(len(p) for p in self._partitions.values())

    @property
    def changes(self) -> list[ChangeRecord]:
        return list(self._changes)
