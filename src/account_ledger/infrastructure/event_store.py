"""Append-only event store with optimistic concurrency.

Design invariants
-----------------
1.  ``append()`` is **all-or-nothing**: every event (and the optional
    listing entry) is written only if nothing exists at its key.  One
    taken key fails the whole batch with ``VersionConflictError``.
2.  ``query()`` reads the account partition with strongly consistent
    reads, newest version first by default.
3.  The store is **append-only**; events are never updated or deleted.
    The conditional append is the only concurrency control; there are no
    locks or leases.

Key layout
----------
=================  ============================  ===========================================
Item               pk                            sk
=================  ============================  ===========================================
Event              ``event#<account_id>``        ``event#<version, zero-padded>``
Listing entry      ``account``                   ``account#<contact>#<owner_ref>#<account_id>``
=================  ============================  ===========================================

Versions are zero-padded so that lexical ``sk`` order matches numeric
version order.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from account_ledger.core.errors import ConditionalCheckFailedError, VersionConflictError
from account_ledger.domain.account import ListingEntry
from account_ledger.domain.events import LedgerEvent, event_from_body, event_to_body
from account_ledger.infrastructure.table import Item, LedgerTable

logger = logging.getLogger(__name__)

EVENT_PREFIX = "event"
LISTING_PARTITION = "account"
VERSION_WIDTH = 10


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def event_partition(account_id: str) -> str:
    return f"{EVENT_PREFIX}#{account_id}"


def event_sort_key(version: int) -> str:
    return f"{EVENT_PREFIX}#{version:0{VERSION_WIDTH}d}"


def listing_sort_key(entry: ListingEntry) -> str:
    return f"{LISTING_PARTITION}#{entry.contact}#{entry.owner_ref}#{entry.account_id}"


def event_item(event: LedgerEvent) -> Item:
    return {
        "pk": event_partition(event.account_id),
        "sk": event_sort_key(event.version),
        **event_to_body(event),
    }


def listing_item(entry: ListingEntry) -> Item:
    return {
        "pk": LISTING_PARTITION,
        "sk": listing_sort_key(entry),
        **entry.model_dump(),
    }


def is_event_item(item: Item) -> bool:
    return str(item.get("pk", "")).startswith(f"{EVENT_PREFIX}#")


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------

class EventStore:
    """Per-account event streams on top of a ``LedgerTable``."""

    def __init__(self, table: LedgerTable) -> None:
        self._table = table

    @property
    def table(self) -> LedgerTable:
        return self._table

    async def append(
        self,
        account_id: str,
        events: Sequence[LedgerEvent],
        listing: ListingEntry | None = None,
    ) -> None:
        """Conditionally append *events* (ascending versions) in one batch.

        Raises
        ------
        VersionConflictError
            If any event version (or the listing key) is already taken.
        ValueError
            If an event belongs to another account.
        """
        if not events:
            return
        foreign = [e for e in events if e.account_id != account_id]
        if foreign:
            raise ValueError(
                f"Events for {foreign[0].account_id} appended to {account_id}"
            )

        items = [event_item(e) for e in events]
        if listing is not None:
            items.append(listing_item(listing))

        versions = tuple(e.version for e in events)
        try:
            await self._table.transact_put(items)
        except ConditionalCheckFailedError as exc:
            logger.info(
                "Version conflict account_id=%s versions=%s", account_id, versions,
            )
            raise VersionConflictError(account_id, versions) from exc

        logger.debug(
            "Appended account_id=%s versions=%s kinds=%s",
            account_id, versions, [e.kind.value for e in events],
        )

    async def query(
        self,
        account_id: str,
        limit: int,
        most_recent_first: bool = True,
        consistent: bool = True,
    ) -> list[LedgerEvent]:
        """Return up to *limit* events for *account_id*."""
        page = await self._table.query(
            event_partition(account_id),
            limit=limit,
            descending=most_recent_first,
            consistent=consistent,
        )
        return [event_from_body(item) for item in page.items]

    async def history(self, account_id: str, page_size: int = 100) -> list[LedgerEvent]:
        """Return the full stream, oldest first.  For audit and replay."""
        events: list[LedgerEvent] = []
        start_key = None
        while True:
            page = await self._table.query(
                event_partition(account_id),
                limit=page_size,
                exclusive_start_key=start_key,
            )
            events.extend(event_from_body(item) for item in page.items)
            if page.last_evaluated_key is None:
                return events
            start_key = page.last_evaluated_key
