"""Rebuild current account state from the latest snapshot.

Only the newest ``probe_window`` events are read.  The snapshot policy
guarantees that a live account always has a snapshot inside that
window, so an account without one is reported as not found rather than
reconstructed from a partial history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from account_ledger.core.enums import EventKind
from account_ledger.domain.account import Account, fold
from account_ledger.domain.events import LedgerEvent
from account_ledger.infrastructure.event_store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_PROBE_WINDOW = 10


@dataclass(frozen=True)
class Reconstruction:
    """Current state plus the pieces it was folded from."""

    account: Account
    snapshot: LedgerEvent
    events_since_snapshot: tuple[LedgerEvent, ...]


class AggregateReconstructor:
    def __init__(self, store: EventStore, probe_window: int = DEFAULT_PROBE_WINDOW) -> None:
        self._store = store
        self._probe_window = probe_window

    async def reconstruct(self, account_id: str) -> Reconstruction | None:
        """Return the folded state of *account_id*, or ``None`` if unknown."""
        newest_first = await self._store.query(
            account_id, limit=self._probe_window, most_recent_first=True, consistent=True,
        )
        for idx, event in enumerate(newest_first):
            if event.kind == EventKind.SNAPSHOT:
                break
        else:
            if newest_first:
                logger.warning(
                    "No snapshot within %d newest events of account_id=%s",
                    self._probe_window, account_id,
                )
            return None

        since = tuple(reversed(newest_first[:idx]))
        return Reconstruction(
            account=fold(event, since),
            snapshot=event,
            events_since_snapshot=since,
        )
