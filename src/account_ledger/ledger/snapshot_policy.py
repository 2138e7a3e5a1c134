"""When to interleave a snapshot with a mutating append."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from account_ledger.domain.account import Account, to_snapshot
from account_ledger.domain.events import AccountSnapshot, LedgerEvent, is_mutation

DEFAULT_SNAPSHOT_THRESHOLD = 9


class SnapshotPolicy:
    """Snapshot once ``threshold`` mutations have piled up since the last one.

    The snapshot captures the state *before* the pending mutation and
    takes the next free version, so the mutation follows it directly in
    the same conditional batch.
    """

    def __init__(self, threshold: int = DEFAULT_SNAPSHOT_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("snapshot threshold must be >= 1")
        self._threshold = threshold

    @property
    def threshold(self) -> int:
        return self._threshold

    def is_due(self, events_since_snapshot: Sequence[LedgerEvent]) -> bool:
        pending = sum(1 for e in events_since_snapshot if is_mutation(e))
        return pending >= self._threshold

    def snapshot_for(
        self,
        state: Account,
        events_since_snapshot: Sequence[LedgerEvent],
        occurred_at: datetime,
    ) -> AccountSnapshot | None:
        """Return the snapshot to write ahead of the next mutation, if due."""
        if not self.is_due(events_since_snapshot):
            return None
        return to_snapshot(state, state.version + 1, occurred_at)
