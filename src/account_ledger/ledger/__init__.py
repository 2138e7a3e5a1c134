"""Ledger engine: operations, reconstruction, listing, forwarding."""

from .forwarder import ChangeForwarder, FeedPump
from .listing import AccountPage, ListingIndex
from .operations import AccountLedger
from .reconstructor import AggregateReconstructor, Reconstruction
from .retry import retry_on_conflict
from .snapshot_policy import SnapshotPolicy

__all__ = [
    "AccountLedger",
    "AccountPage",
    "AggregateReconstructor",
    "ChangeForwarder",
    "FeedPump",
    "ListingIndex",
    "Reconstruction",
    "SnapshotPolicy",
    "retry_on_conflict",
]
