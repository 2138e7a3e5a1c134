"""Enumerations used across the ledger."""

from enum import Enum


class EventKind(str, Enum):
    CREATED = "CREATED"
    CREDITED = "CREDITED"
    DEBITED = "DEBITED"
    SNAPSHOT = "SNAPSHOT"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQL = "sql"


class BusBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class DetailTypeMode(str, Enum):
    """How forwarded events are tagged on the bus."""

    KIND = "kind"    # one topic per event kind
    FIXED = "fixed"  # every kind collapsed into one topic
