"""Canonical ID and timestamp factories for the ledger.

ID Categories
-------------
1. Account IDs: UUID v4 strings, assigned once at account creation.
2. Feed record IDs: ``<table>/<sequence>`` references built by the feed.
3. Operation IDs: UUID v4 strings bound to log context per call.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal entity IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 string back into an aware UTC datetime.

    Naive values are assumed to be UTC.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value.endswith("Z"):
        ts = datetime.fromisoformat(value[:-1] + "+00:00")
    else:
        ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
