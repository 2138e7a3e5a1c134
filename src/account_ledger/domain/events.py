"""Ledger events: the immutable facts an account is folded from.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).
2.  ``(account_id, version)`` is the identity of an event; the store
    refuses a second event at the same key.
3.  ``kind`` is a class-level tag.  It is the discriminator written to
    storage and the default topic on the event bus.
4.  ``AccountCreated`` only ever appears at version 1.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar

from account_ledger.core.enums import EventKind
from account_ledger.core.errors import CorruptItemError
from account_ledger.core.ids import parse_timestamp
from account_ledger.core.ids import utc_now as _now

INITIAL_BALANCE = 1

_INT_FIELDS = frozenset({"version", "amount", "balance"})


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerEvent:
    """Immutable base for every ledger event.

    Shared fields
    ~~~~~~~~~~~~~
    account_id   Account the event belongs to.
    version      Position in the account stream, starting at 1.
    occurred_at  UTC creation time.
    """

    kind: ClassVar[EventKind]

    account_id: str = ""
    version: int = 0
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AccountCreated(LedgerEvent):
    """Account opened with the initial token grant."""

    kind: ClassVar[EventKind] = EventKind.CREATED

    owner_ref: str = ""
    contact: str = ""
    balance: int = INITIAL_BALANCE


@dataclass(frozen=True)
class AccountCredited(LedgerEvent):
    kind: ClassVar[EventKind] = EventKind.CREDITED

    amount: int = 0


@dataclass(frozen=True)
class AccountDebited(LedgerEvent):
    kind: ClassVar[EventKind] = EventKind.DEBITED

    amount: int = 0


@dataclass(frozen=True)
class AccountSnapshot(LedgerEvent):
    """Full account state as of ``version``."""

    kind: ClassVar[EventKind] = EventKind.SNAPSHOT

    owner_ref: str = ""
    contact: str = ""
    balance: int = 0


ALL_LEDGER_EVENTS: tuple[type[LedgerEvent], ...] = (
    AccountCreated,
    AccountCredited,
    AccountDebited,
    AccountSnapshot,
)

EVENT_TYPES: dict[EventKind, type[LedgerEvent]] = {
    cls.kind: cls for cls in ALL_LEDGER_EVENTS
}


# ---------------------------------------------------------------------------
# Body conversion
# ---------------------------------------------------------------------------

def event_to_body(event: LedgerEvent) -> dict[str, Any]:
    """Serialize an event to a JSON-safe dict including its ``kind``."""
    body: dict[str, Any] = {"kind": event.kind.value}
    for f in fields(event):
        value = getattr(event, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        body[f.name] = value
    return body


def event_from_body(body: dict[str, Any]) -> LedgerEvent:
    """Rebuild an event from a stored body.

    Unknown keys (table keys, extra attributes) are ignored.

    Raises
    ------
    CorruptItemError
        If the kind is missing or unknown, or a field fails to parse.
    """
    raw_kind = body.get("kind")
    try:
        cls = EVENT_TYPES[EventKind(raw_kind)]
    except ValueError as exc:
        raise CorruptItemError(f"Unknown event kind: {raw_kind!r}") from exc

    kwargs: dict[str, Any] = {}
    try:
        for f in fields(cls):
            if f.name not in body:
                continue
            value = body[f.name]
            if f.name == "occurred_at":
                value = parse_timestamp(value)
            elif f.name in _INT_FIELDS:
                value = int(value)
            kwargs[f.name] = value
    except (TypeError, ValueError) as exc:
        raise CorruptItemError(f"Malformed {cls.__name__} item: {exc}") from exc
    return cls(**kwargs)


def is_mutation(event: LedgerEvent) -> bool:
    """True for events that change the balance after creation."""
    return isinstance(event, (AccountCredited, AccountDebited))
