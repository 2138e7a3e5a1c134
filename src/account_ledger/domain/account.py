"""Account aggregate and the fold that rebuilds it from events.

The fold is a pure function: ``fold(base, events)`` starts from a
``SNAPSHOT`` (or ``CREATED``) event and applies every later event in
ascending version order.  Each ``EventKind`` has exactly one handler in
``_HANDLERS``; importing this module fails if a kind is left unhandled.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

from pydantic import BaseModel

from .events import (
    AccountCreated,
    AccountCredited,
    AccountDebited,
    AccountSnapshot,
    LedgerEvent,
)
from account_ledger.core.enums import EventKind


class Account(BaseModel):
    """Reconstructed account state.  Never stored outside snapshots."""

    model_config = {"frozen": True}

    account_id: str
    owner_ref: str
    contact: str
    balance: int
    version: int
    updated_at: datetime


def _as_base(state: Account | None, event: LedgerEvent) -> Account:
    assert isinstance(event, (AccountCreated, AccountSnapshot))
    return Account(
        account_id=event.account_id,
        owner_ref=event.owner_ref,
        contact=event.contact,
        balance=event.balance,
        version=event.version,
        updated_at=event.occurred_at,
    )


def _credit(state: Account | None, event: LedgerEvent) -> Account:
    assert state is not None and isinstance(event, AccountCredited)
    return state.model_copy(update={
        "balance": state.balance + event.amount,
        "version": event.version,
        "updated_at": event.occurred_at,
    })


def _debit(state: Account | None, event: LedgerEvent) -> Account:
    assert state is not None and isinstance(event, AccountDebited)
    return state.model_copy(update={
        "balance": state.balance - event.amount,
        "version": event.version,
        "updated_at": event.occurred_at,
    })


_HANDLERS: dict[EventKind, Callable[[Account | None, LedgerEvent], Account]] = {
    EventKind.CREATED: _as_base,
    EventKind.SNAPSHOT: _as_base,
    EventKind.CREDITED: _credit,
    EventKind.DEBITED: _debit,
}

_unhandled = set(EventKind) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(
        f"Account fold has no handler for {sorted(k.value for k in _unhandled)}"
    )


def apply(state: Account | None, event: LedgerEvent) -> Account:
    """Apply one event to *state* and return the new state."""
    return _HANDLERS[event.kind](state, event)


def fold(base: LedgerEvent, events: Iterable[LedgerEvent] = ()) -> Account:
    """Fold *events* (ascending by version) onto the *base* event."""
    state = apply(None, base)
    for event in events:
        state = apply(state, event)
    return state


def to_snapshot(state: Account, version: int, occurred_at: datetime) -> AccountSnapshot:
    """Capture *state* as a snapshot event occupying *version*."""
    return AccountSnapshot(
        account_id=state.account_id,
        version=version,
        occurred_at=occurred_at,
        owner_ref=state.owner_ref,
        contact=state.contact,
        balance=state.balance,
    )


class ListingEntry(BaseModel):
    """Denormalized identity of an account, used only for enumeration."""

    model_config = {"frozen": True}

    account_id: str
    owner_ref: str
    contact: str
