"""Ledger operations: create, get, list, credit, debit.

Every mutation follows the same path:

1.  Reconstruct current state (strongly consistent read).
2.  Validate business rules against it.
3.  Build the next event(s), with a snapshot ahead of the mutation when
    the ``SnapshotPolicy`` says one is due.
4.  Conditionally append them as a single batch.

A lost race surfaces as ``VersionConflictError``.  Operations never retry
internally; callers that want retry semantics wrap the call in
``retry_on_conflict`` so each attempt reconstructs fresh state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

import structlog

from account_ledger.core.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    VersionConflictError,
)
from account_ledger.core.ids import new_id, utc_now
from account_ledger.domain.account import Account, ListingEntry, fold, to_snapshot
from account_ledger.domain.events import (
    INITIAL_BALANCE,
    AccountCreated,
    AccountCredited,
    AccountDebited,
)
from account_ledger.infrastructure.event_store import EventStore
from account_ledger.ledger.listing import AccountPage, ListingIndex
from account_ledger.ledger.reconstructor import AggregateReconstructor
from account_ledger.ledger.snapshot_policy import SnapshotPolicy

logger = logging.getLogger(__name__)


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")


class AccountLedger:
    """Operation surface of the ledger.

    Parameters
    ----------
    store
        Event store the account streams are appended to.
    reconstructor
        Reads current state; must share *store*'s table.
    listing
        Read side of the listing partition.
    snapshot_policy
        Decides when a mutation carries a snapshot.
    initial_balance
        Tokens granted by ``CREATED``.
    default_page_size, max_page_size
        Bounds for ``list_accounts``.
    id_factory, clock
        Injection points for deterministic tests.
    """

    def __init__(
        self,
        store: EventStore,
        reconstructor: AggregateReconstructor,
        listing: ListingIndex,
        snapshot_policy: SnapshotPolicy,
        *,
        initial_balance: int = INITIAL_BALANCE,
        default_page_size: int = 3,
        max_page_size: int = 100,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._reconstructor = reconstructor
        self._listing = listing
        self._policy = snapshot_policy
        self._initial_balance = initial_balance
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._new_id = id_factory
        self._now = clock

    # -- Reads -------------------------------------------------------------

    async def get_account(self, account_id: str) -> Account | None:
        """Return the current state of *account_id*, or ``None``."""
        result = await self._reconstructor.reconstruct(account_id)
        if result is None:
            logger.info("Account not found account_id=%s", account_id)
            return None
        return result.account

    async def list_accounts(
        self,
        page_size: int | None = None,
        cursor: str | None = None,
    ) -> AccountPage:
        """Return one page of listing entries and the cursor for the next.

        The listing partition may be read eventually consistently, so an
        account created moments ago can be missing from the page.
        """
        size = page_size or self._default_page_size
        size = max(1, min(size, self._max_page_size))
        return await self._listing.page(size, cursor)

    # -- Mutations ---------------------------------------------------------

    async def create_account(self, owner_ref: str, contact: str) -> Account:
        """Open a new account holding the initial grant.

        Raises
        ------
        AccountAlreadyExistsError
            If the generated identifier is already taken.
        """
        account_id = self._new_id()
        with structlog.contextvars.bound_contextvars(
            operation="create_account", account_id=account_id,
        ):
            now = self._now()
            created = AccountCreated(
                account_id=account_id,
                version=1,
                occurred_at=now,
                owner_ref=owner_ref,
                contact=contact,
                balance=self._initial_balance,
            )
            snapshot = to_snapshot(fold(created), 2, now)
            entry = ListingEntry(account_id=account_id, owner_ref=owner_ref, contact=contact)

            try:
                await self._store.append(account_id, [created, snapshot], listing=entry)
            except VersionConflictError as exc:
                logger.warning("Account id collision account_id=%s", account_id)
                raise AccountAlreadyExistsError(account_id) from exc

            logger.info("Account created account_id=%s", account_id)
            return fold(snapshot)

    async def credit_account(self, account_id: str, amount: int) -> Account:
        """Add *amount* tokens.

        Raises
        ------
        InvalidAmountError, AccountNotFoundError, VersionConflictError
        """
        _validate_amount(amount)
        with structlog.contextvars.bound_contextvars(
            operation="credit_account", account_id=account_id, amount=amount,
        ):
            return await self._mutate(account_id, amount, debit=False)

    async def debit_account(self, account_id: str, amount: int) -> Account:
        """Remove *amount* tokens if the balance covers it.

        Raises
        ------
        InvalidAmountError, AccountNotFoundError, InsufficientBalanceError,
        VersionConflictError
        """
        _validate_amount(amount)
        with structlog.contextvars.bound_contextvars(
            operation="debit_account", account_id=account_id, amount=amount,
        ):
            return await self._mutate(account_id, amount, debit=True)

    async def _mutate(self, account_id: str, amount: int, *, debit: bool) -> Account:
        current = await self._reconstructor.reconstruct(account_id)
        if current is None:
            raise AccountNotFoundError(account_id)

        state = current.account
        if debit and state.balance < amount:
            logger.info(
                "Debit rejected account_id=%s balance=%d amount=%d",
                account_id, state.balance, amount,
            )
            raise InsufficientBalanceError(account_id, state.balance, amount)

        now = self._now()
        batch = []
        version = state.version
        snapshot = self._policy.snapshot_for(state, current.events_since_snapshot, now)
        if snapshot is not None:
            batch.append(snapshot)
            version = snapshot.version

        event_cls = AccountDebited if debit else AccountCredited
        batch.append(event_cls(
            account_id=account_id,
            version=version + 1,
            occurred_at=now,
            amount=amount,
        ))
        await self._store.append(account_id, batch)

        updated = await self._reconstructor.reconstruct(account_id)
        if updated is None:
            raise AccountNotFoundError(account_id)
        logger.info(
            "Account %s account_id=%s amount=%d balance=%d version=%d snapshot=%s",
            "debited" if debit else "credited",
            account_id, amount, updated.account.balance, updated.account.version,
            snapshot is not None,
        )
        return updated.account
