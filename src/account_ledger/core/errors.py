"""Custom exception hierarchy for the ledger."""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception for all ledger errors."""


# --- Configuration ---
class ConfigError(LedgerError):
    """Invalid or missing configuration."""


# --- Account ---
class AccountError(LedgerError):
    """Business-rule failure on a single account."""


class AccountNotFoundError(AccountError):
    """No reconstructable state exists for the account."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class AccountAlreadyExistsError(AccountError):
    """Identifier collision on account creation."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} already exists")


class InsufficientBalanceError(AccountError):
    """Debit exceeds the current balance."""

    def __init__(self, account_id: str, balance: int, amount: int):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient balance on {account_id}: "
            f"balance={balance}, requested={amount}"
        )


class InvalidAmountError(AccountError):
    """Amount is not a positive integer."""


# --- Concurrency ---
class VersionConflictError(LedgerError):
    """A conditional append lost the race for one or more versions."""

    def __init__(self, account_id: str, versions: tuple[int, ...] = ()):
        self.account_id = account_id
        self.versions = versions
        super().__init__(
            f"Version conflict on {account_id} for versions {list(versions)}"
        )


# --- Listing ---
class InvalidCursorError(LedgerError):
    """Pagination cursor could not be decoded."""


# --- Infrastructure ---
class StoreError(LedgerError):
    """Durable store error."""


class ConditionalCheckFailedError(StoreError):
    """At least one item in a conditional batch already existed.

    Raised by table backends; translated by the event store into
    ``VersionConflictError`` or ``AccountAlreadyExistsError``.
    """

    def __init__(self, keys: tuple[tuple[str, str], ...] = ()):
        self.keys = keys
        super().__init__(f"Conditional check failed for {list(keys)}")


class StoreUnavailableError(StoreError):
    """Transport or database failure talking to the store."""


class EventBusError(LedgerError):
    """Event bus error."""


class EventBusUnavailableError(EventBusError):
    """Transport failure publishing to the event bus."""


class ForwardingError(EventBusError):
    """Change forwarder exhausted its publish retries."""

    def __init__(self, failed: int, attempts: int):
        self.failed = failed
        self.attempts = attempts
        super().__init__(
            f"{failed} event(s) not delivered after {attempts} attempt(s)"
        )


class CorruptItemError(StoreError):
    """A stored item could not be decoded into a ledger event."""
