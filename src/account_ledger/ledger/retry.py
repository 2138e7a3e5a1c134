"""Caller-side retry for operations that lost an append race.

Ledger operations surface ``VersionConflictError`` instead of retrying.
``retry_on_conflict`` re-invokes the whole operation, so every attempt
reconstructs fresh state and re-validates (a debit that lost its race
may legitimately fail with ``InsufficientBalanceError`` on retry).
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from account_ledger.core.errors import VersionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 5,
    backoff_base_seconds: float = 0.01,
    backoff_max_seconds: float = 0.5,
) -> T:
    """Await ``operation()`` until it stops raising ``VersionConflictError``.

    Backoff is exponential with full jitter.  After *max_attempts* the
    last conflict is re-raised.  Other errors propagate immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except VersionConflictError as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "Giving up after %d conflicting attempts on %s",
                    attempt, exc.account_id,
                )
                raise
            delay = min(backoff_max_seconds, backoff_base_seconds * 2 ** (attempt - 1))
            logger.debug(
                "Conflict on %s (attempt %d/%d), retrying in <=%.3fs",
                exc.account_id, attempt, max_attempts, delay,
            )
            await asyncio.sleep(random.uniform(0, delay))
