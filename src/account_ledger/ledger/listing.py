"""Listing index: paginated enumeration of accounts.

Entries live in one fixed partition ordered by
``account#<contact>#<owner_ref>#<account_id>``.  They are written once,
in the same batch as the account's ``CREATED`` event, and never change.

Cursors are the base64 encoding of the JSON last-evaluated key.  Callers
must treat them as opaque strings.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any

from pydantic import BaseModel, Field

from account_ledger.core.errors import InvalidCursorError
from account_ledger.domain.account import ListingEntry
from account_ledger.infrastructure.event_store import LISTING_PARTITION
from account_ledger.infrastructure.table import Key, LedgerTable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cursor codec
# ---------------------------------------------------------------------------

def encode_cursor(key: Key) -> str:
    raw = json.dumps(key, separators=(",", ":"), sort_keys=True)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Key:
    """Decode *cursor* back into the key it was built from.

    Raises
    ------
    InvalidCursorError
        If the cursor is not base64 JSON of a ``{"pk", "sk"}`` key.
    """
    try:
        raw = base64.b64decode(cursor.encode("ascii"), validate=True)
        key: Any = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCursorError("Malformed pagination cursor") from exc

    if (
        not isinstance(key, dict)
        or not isinstance(key.get("pk"), str)
        or not isinstance(key.get("sk"), str)
        or not all(isinstance(v, str) for v in key.values())
    ):
        raise InvalidCursorError("Malformed pagination cursor")
    return key


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class AccountPage(BaseModel):
    entries: list[ListingEntry] = Field(default_factory=list)
    next_cursor: str | None = None


class ListingIndex:
    """Read side of the listing partition."""

    def __init__(self, table: LedgerTable, *, consistent_reads: bool = False) -> None:
        self._table = table
        self._consistent = consistent_reads

    async def page(self, page_size: int, cursor: str | None = None) -> AccountPage:
        start_key = None
        if cursor:
            start_key = decode_cursor(cursor)
            if start_key["pk"] != LISTING_PARTITION:
                raise InvalidCursorError("Cursor does not belong to the account listing")

        result = await self._table.query(
            LISTING_PARTITION,
            limit=page_size,
            consistent=self._consistent,
            exclusive_start_key=start_key,
        )
        entries = [
            ListingEntry(
                account_id=item["account_id"],
                owner_ref=item["owner_ref"],
                contact=item["contact"],
            )
            for item in result.items
        ]
        if not entries:
            logger.debug("No accounts found after cursor=%s", cursor)

        next_cursor = (
            encode_cursor(result.last_evaluated_key)
            if result.last_evaluated_key is not None
            else None
        )
        return AccountPage(entries=entries, next_cursor=next_cursor)
