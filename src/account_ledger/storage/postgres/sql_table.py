"""PostgreSQL implementation of ``LedgerTable`` and ``ChangeFeed``.

Conditional batch writes map onto a single transaction of plain
INSERTs: the ``(pk, sk)`` primary key rejects any item whose key is
taken, the transaction rolls back, and nothing becomes visible.

The change feed is a transactional outbox.  Every item written also
inserts a ``ledger_changes`` row in the same transaction, so a feed
record exists if and only if its item was committed.  Writers take a
transaction-scoped advisory lock before the outbox insert so that feed
sequences commit in order and a checkpointed reader never skips one.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import func, insert, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from account_ledger.core.errors import (
    ConditionalCheckFailedError,
    StoreUnavailableError,
)
from account_ledger.infrastructure.table import (
    ChangeRecord,
    Item,
    Key,
    QueryPage,
    item_key,
)

from .models import FeedCheckpointRecord, LedgerChangeRecord, LedgerItemRecord

logger = logging.getLogger(__name__)

# Arbitrary constant shared by every writer of ledger_changes.
_OUTBOX_LOCK_ID = 0x4C454447


def _body(item: Item) -> dict[str, Any]:
    return {k: v for k, v in item.items() if k not in ("pk", "sk")}


class SqlLedgerTable:
    """Table and change feed backed by PostgreSQL via SQLAlchemy async.

    Parameters
    ----------
    engine
        Process-wide primary engine.  Serves writes and consistent reads.
    read_engine
        Optional replica engine for ``consistent=False`` queries.
    table_name
        Source tag stamped on change-feed records.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        read_engine: AsyncEngine | None = None,
        table_name: str = "Accounts",
    ) -> None:
        self._table_name = table_name
        self._sessions = async_sessionmaker(bind=engine, expire_on_commit=False)
        self._replica_sessions = (
            async_sessionmaker(bind=read_engine, expire_on_commit=False)
            if read_engine is not None
            else self._sessions
        )

    @property
    def table_name(self) -> str:
        return self._table_name

    @asynccontextmanager
    async def _session(
        self, operation: str, *, replica: bool = False, **context: Any,
    ) -> AsyncIterator[AsyncSession]:
        """Yield a session; translate transport failures."""
        factory = self._replica_sessions if replica else self._sessions
        try:
            async with factory() as session:
                yield session
        except IntegrityError:
            raise
        except (DBAPIError, OSError) as exc:
            logger.exception(
                "Store %s failed on %s context=%s",
                operation, self._table_name, context,
            )
            raise StoreUnavailableError(f"{operation} failed: {exc}") from exc

    # -- LedgerTable -------------------------------------------------------

    async def transact_put(self, items: list[Item]) -> None:
        keys = tuple(item_key(item) for item in items)
        item_rows = [
            {"pk": item["pk"], "sk": item["sk"], "kind": item.get("kind"), "body": _body(item)}
            for item in items
        ]
        change_rows = [
            {"event_source": self._table_name, "pk": item["pk"], "sk": item["sk"], "new_image": dict(item)}
            for item in items
        ]
        try:
            async with self._session("transact_put", keys=keys) as session:
                async with session.begin():
                    await session.execute(insert(LedgerItemRecord), item_rows)
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(:lock_id)"),
                        {"lock_id": _OUTBOX_LOCK_ID},
                    )
                    await session.execute(insert(LedgerChangeRecord), change_rows)
        except IntegrityError as exc:
            logger.debug("Conditional put rejected for %s", keys)
            raise ConditionalCheckFailedError(keys) from exc

    async def query(
        self,
        pk: str,
        *,
        limit: int,
        descending: bool = False,
        consistent: bool = True,
        exclusive_start_key: Key | None = None,
    ) -> QueryPage:
        sk_col = LedgerItemRecord.sk
        stmt = select(LedgerItemRecord).where(LedgerItemRecord.pk == pk)
        if exclusive_start_key is not None:
            start = exclusive_start_key["sk"]
            stmt = stmt.where(sk_col < start if descending else sk_col > start)
        stmt = stmt.order_by(sk_col.desc() if descending else sk_col.asc())
        # One extra row tells us whether another page exists.
        stmt = stmt.limit(limit + 1)

        async with self._session("query", replica=not consistent, pk=pk) as session:
            rows = (await session.execute(stmt)).scalars().all()

        page = rows[:limit]
        items = [{"pk": r.pk, "sk": r.sk, **r.body} for r in page]
        last_key: Key | None = None
        if page and len(rows) > limit:
            last_key = {"pk": pk, "sk": page[-1].sk}
        return QueryPage(items=items, last_evaluated_key=last_key)

    # -- ChangeFeed --------------------------------------------------------

    async def read_batch(self, after_sequence: int, limit: int) -> list[ChangeRecord]:
        stmt = (
            select(LedgerChangeRecord)
            .where(LedgerChangeRecord.sequence > after_sequence)
            .order_by(LedgerChangeRecord.sequence.asc())
            .limit(limit)
        )
        async with self._session("read_batch", after_sequence=after_sequence) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            ChangeRecord(
                sequence=r.sequence,
                event_source=r.event_source,
                new_image=r.new_image,
                created_at=r.created_at,
            )
            for r in rows
        ]

    async def load_checkpoint(self, consumer: str) -> int:
        async with self._session("load_checkpoint", consumer=consumer) as session:
            record = await session.get(FeedCheckpointRecord, consumer)
        return record.last_sequence if record is not None else 0

    async def save_checkpoint(self, consumer: str, sequence: int) -> None:
        stmt = pg_insert(FeedCheckpointRecord).values(
            consumer=consumer, last_sequence=sequence,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FeedCheckpointRecord.consumer],
            set_={"last_sequence": stmt.excluded.last_sequence, "updated_at": func.now()},
        )
        async with self._session("save_checkpoint", consumer=consumer, sequence=sequence) as session:
            async with session.begin():
                await session.execute(stmt)
