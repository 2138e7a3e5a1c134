"""Application bootstrap.

Wires the table, event store, ledger operations and change forwarder
from ``Settings``.  Shared network clients (database engine, Redis
client) are created lazily, once per process, and handed to the
components that need them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .core.config import Settings, load_settings
from .core.enums import StoreBackend
from .infrastructure.event_bus import (
    InMemoryEventBus,
    RedisStreamsEventBus,
    close_redis_clients,
    create_event_bus,
)
from .infrastructure.event_store import EventStore
from .infrastructure.table import ChangeFeed, InMemoryLedgerTable, LedgerTable
from .ledger import (
    AccountLedger,
    AggregateReconstructor,
    ChangeForwarder,
    FeedPump,
    ListingIndex,
    SnapshotPolicy,
)
from .observability.logger import get_logger, setup_logging

logger = logging.getLogger(__name__)


@dataclass
class LedgerApp:
    """Everything one process needs, built once."""

    settings: Settings
    table: LedgerTable
    feed: ChangeFeed
    store: EventStore
    ledger: AccountLedger
    bus: InMemoryEventBus | RedisStreamsEventBus
    forwarder: ChangeForwarder
    pump: FeedPump


async def _build_table(settings: Settings) -> LedgerTable:
    cfg = settings.store
    if cfg.backend == StoreBackend.MEMORY:
        return InMemoryLedgerTable(table_name=cfg.table_name)

    from .storage.postgres.connection import init_engine
    from .storage.postgres.sql_table import SqlLedgerTable

    engine = await init_engine(
        cfg.database_url,
        pool_size=cfg.pool_size,
        max_overflow=cfg.max_overflow,
        echo=cfg.echo,
        create_tables=cfg.create_tables,
    )
    read_engine = None
    if cfg.read_replica_url:
        read_engine = await init_engine(
            cfg.read_replica_url,
            pool_size=cfg.pool_size,
            max_overflow=cfg.max_overflow,
            echo=cfg.echo,
        )
    return SqlLedgerTable(engine, read_engine=read_engine, table_name=cfg.table_name)


async def build_app(settings: Settings, table: LedgerTable | None = None) -> LedgerApp:
    """Wire all components from *settings*.

    *table* overrides the configured store backend; it must also
    implement ``ChangeFeed``.
    """
    settings.validate_backends()
    if table is None:
        table = await _build_table(settings)

    store = EventStore(table)
    lcfg = settings.ledger
    ledger = AccountLedger(
        store,
        AggregateReconstructor(store, probe_window=lcfg.probe_window),
        ListingIndex(table, consistent_reads=lcfg.listing_consistent_reads),
        SnapshotPolicy(lcfg.snapshot_threshold),
        initial_balance=lcfg.initial_balance,
        default_page_size=lcfg.default_page_size,
        max_page_size=lcfg.max_page_size,
    )

    fcfg = settings.forwarder
    bus = create_event_bus(
        fcfg.bus_backend,
        fcfg.redis_url,
        stream_prefix=fcfg.stream_prefix,
        max_stream_length=fcfg.max_stream_length,
    )
    forwarder = ChangeForwarder(
        bus,
        source=fcfg.source,
        event_bus_name=fcfg.event_bus_name,
        detail_type_mode=fcfg.detail_type_mode,
        fixed_detail_type=fcfg.fixed_detail_type,
        dead_letter_detail_type=fcfg.dead_letter_detail_type,
        max_attempts=fcfg.max_attempts,
        backoff_base_seconds=fcfg.backoff_base_seconds,
        backoff_max_seconds=fcfg.backoff_max_seconds,
        max_dead_letters=fcfg.max_dead_letters,
    )
    feed: ChangeFeed = table  # type: ignore[assignment]
    pump = FeedPump(
        feed,
        forwarder,
        consumer=fcfg.consumer_name,
        batch_size=fcfg.batch_size,
        poll_interval_seconds=fcfg.poll_interval_seconds,
    )
    return LedgerApp(
        settings=settings,
        table=table,
        feed=feed,
        store=store,
        ledger=ledger,
        bus=bus,
        forwarder=forwarder,
        pump=pump,
    )


async def open_app(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> LedgerApp:
    """Load settings, configure logging, and build the app."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    setup_logging(settings.observability.log_level, settings.observability.log_format)
    app = await build_app(settings)
    get_logger(__name__).debug(
        "ledger_ready",
        store=settings.store.backend.value,
        bus=settings.forwarder.bus_backend.value,
    )
    return app


async def close_app(app: LedgerApp) -> None:
    """Stop the bus and release process-wide clients."""
    await app.bus.stop()
    await close_redis_clients()
    if app.settings.store.backend == StoreBackend.SQL:
        from .storage.postgres.connection import dispose

        await dispose()


async def run_forwarder(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
    *,
    once: bool = False,
) -> int:
    """Run the change-feed pump.  Returns records consumed when *once*."""
    app = await open_app(config_path, overrides)
    await app.bus.start()
    try:
        if once:
            return await app.pump.run_once()
        logger.info("Change forwarder started consumer=%s", app.settings.forwarder.consumer_name)
        await app.pump.run_forever()
        return 0
    finally:
        await close_app(app)
