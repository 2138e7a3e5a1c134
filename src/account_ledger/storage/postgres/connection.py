"""Process-wide async engines for the ledger database.

One engine per database URL: the primary, plus an optional read replica
serving eventually consistent listing reads.  Engines are created on
first use, shared by every table in the process, and disposed together
on shutdown.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .models import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine registry, keyed by URL
# ---------------------------------------------------------------------------
_engines: dict[str, AsyncEngine] = {}


def _redact(url: str) -> str:
    return url.split("@")[-1]


def create_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """Build an unregistered engine for *url* (``postgresql+asyncpg://``).

    Pooled connections are pre-pinged and recycled every 30 minutes.
    """
    engine = create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    logger.info("Ledger engine ready for %s (pool_size=%s)", _redact(url), pool_size)
    return engine


async def init_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
    create_tables: bool = False,
) -> AsyncEngine:
    """Return the registered engine for *url*, creating it on first call.

    With *create_tables*, the ledger tables are created when missing;
    deployed databases are migrated with Alembic instead.
    """
    if url in _engines:
        return _engines[url]

    engine = create_engine(url, pool_size=pool_size, max_overflow=max_overflow, echo=echo)
    _engines[url] = engine
    if create_tables:
        await create_all(engine)
    return engine


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger tables created / verified.")


async def dispose() -> None:
    """Dispose every registered engine."""
    while _engines:
        url, engine = _engines.popitem()
        await engine.dispose()
        logger.info("Engine for %s disposed.", _redact(url))
