"""Async SQLite database manager for the transaction and rate cache.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance. The connection runs in autocommit
mode; writes that must be atomic go through transaction().
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from tracker.exceptions import CacheError
from tracker.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS user_transactions (
    user_address TEXT NOT NULL,
    tx_hash TEXT NOT NULL,
    type TEXT NOT NULL,
    token TEXT NOT NULL,
    version TEXT NOT NULL,
    amount TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    direction TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (user_address, tx_hash, type, token, version)
);

CREATE TABLE IF NOT EXISTS interest_rates (
    token TEXT NOT NULL,
    date TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    liquidity_rate_avg TEXT NOT NULL,
    variable_borrow_rate_avg TEXT NOT NULL,
    utilization_rate_avg TEXT,
    PRIMARY KEY (token, date)
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_user_transactions_address_ts
    ON user_transactions(user_address, timestamp);

CREATE INDEX IF NOT EXISTS idx_interest_rates_token_ts
    ON interest_rates(token, timestamp);
"""


class TrackerDatabase:
    """Async SQLite connection manager for the cache.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup. Constructed explicitly and
    injected into the stores; there is no module-level handle.

    Usage:
        async with TrackerDatabase("data/transactions.db") as db:
            cache = TransactionCache(db)
            await cache.store(address, transactions)
    """

    def __init__(self, db_path: str = "data/transactions.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema.

        Creates the parent directory if it does not exist.
        """
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path, isolation_level=None)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("cache_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("cache_db_closed", db_path=self._db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed writes in one BEGIN ... COMMIT, rolling back on any error.

        sqlite errors are re-raised as CacheError; nothing is half-committed.
        Writers are serialised so concurrent coroutines never share a transaction.
        """
        async with self._write_lock:
            db = self.db
            await db.execute("BEGIN")
            try:
                yield db
            except BaseException as e:
                await db.execute("ROLLBACK")
                if isinstance(e, aiosqlite.Error):
                    raise CacheError(f"cache write failed: {e}") from e
                raise
            else:
                try:
                    await db.execute("COMMIT")
                except aiosqlite.Error as e:
                    await db.execute("ROLLBACK")
                    raise CacheError(f"cache commit failed: {e}") from e

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)

    async def _ensure_schema_version(self) -> None:
        """Insert schema version if not already set."""
        assert self._connection is not None
        cursor = await self._connection.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
