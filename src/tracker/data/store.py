"""Typed SQLite read/write abstraction for cached transactions and daily rates.

All SQL is isolated behind TransactionCache and RateStore.

CRITICAL: Amounts and rates are stored as TEXT in SQLite and restored as int /
Decimal on read. Never round-trip them through REAL.
"""

import time
from decimal import Decimal

import aiosqlite

from tracker.data.database import TrackerDatabase
from tracker.exceptions import CacheError
from tracker.logging import get_logger
from tracker.models import Direction, ProtocolVersion, RateSnapshot, Transaction, TransactionType

logger = get_logger(__name__)


class TransactionCache:
    """Per-address cache of reconciled transactions.

    Rows are unique on (address, hash, type, token, version); storing a
    transaction twice is a no-op. A store call commits all rows or none.

    Usage:
        async with TrackerDatabase("data/transactions.db") as database:
            cache = TransactionCache(database)
            if await cache.has(address):
                cached = await cache.load(address)
    """

    def __init__(self, database: TrackerDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def store(self, address: str, transactions: list[Transaction]) -> int:
        """Insert transactions for address in a single transaction.

        Returns the number of newly inserted rows (duplicates are ignored).
        Raises CacheError after rolling back if any row fails.
        """
        if not transactions:
            return 0

        now = int(time.time())
        data = [
            (
                address.lower(),
                tx.hash.lower(),
                tx.type.value,
                tx.token,
                tx.version.value,
                str(tx.amount),
                tx.timestamp,
                tx.direction.value,
                now,
            )
            for tx in transactions
        ]

        async with self._database.transaction() as db:
            cursor = await db.executemany(
                "INSERT OR IGNORE INTO user_transactions "
                "(user_address, tx_hash, type, token, version, amount, timestamp, direction, "
                "created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                data,
            )
            inserted = cursor.rowcount

        logger.debug(
            "cached_transactions_stored",
            address=address.lower(),
            total=len(transactions),
            inserted=inserted,
        )
        return inserted

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def has(self, address: str) -> bool:
        try:
            cursor = await self._database.db.execute(
                "SELECT 1 FROM user_transactions WHERE user_address = ? LIMIT 1",
                (address.lower(),),
            )
            return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise CacheError(f"cache read failed: {e}") from e

    async def load(
        self,
        address: str,
        version: ProtocolVersion | None = None,
    ) -> list[Transaction]:
        """Load cached transactions for address ordered by timestamp.

        Optionally restricted to one protocol version.
        """
        conditions = ["user_address = ?"]
        params: list = [address.lower()]
        if version is not None:
            conditions.append("version = ?")
            params.append(version.value)

        where = " AND ".join(conditions)
        try:
            cursor = await self._database.db.execute(
                f"SELECT tx_hash, amount, timestamp, type, token, version, direction "
                f"FROM user_transactions WHERE {where} ORDER BY timestamp ASC, tx_hash ASC",
                params,
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise CacheError(f"cache read failed: {e}") from e

        return [
            Transaction(
                hash=row[0],
                amount=int(row[1]),
                timestamp=row[2],
                type=TransactionType(row[3]),
                token=row[4],
                version=ProtocolVersion(row[5]),
                direction=Direction(row[6]),
            )
            for row in rows
        ]


class RateStore:
    """Cache of daily average rates per token, keyed by YYYYMMDD."""

    def __init__(self, database: TrackerDatabase) -> None:
        self._database = database

    async def store_rates(self, token: str, rates: dict[str, RateSnapshot]) -> int:
        """Insert or refresh daily rates for token. Returns the number of rows written.

        The current day's average keeps moving, so existing rows are replaced.
        """
        if not rates:
            return 0

        data = [
            (
                token,
                snapshot.date,
                snapshot.timestamp,
                str(snapshot.liquidity_rate_avg),
                str(snapshot.variable_borrow_rate_avg),
                (
                    str(snapshot.utilization_rate_avg)
                    if snapshot.utilization_rate_avg is not None
                    else None
                ),
            )
            for snapshot in rates.values()
        ]
        async with self._database.transaction() as db:
            await db.executemany(
                "INSERT OR REPLACE INTO interest_rates "
                "(token, date, timestamp, liquidity_rate_avg, variable_borrow_rate_avg, "
                "utilization_rate_avg) VALUES (?, ?, ?, ?, ?, ?)",
                data,
            )

        logger.debug("rates_stored", token=token, days=len(data))
        return len(data)

    async def load_rates(self, token: str, from_date: str | None = None) -> dict[str, RateSnapshot]:
        conditions = ["token = ?"]
        params: list = [token]
        if from_date is not None:
            conditions.append("date >= ?")
            params.append(from_date)

        where = " AND ".join(conditions)
        try:
            cursor = await self._database.db.execute(
                f"SELECT date, timestamp, liquidity_rate_avg, variable_borrow_rate_avg, "
                f"utilization_rate_avg FROM interest_rates WHERE {where} ORDER BY date ASC",
                params,
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise CacheError(f"rate cache read failed: {e}") from e

        return {
            row[0]: RateSnapshot(
                date=row[0],
                timestamp=row[1],
                liquidity_rate_avg=Decimal(row[2]),
                variable_borrow_rate_avg=Decimal(row[3]),
                utilization_rate_avg=Decimal(row[4]) if row[4] is not None else None,
            )
            for row in rows
        }

    async def latest_date(self, token: str) -> str | None:
        """Return the most recent cached date for token, or None."""
        try:
            cursor = await self._database.db.execute(
                "SELECT MAX(date) FROM interest_rates WHERE token = ?",
                (token,),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise CacheError(f"rate cache read failed: {e}") from e
        return row[0] if row is not None else None
