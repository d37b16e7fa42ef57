"""Per-address interest engine.

Wires the sources, the reconciler, the accrual calculators, the statement
builder and the cache together for one address and one protocol version:

1. Load previously reconciled transactions from the cache
2. Concurrently fetch protocol events, balance history and live balances
3. Reconcile supply-token transfers, skipping hashes already known
4. Merge cached, event and transfer transactions per token
5. Per token: index accrual when balance history exists, rate accrual otherwise
6. Build the daily statement and its summary
7. Write the merged transactions back to the cache

The whole run is bounded by EngineSettings.timeout_seconds. The cache is
written last, in one transaction, so an aborted run leaves it untouched.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

import aiohttp
import structlog

from tracker.accrual.days import date_key
from tracker.accrual.index_calculator import apply_live_balance, calculate_index_accrual
from tracker.accrual.rate_calculator import calculate_rate_accrual
from tracker.accrual.statement import StatementSummary, build_daily_statement, summarize_statement
from tracker.config import DEFAULT_TOKENS, AppSettings, EngineSettings, TokenConfig, tokens_for_version
from tracker.data.database import TrackerDatabase
from tracker.data.store import RateStore, TransactionCache
from tracker.exceptions import CacheError, ComputationTimeout, SourceUnavailable
from tracker.logging import get_logger, setup_logging
from tracker.models import (
    AccrualResult,
    BalanceKind,
    BalanceSnapshot,
    DailyStatement,
    ProtocolVersion,
    RateSnapshot,
    Transaction,
)
from tracker.reconcile.reconciler import (
    SourceResult,
    SourceStatus,
    TransactionReconciler,
    from_protocol_events,
    merge_transactions,
)
from tracker.sources.base import (
    BalanceHistorySource,
    LiveBalanceQuery,
    ProtocolEventSource,
    RateHistorySource,
    TransferSource,
)
from tracker.sources.gnosisscan import GnosisscanClient
from tracker.sources.moralis import MoralisClient
from tracker.sources.rates_api import RatesApiClient
from tracker.sources.rpc import RpcBalanceClient
from tracker.sources.thegraph import TheGraphClient

logger = get_logger(__name__)

ALL_TOKENS = "*"
CACHE_SOURCE = "cache"


class AccrualMethod(str, Enum):
    """Which calculator produced a token's series."""

    INDEX = "index"
    RATE = "rate"


@dataclass
class TokenReport:
    token: str
    method: AccrualMethod
    borrow: AccrualResult
    supply: AccrualResult
    daily_statement: list[DailyStatement] = field(default_factory=list)
    summary: StatementSummary = field(default_factory=StatementSummary)

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "borrow": self.borrow.to_dict(),
            "supply": self.supply.to_dict(),
            "dailyStatement": [row.to_dict() for row in self.daily_statement],
            "summary": self.summary.to_dict(),
        }


@dataclass
class InterestReport:
    """Result of one InterestEngine.compute call."""

    address: str
    version: ProtocolVersion
    per_token: dict[str, TokenReport] = field(default_factory=dict)
    transactions: list[Transaction] = field(default_factory=list)
    degraded: list[SourceResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "version": self.version.value,
            "perToken": {symbol: report.to_dict() for symbol, report in self.per_token.items()},
            "transactions": [tx.to_dict() for tx in self.transactions],
            "degraded": [d.to_dict() for d in self.degraded],
        }


class InterestEngine:
    """Computes interest reports per address.

    All collaborators are injected; see open_engine() for the production wiring.

    Usage:
        async with open_engine(AppSettings()) as engine:
            report = await engine.compute("0xabc...", tokens=["WXDAI"])
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        balance_source: BalanceHistorySource,
        rate_source: RateHistorySource,
        event_source: ProtocolEventSource,
        live_balance: LiveBalanceQuery,
        primary_transfers: TransferSource | None,
        secondary_transfers: TransferSource | None,
        cache: TransactionCache | None = None,
        rate_store: RateStore | None = None,
        tokens: tuple[TokenConfig, ...] = DEFAULT_TOKENS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._balance_source = balance_source
        self._rate_source = rate_source
        self._event_source = event_source
        self._live_balance = live_balance
        self._primary = primary_transfers
        self._secondary = secondary_transfers
        self._cache = cache
        self._rate_store = rate_store
        self._tokens = tokens
        self._clock = clock

    # ──────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────

    async def compute(
        self,
        address: str,
        tokens: list[str] | None = None,
        version: ProtocolVersion | None = None,
    ) -> InterestReport:
        """Compute the interest report for address.

        Args:
            address: User address (any case).
            tokens: Token symbols to include. Defaults to every token deployed on version.
            version: Protocol version. Defaults to V3.

        Raises:
            TotalSourceFailure: every transfer source failed for every token.
            ComputationTimeout: the run exceeded timeout_seconds.
            ValueError: a requested token is not configured for version.
        """
        version = version or ProtocolVersion.V3
        address = address.lower()
        selected = self._select_tokens(tokens, version)
        timeout = self._settings.timeout_seconds

        with structlog.contextvars.bound_contextvars(address=address, version=version.value):
            start = time.monotonic()
            try:
                report = await asyncio.wait_for(
                    self._compute(address, selected, version), timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.error("interest_computation_timeout", timeout=timeout)
                raise ComputationTimeout(
                    f"Interest computation for {address} timed out after {timeout}s"
                ) from None

            logger.info(
                "interest_computed",
                tokens=list(report.per_token),
                transactions=len(report.transactions),
                degraded=len(report.degraded),
                duration_seconds=round(time.monotonic() - start, 2),
            )
            return report

    # ──────────────────────────────────────────────
    # Orchestration
    # ──────────────────────────────────────────────

    def _select_tokens(
        self, symbols: list[str] | None, version: ProtocolVersion
    ) -> tuple[TokenConfig, ...]:
        available = tokens_for_version(version, self._tokens)
        if symbols is None:
            return tuple(available)

        by_symbol = {t.symbol: t for t in available}
        unknown = [s for s in symbols if s.upper() not in by_symbol]
        if unknown:
            raise ValueError(f"Tokens not configured for {version.value}: {', '.join(unknown)}")
        # Repeats collapse, first occurrence keeps its place
        return tuple(by_symbol[s] for s in dict.fromkeys(s.upper() for s in symbols))

    async def _compute(
        self,
        address: str,
        tokens: tuple[TokenConfig, ...],
        version: ProtocolVersion,
    ) -> InterestReport:
        degraded: list[SourceResult] = []

        cached = await self._load_cached(address, version, degraded)

        events, histories, live = await asyncio.gather(
            self._fetch_events(address, tokens, version, degraded),
            self._fetch_histories(address, tokens, version, degraded),
            self._fetch_live_balances(address, tokens, version, degraded),
        )

        known_hashes = {tx.hash for tx in cached} | {tx.hash for tx in events}
        reconciler = TransactionReconciler(self._primary, self._secondary, tokens, version)
        reconciled = await reconciler.reconcile(address, exclude_hashes=known_hashes)

        now = int(self._clock())
        report = InterestReport(address=address, version=version, degraded=degraded)

        for token in tokens:
            token_reconciled = reconciled.get(token.symbol)
            fresh = [tx for tx in events if tx.token == token.symbol]
            if token_reconciled is not None:
                degraded.extend(token_reconciled.degraded)
                fresh.extend(token_reconciled.transactions)

            merged = merge_transactions(
                [tx for tx in cached if tx.token == token.symbol],
                fresh,
            )
            report.transactions.extend(merged)
            report.per_token[token.symbol] = await self._token_report(
                token,
                version,
                merged,
                histories.get(token.symbol, {}),
                live.get(token.symbol, {}),
                now,
                degraded,
            )

        if self._cache is not None:
            try:
                await self._cache.store(address, report.transactions)
            except CacheError as e:
                # The report is complete; the next run re-fetches what was not stored
                logger.warning("cache_write_failed", address=address, error=str(e))

        return report

    async def _load_cached(
        self,
        address: str,
        version: ProtocolVersion,
        degraded: list[SourceResult],
    ) -> list[Transaction]:
        if self._cache is None:
            return []
        try:
            if not await self._cache.has(address):
                return []
            return await self._cache.load(address, version)
        except CacheError as e:
            self._record_failure(degraded, CACHE_SOURCE, ALL_TOKENS, e)
            return []

    async def _token_report(
        self,
        token: TokenConfig,
        version: ProtocolVersion,
        transactions: list[Transaction],
        history: dict[BalanceKind, list[BalanceSnapshot]],
        live: dict[BalanceKind, int],
        now: int,
        degraded: list[SourceResult],
    ) -> TokenReport:
        reserve_symbol = token.reserve_symbols.get(version)

        if any(history.values()):
            method = AccrualMethod.INDEX
            results: dict[BalanceKind, AccrualResult] = {}
            for kind in BalanceKind:
                result = calculate_index_accrual(history.get(kind, []), kind, reserve_symbol)
                if kind in live:
                    result = apply_live_balance(result, live[kind], now)
                results[kind] = result
            borrow, supply = results[BalanceKind.DEBT], results[BalanceKind.SUPPLY]
        else:
            method = AccrualMethod.RATE
            if transactions:
                rates = await self._load_rates(token, transactions, now, degraded)
            else:
                rates = {}
            days_per_year = self._settings.days_per_year
            borrow = calculate_rate_accrual(
                transactions, rates, BalanceKind.DEBT, now=now, days_per_year=days_per_year
            )
            supply = calculate_rate_accrual(
                transactions, rates, BalanceKind.SUPPLY, now=now, days_per_year=days_per_year
            )

        statement = build_daily_statement(borrow.details, supply.details)
        return TokenReport(
            token=token.symbol,
            method=method,
            borrow=borrow,
            supply=supply,
            daily_statement=statement,
            summary=summarize_statement(statement),
        )

    # ──────────────────────────────────────────────
    # Source fetches (failures degrade, never abort)
    # ──────────────────────────────────────────────

    def _record_failure(
        self,
        degraded: list[SourceResult],
        source: str,
        token: str,
        error: SourceUnavailable | CacheError,
    ) -> None:
        logger.warning("source_degraded", source=source, token=token, error=str(error))
        degraded.append(SourceResult(source, token, SourceStatus.FAILED, error=str(error)))

    async def _fetch_events(
        self,
        address: str,
        tokens: tuple[TokenConfig, ...],
        version: ProtocolVersion,
        degraded: list[SourceResult],
    ) -> list[Transaction]:
        try:
            events = await self._event_source.get_protocol_events(address, version)
        except SourceUnavailable as e:
            self._record_failure(degraded, e.source, ALL_TOKENS, e)
            return []
        return from_protocol_events(events, tokens)

    async def _fetch_histories(
        self,
        address: str,
        tokens: tuple[TokenConfig, ...],
        version: ProtocolVersion,
        degraded: list[SourceResult],
    ) -> dict[str, dict[BalanceKind, list[BalanceSnapshot]]]:
        async def fetch(token: TokenConfig, kind: BalanceKind) -> list[BalanceSnapshot] | None:
            try:
                return await self._balance_source.get_balance_snapshots(
                    address, token.reserve_symbols[version], kind, version
                )
            except SourceUnavailable as e:
                self._record_failure(degraded, e.source, token.symbol, e)
                return None

        pairs = [(token, kind) for token in tokens for kind in BalanceKind]
        results = await asyncio.gather(*(fetch(token, kind) for token, kind in pairs))

        histories: dict[str, dict[BalanceKind, list[BalanceSnapshot]]] = {}
        for (token, kind), snapshots in zip(pairs, results):
            if snapshots is not None:
                histories.setdefault(token.symbol, {})[kind] = snapshots
        return histories

    async def _fetch_live_balances(
        self,
        address: str,
        tokens: tuple[TokenConfig, ...],
        version: ProtocolVersion,
        degraded: list[SourceResult],
    ) -> dict[str, dict[BalanceKind, int]]:
        contracts: list[tuple[TokenConfig, BalanceKind, str]] = []
        for token in tokens:
            if version in token.debt_addresses:
                contracts.append((token, BalanceKind.DEBT, token.debt_addresses[version]))
            contracts.append((token, BalanceKind.SUPPLY, token.supply_addresses[version]))

        async def fetch(token: TokenConfig, contract: str) -> int | None:
            try:
                return await self._live_balance.get_current_balance(address, contract)
            except SourceUnavailable as e:
                self._record_failure(degraded, e.source, token.symbol, e)
                return None

        results = await asyncio.gather(
            *(fetch(token, contract) for token, _, contract in contracts)
        )

        live: dict[str, dict[BalanceKind, int]] = {}
        for (token, kind, _), balance in zip(contracts, results):
            if balance is not None:
                live.setdefault(token.symbol, {})[kind] = balance
        return live

    async def _load_rates(
        self,
        token: TokenConfig,
        transactions: list[Transaction],
        now: int,
        degraded: list[SourceResult],
    ) -> dict[str, RateSnapshot]:
        """Daily rates from the first transaction's day, cache first then the rates API.

        The API is asked only from the latest cached day onward (that day's
        average may still have been moving when it was stored). An unreadable
        rate cache degrades to fetching everything from the API.
        """
        from_date = date_key(min(tx.timestamp for tx in transactions))

        rates: dict[str, RateSnapshot] = {}
        fetch_from = from_date
        if self._rate_store is not None:
            try:
                rates = await self._rate_store.load_rates(token.symbol, from_date)
                latest = await self._rate_store.latest_date(token.symbol)
            except CacheError as e:
                self._record_failure(degraded, CACHE_SOURCE, token.symbol, e)
                rates, latest = {}, None
            if date_key(now) in rates:
                return rates
            if latest is not None:
                fetch_from = max(latest, from_date)

        try:
            fresh = await self._rate_source.get_rate_snapshots(token.symbol, fetch_from)
        except SourceUnavailable as e:
            self._record_failure(degraded, e.source, token.symbol, e)
            return rates

        if self._rate_store is not None and fresh:
            try:
                await self._rate_store.store_rates(token.symbol, fresh)
            except CacheError as e:
                logger.warning("rate_cache_write_failed", token=token.symbol, error=str(e))
        return {**rates, **fresh}


@asynccontextmanager
async def open_engine(
    settings: AppSettings,
    tokens: tuple[TokenConfig, ...] = DEFAULT_TOKENS,
) -> AsyncIterator[InterestEngine]:
    """Build an InterestEngine wired to the real sources and the SQLite cache.

    Configures logging, opens one shared aiohttp session and, when the cache
    is enabled, the database. Everything is closed on exit.
    """
    setup_logging(
        settings.log_level,
        settings.log_format,
        secrets=settings.sources.secret_values(),
    )

    database: TrackerDatabase | None = None
    if settings.cache.enabled:
        database = TrackerDatabase(settings.cache.db_path)
        await database.connect()

    try:
        async with aiohttp.ClientSession() as session:
            thegraph = TheGraphClient(session, settings.sources)
            moralis = MoralisClient(session, settings.sources)
            if not moralis.configured:
                logger.warning(
                    "primary_transfer_source_not_configured",
                    source=moralis.name,
                    note="Falling back to gnosisscan for every token.",
                )

            yield InterestEngine(
                settings.engine,
                balance_source=thegraph,
                rate_source=RatesApiClient(session, settings.sources, tokens),
                event_source=thegraph,
                live_balance=RpcBalanceClient(session, settings.sources),
                primary_transfers=moralis if moralis.configured else None,
                secondary_transfers=GnosisscanClient(session, settings.sources),
                cache=TransactionCache(database) if database is not None else None,
                rate_store=RateStore(database) if database is not None else None,
                tokens=tokens,
            )
    finally:
        if database is not None:
            await database.close()
