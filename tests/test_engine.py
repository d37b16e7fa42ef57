"""Tests for the per-address interest engine.

All collaborators are AsyncMocks; the cache tests use a real SQLite file.

Tests verify:
- Index accrual is chosen when balance history exists, with a live-balance point
- Rate accrual is the fallback, with rates fetched from the first transaction's day
- A failing history source degrades the report instead of aborting it
- TotalSourceFailure propagates when no transfer source answers
- A run past the timeout raises ComputationTimeout and writes nothing
- An unreadable cache degrades the report; a failed cache write does not lose it
- Reconciled transactions are cached and reused on the next run
- Rates are fetched only from the latest cached day onward
- Unknown tokens are rejected before any source is called; repeated symbols collapse
- open_engine wires Moralis only when it has an API key
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr

from tracker.config import DEFAULT_TOKENS, AppSettings, CacheSettings, EngineSettings
from tracker.data.database import TrackerDatabase
from tracker.data.store import RateStore, TransactionCache
from tracker.engine import AccrualMethod, InterestEngine, open_engine
from tracker.exceptions import CacheError, ComputationTimeout, SourceUnavailable, TotalSourceFailure
from tracker.models import (
    RAY,
    BalanceKind,
    BalanceSnapshot,
    DetailSource,
    ProtocolVersion,
    RateSnapshot,
    RawTransfer,
)
from tracker.reconcile.reconciler import SourceStatus
from tracker.sources.base import (
    BalanceHistorySource,
    LiveBalanceQuery,
    ProtocolEventSource,
    RateHistorySource,
    TransferSource,
)

USER = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"
DAY1 = 1_704_067_200  # 2024-01-01 00:00:00 UTC
DAY = 86_400
WAD = 10**18
V3 = ProtocolVersion.V3

WXDAI = next(t for t in DEFAULT_TOKENS if t.symbol == "WXDAI")


def _borrow_transfer(tx_hash: str = "0xborrow", value: int = 100 * WAD, ts: int = DAY1) -> RawTransfer:
    return RawTransfer(
        hash=tx_hash,
        from_address=USER,
        to_address=OTHER,
        value=value,
        timestamp=ts,
        token_contract_address=WXDAI.supply_addresses[V3].lower(),
        function_selector_label="borrow(address,uint256,uint256,uint16,address)",
    )


def _transfer_source(name: str, transfers: list[RawTransfer] | None = None, fail: bool = False) -> AsyncMock:
    source = AsyncMock(spec=TransferSource)
    source.name = name
    if fail:
        source.get_transfers.side_effect = SourceUnavailable(name, "HTTP 503")
    else:
        source.get_transfers.return_value = list(transfers or [])
    return source


def _build_engine(
    settings: EngineSettings,
    *,
    history: dict[BalanceKind, list[BalanceSnapshot]] | None = None,
    live: dict[str, int] | None = None,
    rates: dict[str, RateSnapshot] | None = None,
    primary: AsyncMock | None = None,
    secondary: AsyncMock | None = None,
    cache: TransactionCache | None = None,
    rate_store: RateStore | None = None,
    now: int = DAY1 + DAY + 43_200,
) -> tuple[InterestEngine, dict[str, AsyncMock]]:
    history = history or {}
    live = live or {}

    balance_source = AsyncMock(spec=BalanceHistorySource)
    balance_source.get_balance_snapshots.side_effect = (
        lambda address, reserve, kind, version: list(history.get(kind, []))
    )
    live_balance = AsyncMock(spec=LiveBalanceQuery)
    live_balance.get_current_balance.side_effect = lambda address, contract: live.get(contract, 0)
    event_source = AsyncMock(spec=ProtocolEventSource)
    event_source.get_protocol_events.return_value = []
    rate_source = AsyncMock(spec=RateHistorySource)
    rate_source.get_rate_snapshots.return_value = dict(rates or {})

    engine = InterestEngine(
        settings,
        balance_source=balance_source,
        rate_source=rate_source,
        event_source=event_source,
        live_balance=live_balance,
        primary_transfers=primary if primary is not None else _transfer_source("moralis"),
        secondary_transfers=secondary,
        cache=cache,
        rate_store=rate_store,
        clock=lambda: now,
    )
    mocks = {
        "balance_source": balance_source,
        "live_balance": live_balance,
        "event_source": event_source,
        "rate_source": rate_source,
    }
    return engine, mocks


class TestAccrualSelection:
    """Tests for choosing index vs rate accrual per token."""

    @pytest.mark.asyncio
    async def test_index_path_with_live_point(self, engine_settings: EngineSettings) -> None:
        history = {
            BalanceKind.SUPPLY: [
                BalanceSnapshot(DAY1, 1000, 1000, RAY, "WXDAI"),
                BalanceSnapshot(DAY1 + DAY, 1010, 1000, RAY * 101 // 100, "WXDAI"),
            ]
        }
        live = {WXDAI.supply_addresses[V3]: 1015}
        engine, mocks = _build_engine(engine_settings, history=history, live=live)

        report = await engine.compute(USER.upper().replace("0X", "0x"), tokens=["wxdai"])

        token = report.per_token["WXDAI"]
        assert report.address == USER
        assert token.method is AccrualMethod.INDEX
        assert token.supply.total_interest == 15
        assert token.supply.details[-1].source is DetailSource.LIVE_BALANCE
        assert token.borrow.details == []
        assert token.summary.total_supply_interest == 15
        assert token.summary.net_interest == 15
        mocks["rate_source"].get_rate_snapshots.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_fallback(self, engine_settings: EngineSettings) -> None:
        rates = {
            "20240102": RateSnapshot("20240102", DAY1 + DAY, Decimal("0.05"), Decimal("0.073")),
        }
        primary = _transfer_source("moralis", [_borrow_transfer()])
        engine, mocks = _build_engine(engine_settings, rates=rates, primary=primary)

        report = await engine.compute(USER, tokens=["WXDAI"])

        token = report.per_token["WXDAI"]
        assert token.method is AccrualMethod.RATE
        assert token.borrow.total_interest == 2 * 10**16
        assert [d.date for d in token.borrow.details] == ["20240101", "20240102"]
        assert token.summary.total_borrow_interest == 2 * 10**16
        assert token.summary.net_interest == -(2 * 10**16)
        mocks["rate_source"].get_rate_snapshots.assert_awaited_once_with("WXDAI", "20240101")

    @pytest.mark.asyncio
    async def test_rate_path_without_transactions_skips_rates(self, engine_settings: EngineSettings) -> None:
        engine, mocks = _build_engine(engine_settings)

        report = await engine.compute(USER, tokens=["WXDAI"])

        assert report.per_token["WXDAI"].method is AccrualMethod.RATE
        assert report.per_token["WXDAI"].daily_statement == []
        mocks["rate_source"].get_rate_snapshots.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cached_rates_for_today_skip_the_api(self, engine_settings: EngineSettings, tmp_path) -> None:
        primary = _transfer_source("moralis", [_borrow_transfer()])
        async with TrackerDatabase(str(tmp_path / "cache.db")) as database:
            rate_store = RateStore(database)
            await rate_store.store_rates(
                "WXDAI",
                {
                    key: RateSnapshot(key, ts, Decimal("0.05"), Decimal("0.073"))
                    for key, ts in (("20240101", DAY1), ("20240102", DAY1 + DAY))
                },
            )
            engine, mocks = _build_engine(engine_settings, primary=primary, rate_store=rate_store)

            report = await engine.compute(USER, tokens=["WXDAI"])

        day1 = 2 * 10**16
        assert report.per_token["WXDAI"].borrow.total_interest == day1 + (100 * WAD + day1) // 5000
        mocks["rate_source"].get_rate_snapshots.assert_not_awaited()


class TestDegradation:
    """Tests for partial and total source failures."""

    @pytest.mark.asyncio
    async def test_history_failure_is_degraded(self, engine_settings: EngineSettings) -> None:
        engine, mocks = _build_engine(engine_settings)
        mocks["balance_source"].get_balance_snapshots.side_effect = SourceUnavailable("thegraph", "indexer down")

        report = await engine.compute(USER)

        assert set(report.per_token) == {"USDC", "WXDAI"}
        failed = [(d.source, d.token) for d in report.degraded]
        assert ("thegraph", "USDC") in failed
        assert ("thegraph", "WXDAI") in failed
        assert all(d.status is SourceStatus.FAILED for d in report.degraded)

    @pytest.mark.asyncio
    async def test_event_failure_recorded_for_all_tokens(self, engine_settings: EngineSettings) -> None:
        engine, mocks = _build_engine(engine_settings)
        mocks["event_source"].get_protocol_events.side_effect = SourceUnavailable("thegraph", "timeout")

        report = await engine.compute(USER, tokens=["WXDAI"])

        assert [(d.source, d.token) for d in report.degraded] == [("thegraph", "*")]

    @pytest.mark.asyncio
    async def test_total_transfer_failure_propagates(self, engine_settings: EngineSettings) -> None:
        engine, _ = _build_engine(
            engine_settings,
            primary=_transfer_source("moralis", fail=True),
            secondary=_transfer_source("gnosisscan", fail=True),
        )

        with pytest.raises(TotalSourceFailure):
            await engine.compute(USER)

    @pytest.mark.asyncio
    async def test_timeout_writes_nothing(self) -> None:
        cache = AsyncMock(spec=TransactionCache)
        cache.load.return_value = []
        engine, mocks = _build_engine(EngineSettings(timeout_seconds=0.05), cache=cache)

        async def slow_events(address, version):
            await asyncio.sleep(1)
            return []

        mocks["event_source"].get_protocol_events.side_effect = slow_events

        with pytest.raises(ComputationTimeout):
            await engine.compute(USER)

        cache.store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_cache_is_degraded(self, engine_settings: EngineSettings) -> None:
        cache = AsyncMock(spec=TransactionCache)
        cache.has.return_value = True
        cache.load.side_effect = CacheError("cache read failed: disk I/O error")
        primary = _transfer_source("moralis", [_borrow_transfer()])
        engine, _ = _build_engine(engine_settings, primary=primary, cache=cache)

        report = await engine.compute(USER, tokens=["WXDAI"])

        assert [(d.source, d.token) for d in report.degraded] == [("cache", "*")]
        assert [tx.hash for tx in report.transactions] == ["0xborrow"]
        cache.store.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_cache_write_still_returns_report(self, engine_settings: EngineSettings) -> None:
        cache = AsyncMock(spec=TransactionCache)
        cache.has.return_value = False
        cache.store.side_effect = CacheError("cache write failed: database is locked")
        primary = _transfer_source("moralis", [_borrow_transfer()])
        engine, _ = _build_engine(engine_settings, primary=primary, cache=cache)

        report = await engine.compute(USER, tokens=["WXDAI"])

        assert [tx.hash for tx in report.transactions] == ["0xborrow"]
        assert report.degraded == []
        cache.load.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_rate_cache_falls_back_to_api(self, engine_settings: EngineSettings) -> None:
        rate_store = AsyncMock(spec=RateStore)
        rate_store.load_rates.side_effect = CacheError("rate cache read failed: disk I/O error")
        rate_store.store_rates.side_effect = CacheError("cache write failed: disk I/O error")
        rates = {"20240101": RateSnapshot("20240101", DAY1, Decimal("0.05"), Decimal("0.073"))}
        primary = _transfer_source("moralis", [_borrow_transfer()])
        engine, mocks = _build_engine(engine_settings, rates=rates, primary=primary, rate_store=rate_store)

        report = await engine.compute(USER, tokens=["WXDAI"])

        assert [(d.source, d.token) for d in report.degraded] == [("cache", "WXDAI")]
        assert report.per_token["WXDAI"].borrow.total_interest == 2 * 10**16
        mocks["rate_source"].get_rate_snapshots.assert_awaited_once_with("WXDAI", "20240101")


class TestCaching:
    """Tests for transaction cache reuse across runs."""

    @pytest.mark.asyncio
    async def test_second_run_reuses_cache(self, engine_settings: EngineSettings, tmp_path) -> None:
        primary = _transfer_source("moralis", [_borrow_transfer()])
        async with TrackerDatabase(str(tmp_path / "cache.db")) as database:
            cache = TransactionCache(database)
            engine, _ = _build_engine(engine_settings, primary=primary, cache=cache)

            first = await engine.compute(USER, tokens=["WXDAI"])
            second = await engine.compute(USER, tokens=["WXDAI"])

            assert await cache.has(USER)
            assert len(await cache.load(USER)) == 1

        assert [tx.hash for tx in first.transactions] == ["0xborrow"]
        assert second.transactions == first.transactions

    @pytest.mark.asyncio
    async def test_rates_fetched_from_latest_cached_day(self, engine_settings: EngineSettings, tmp_path) -> None:
        primary = _transfer_source("moralis", [_borrow_transfer()])
        fresh = {"20240103": RateSnapshot("20240103", DAY1 + 2 * DAY, Decimal("0.05"), Decimal("0.073"))}
        async with TrackerDatabase(str(tmp_path / "cache.db")) as database:
            rate_store = RateStore(database)
            await rate_store.store_rates(
                "WXDAI",
                {
                    key: RateSnapshot(key, ts, Decimal("0.05"), Decimal("0.073"))
                    for key, ts in (("20240101", DAY1), ("20240102", DAY1 + DAY))
                },
            )
            engine, mocks = _build_engine(
                engine_settings,
                rates=fresh,
                primary=primary,
                rate_store=rate_store,
                now=DAY1 + 2 * DAY + 43_200,
            )

            report = await engine.compute(USER, tokens=["WXDAI"])

            assert await rate_store.latest_date("WXDAI") == "20240103"

        mocks["rate_source"].get_rate_snapshots.assert_awaited_once_with("WXDAI", "20240102")
        assert [d.date for d in report.per_token["WXDAI"].borrow.details] == [
            "20240101",
            "20240102",
            "20240103",
        ]


class TestComputeArguments:
    """Tests for argument validation and report serialization."""

    @pytest.mark.asyncio
    async def test_unknown_token_rejected(self, engine_settings: EngineSettings) -> None:
        engine, mocks = _build_engine(engine_settings)

        with pytest.raises(ValueError, match="USDC"):
            await engine.compute(USER, tokens=["USDC"], version=ProtocolVersion.V2)

        mocks["event_source"].get_protocol_events.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_symbols_collapse(self, engine_settings: EngineSettings) -> None:
        primary = _transfer_source("moralis", [_borrow_transfer()])
        engine, _ = _build_engine(engine_settings, primary=primary)

        report = await engine.compute(USER, tokens=["wxdai", "WXDAI"])

        assert list(report.per_token) == ["WXDAI"]
        assert [tx.hash for tx in report.transactions] == ["0xborrow"]
        primary.get_transfers.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_report_to_dict(self, engine_settings: EngineSettings) -> None:
        primary = _transfer_source("moralis", [_borrow_transfer()])
        engine, _ = _build_engine(engine_settings, primary=primary)

        data = (await engine.compute(USER, tokens=["WXDAI"])).to_dict()

        assert data["address"] == USER
        assert data["version"] == "V3"
        assert set(data["perToken"]["WXDAI"]) == {"method", "borrow", "supply", "dailyStatement", "summary"}
        assert data["transactions"][0]["txHash"] == "0xborrow"
        assert data["transactions"][0]["type"] == "borrow"
        assert data["degraded"] == []


class TestOpenEngine:
    """Tests for the production wiring."""

    @pytest.mark.asyncio
    async def test_wires_clients_and_cache(self, mock_settings: AppSettings, tmp_path) -> None:
        async with open_engine(mock_settings) as engine:
            assert isinstance(engine, InterestEngine)
            assert engine._primary is not None
            assert engine._primary.name == "moralis"
            assert engine._secondary.name == "gnosisscan"
            assert engine._cache is not None

        assert (tmp_path / "cache.db").exists()

    @pytest.mark.asyncio
    async def test_without_moralis_key_uses_gnosisscan_only(self, mock_settings: AppSettings) -> None:
        sources = mock_settings.sources.model_copy(update={"moralis_api_key": SecretStr("")})
        settings = mock_settings.model_copy(
            update={"sources": sources, "cache": CacheSettings(enabled=False)}
        )

        async with open_engine(settings) as engine:
            assert engine._primary is None
            assert engine._cache is None
