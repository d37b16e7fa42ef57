"""Shared test fixtures for the interest tracker."""

import pytest

from tracker.config import (
    DEFAULT_TOKENS,
    AppSettings,
    CacheSettings,
    EngineSettings,
    SourceSettings,
    TokenConfig,
)


@pytest.fixture
def source_settings() -> SourceSettings:
    """Source settings with no pacing or retry delay so tests run instantly."""
    return SourceSettings(
        request_delay=0.0,
        retry_base_delay=0.0,
        max_retries=2,
        page_size=2,
        moralis_api_key="test-moralis-key",  # type: ignore[arg-type]
        gnosisscan_api_key="test-gnosisscan-key",  # type: ignore[arg-type]
    )


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(timeout_seconds=5.0)


@pytest.fixture
def mock_settings(source_settings: SourceSettings, engine_settings: EngineSettings, tmp_path) -> AppSettings:
    """Return AppSettings with test defaults and a temporary cache path."""
    return AppSettings(
        log_level="DEBUG",
        sources=source_settings,
        cache=CacheSettings(enabled=True, db_path=str(tmp_path / "cache.db")),
        engine=engine_settings,
    )


@pytest.fixture
def tokens() -> tuple[TokenConfig, ...]:
    return DEFAULT_TOKENS


@pytest.fixture
def wxdai(tokens: tuple[TokenConfig, ...]) -> TokenConfig:
    return next(t for t in tokens if t.symbol == "WXDAI")
