"""Configuration system using pydantic-settings with environment variable loading."""

from dataclasses import dataclass, field

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracker.models import ProtocolVersion


class SourceSettings(BaseSettings):
    """Upstream data source endpoints, credentials and pacing."""

    model_config = SettingsConfigDict(env_prefix="SOURCES_")

    gnosisscan_url: str = "https://api.etherscan.io/v2/api"
    gnosisscan_chain_id: int = 100  # Gnosis chain
    gnosisscan_api_key: SecretStr = SecretStr("")
    moralis_url: str = "https://deep-index.moralis.io/api/v2"
    moralis_api_key: SecretStr = SecretStr("")
    thegraph_v3_url: str = (
        "https://api.thegraph.com/subgraphs/id/"
        "QmVH7ota6caVV2ceLY91KYYh6BJs2zeMScTTYgKDpt7VRg"
    )
    thegraph_v2_url: str = (
        "https://api.thegraph.com/subgraphs/id/"
        "QmXT8Cpkjevu2sPN1fKkwb7Px9Wqj84DALA2TQ8nokhj7e"
    )
    thegraph_api_key: SecretStr = SecretStr("")
    rates_api_url: str = "https://rmm-api.realtoken.network/data/rates-history"
    rpc_url: str = "https://rpc.gnosischain.com/"
    request_delay: float = 0.2  # seconds between calls to the same source (5 req/s)
    request_timeout: float = 30.0
    page_size: int = 1000
    max_retries: int = 3
    retry_base_delay: float = 1.0

    def secret_values(self) -> list[str]:
        """Configured API keys, for masking in log output."""
        keys = (self.gnosisscan_api_key, self.moralis_api_key, self.thegraph_api_key)
        return [k.get_secret_value() for k in keys if k.get_secret_value()]


class CacheSettings(BaseSettings):
    """Persistent transaction/rate cache configuration."""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    enabled: bool = True
    db_path: str = "data/transactions.db"


class EngineSettings(BaseSettings):
    """Per-address computation settings."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    timeout_seconds: float = 120.0
    days_per_year: int = 365


@dataclass(frozen=True)
class TokenConfig:
    """One underlying stablecoin and its supply/debt token contracts per protocol version."""

    symbol: str
    decimals: int
    underlying_address: str
    reserve_id: str
    supply_addresses: dict[ProtocolVersion, str] = field(default_factory=dict)
    debt_addresses: dict[ProtocolVersion, str] = field(default_factory=dict)
    reserve_symbols: dict[ProtocolVersion, str] = field(default_factory=dict)


DEFAULT_TOKENS: tuple[TokenConfig, ...] = (
    TokenConfig(
        symbol="USDC",
        decimals=6,
        underlying_address="0xddafbb505ad214d7b80b1f830fccc89b60fb7a83",
        reserve_id=(
            "0xddafbb505ad214d7b80b1f830fccc89b60fb7a83"
            "0xdaa06cf7adceb69fcfde68d896818b9938984a70"
        ),
        supply_addresses={ProtocolVersion.V3: "0xeD56F76E9cBC6A64b821e9c016eAFbd3db5436D1"},
        debt_addresses={ProtocolVersion.V3: "0x69c731aE5f5356a779f44C355aBB685d84e5E9e6"},
        reserve_symbols={ProtocolVersion.V3: "USDC"},
    ),
    TokenConfig(
        symbol="WXDAI",
        decimals=18,
        underlying_address="0xe91D153E0b41518A2Ce8Dd3D7944Fa863463a97d",
        reserve_id=(
            "0xe91d153e0b41518a2ce8dd3d7944fa863463a97d"
            "0xdaa06cf7adceb69fcfde68d896818b9938984a70"
        ),
        supply_addresses={
            ProtocolVersion.V3: "0x0cA4f5554Dd9Da6217d62D8df2816c82bba4157b",
            ProtocolVersion.V2: "0x7349C9eaA538e118725a6130e0f8341509b9f8A0",
        },
        debt_addresses={
            ProtocolVersion.V3: "0x9908801dF7902675C3FEDD6Fea0294D18D5d5d34",
            ProtocolVersion.V2: "0x6a7CeD66902D07066Ad08c81179d17d0fbE36829",
        },
        reserve_symbols={
            ProtocolVersion.V3: "WXDAI",
            ProtocolVersion.V2: "rmmWXDAI",
        },
    ),
)


def tokens_for_version(
    version: ProtocolVersion,
    tokens: tuple[TokenConfig, ...] = DEFAULT_TOKENS,
) -> list[TokenConfig]:
    """Return the tokens that have a supply contract deployed on the given version."""
    return [t for t in tokens if version in t.supply_addresses]


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # "console" or "json"
    sources: SourceSettings = SourceSettings()
    cache: CacheSettings = CacheSettings()
    engine: EngineSettings = EngineSettings()
