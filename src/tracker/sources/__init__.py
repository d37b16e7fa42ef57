"""Upstream data sources -- subgraphs, rates API, transfer explorers and RPC via aiohttp."""

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

__all__ = [
    "BalanceHistorySource",
    "GnosisscanClient",
    "LiveBalanceQuery",
    "MoralisClient",
    "ProtocolEventSource",
    "RateHistorySource",
    "RatesApiClient",
    "RpcBalanceClient",
    "TheGraphClient",
    "TransferSource",
]
