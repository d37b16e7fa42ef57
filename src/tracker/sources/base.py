"""Abstract collaborator interfaces for upstream data sources.

The engine and reconciler depend only on these contracts, keeping each
provider's wire format isolated in its concrete client.
"""

from abc import ABC, abstractmethod

from tracker.models import (
    BalanceKind,
    BalanceSnapshot,
    ProtocolEvent,
    ProtocolVersion,
    RateSnapshot,
    RawTransfer,
)


class BalanceHistorySource(ABC):
    """Historical scaled balances and compounding indices for a user."""

    @abstractmethod
    async def get_balance_snapshots(
        self,
        address: str,
        reserve_symbol: str,
        kind: BalanceKind,
        version: ProtocolVersion = ProtocolVersion.V3,
    ) -> list[BalanceSnapshot]:
        """Return every balance history item for one reserve and balance kind."""
        ...


class RateHistorySource(ABC):
    """Daily average supply/borrow rates per reserve."""

    @abstractmethod
    async def get_rate_snapshots(self, token: str, from_date: str) -> dict[str, RateSnapshot]:
        """Return RateSnapshots keyed by YYYYMMDD, starting at from_date (YYYYMMDD)."""
        ...


class TransferSource(ABC):
    """A provider of ERC-20 transfer records for an address."""

    name: str = "transfers"

    @abstractmethod
    async def get_transfers(self, address: str, token_contract_address: str) -> list[RawTransfer]:
        """Return all transfers of one token contract involving address.

        Raises SourceUnavailable when the provider cannot answer.
        """
        ...


class LiveBalanceQuery(ABC):
    """Current on-chain token balance."""

    @abstractmethod
    async def get_current_balance(self, address: str, token_contract_address: str) -> int:
        ...


class ProtocolEventSource(ABC):
    """Authoritative borrow/repay/supply/withdraw events for a user."""

    @abstractmethod
    async def get_protocol_events(
        self,
        address: str,
        version: ProtocolVersion = ProtocolVersion.V3,
    ) -> list[ProtocolEvent]:
        ...
