"""JSON-RPC live balance client (ERC-20 balanceOf via eth_call)."""

from tracker.exceptions import MalformedRecord, SourceUnavailable
from tracker.logging import get_logger
from tracker.sources.base import LiveBalanceQuery
from tracker.sources.http import HttpSource
from tracker.sources.parsing import parse_balance_of_result

logger = get_logger(__name__)

BALANCE_OF_SELECTOR = "0x70a08231"


def balance_of_call_data(address: str) -> str:
    """ABI-encode balanceOf(address): selector followed by the 32-byte padded address."""
    return BALANCE_OF_SELECTOR + address.lower().removeprefix("0x").rjust(64, "0")


class RpcBalanceClient(HttpSource, LiveBalanceQuery):
    """Reads current token balances from a Gnosis chain RPC node."""

    name = "rpc"

    async def get_current_balance(self, address: str, token_contract_address: str) -> int:
        balances = await self.get_current_balances(address, [token_contract_address])
        return balances[token_contract_address]

    async def get_current_balances(
        self, address: str, token_contract_addresses: list[str]
    ) -> dict[str, int]:
        """Read several balances in one batched JSON-RPC request.

        Returns balances keyed by the given contract addresses.
        """
        if not token_contract_addresses:
            return {}

        data = balance_of_call_data(address)
        batch = [
            {
                "jsonrpc": "2.0",
                "id": i,
                "method": "eth_call",
                "params": [{"to": contract, "data": data}, "latest"],
            }
            for i, contract in enumerate(token_contract_addresses)
        ]
        payload = await self._request_json("POST", self._settings.rpc_url, json=batch)
        if not isinstance(payload, list):
            raise SourceUnavailable(self.name, "unexpected response shape")

        by_id = {item.get("id"): item for item in payload if isinstance(item, dict)}
        balances: dict[str, int] = {}
        for i, contract in enumerate(token_contract_addresses):
            response = by_id.get(i)
            if response is None:
                raise SourceUnavailable(self.name, f"no response for {contract}")
            try:
                balances[contract] = parse_balance_of_result(response)
            except MalformedRecord as e:
                raise SourceUnavailable(self.name, f"{contract}: {e}") from e

        logger.debug("live_balances_fetched", count=len(balances))
        return balances
