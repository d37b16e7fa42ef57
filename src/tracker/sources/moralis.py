"""Moralis ERC-20 transfer client (primary transfer source)."""

from tracker.exceptions import MalformedRecord, SourceUnavailable
from tracker.logging import get_logger
from tracker.models import RawTransfer
from tracker.sources.base import TransferSource
from tracker.sources.http import HttpSource
from tracker.sources.parsing import parse_moralis_transfer

logger = get_logger(__name__)

CHAIN = "gnosis"
MAX_PAGES = 100


class MoralisClient(HttpSource, TransferSource):
    """Fetches `/{address}/erc20/transfers` filtered on one token contract.

    Moralis does not report the called function, so every transfer comes
    back unlabelled and is classified by direction alone. Pages are followed
    through the response cursor.
    """

    name = "moralis"

    @property
    def configured(self) -> bool:
        return bool(self._settings.moralis_api_key.get_secret_value())

    async def get_transfers(self, address: str, token_contract_address: str) -> list[RawTransfer]:
        if not self.configured:
            raise SourceUnavailable(self.name, "no API key configured")

        url = f"{self._settings.moralis_url.rstrip('/')}/{address}/erc20/transfers"
        headers = {
            "X-API-Key": self._settings.moralis_api_key.get_secret_value(),
            "Accept": "application/json",
        }
        transfers: list[RawTransfer] = []
        cursor: str | None = None

        for _ in range(MAX_PAGES):
            params = {"chain": CHAIN, "token_addresses": token_contract_address}
            if cursor:
                params["cursor"] = cursor

            payload = await self._request_json("GET", url, params=params, headers=headers)
            if not isinstance(payload, dict) or not isinstance(payload.get("result"), list):
                raise SourceUnavailable(self.name, "unexpected response shape")

            for row in payload["result"]:
                try:
                    transfers.append(parse_moralis_transfer(row, source=self.name))
                except MalformedRecord as e:
                    logger.warning(
                        "malformed_transfer_skipped",
                        source=self.name,
                        error=str(e),
                        tx_hash=row.get("transaction_hash") if isinstance(row, dict) else None,
                    )

            cursor = payload.get("cursor")
            if not cursor:
                break
        else:
            logger.warning("moralis_page_limit_reached", token=token_contract_address)

        logger.debug(
            "moralis_transfers_fetched",
            token=token_contract_address,
            count=len(transfers),
        )
        return transfers
