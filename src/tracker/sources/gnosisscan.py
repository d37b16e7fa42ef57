"""Gnosisscan (etherscan v2 multichain API) token transfer client."""

from tracker.exceptions import MalformedRecord, SourceUnavailable
from tracker.logging import get_logger
from tracker.models import RawTransfer
from tracker.sources.base import TransferSource
from tracker.sources.http import HttpSource
from tracker.sources.parsing import parse_gnosisscan_transfer

logger = get_logger(__name__)

NO_TRANSACTIONS_MESSAGE = "No transactions found"


class GnosisscanClient(HttpSource, TransferSource):
    """Fetches ERC-20 transfers via `module=account&action=tokentx`.

    Pages of page_size rows are requested sequentially until a short page.
    Rows carry the called function's label, used for classification.
    """

    name = "gnosisscan"

    async def get_transfers(self, address: str, token_contract_address: str) -> list[RawTransfer]:
        page_size = self._settings.page_size
        transfers: list[RawTransfer] = []
        page = 1

        while True:
            rows = await self._fetch_page(address, token_contract_address, page)
            for row in rows:
                try:
                    transfers.append(parse_gnosisscan_transfer(row, source=self.name))
                except MalformedRecord as e:
                    logger.warning(
                        "malformed_transfer_skipped",
                        source=self.name,
                        error=str(e),
                        tx_hash=row.get("hash") if isinstance(row, dict) else None,
                    )

            if len(rows) < page_size:
                break
            page += 1

        logger.debug(
            "gnosisscan_transfers_fetched",
            token=token_contract_address,
            pages=page,
            count=len(transfers),
        )
        return transfers

    async def _fetch_page(self, address: str, token_contract_address: str, page: int) -> list:
        params = {
            "chainid": str(self._settings.gnosisscan_chain_id),
            "module": "account",
            "action": "tokentx",
            "contractaddress": token_contract_address,
            "address": address,
            "page": str(page),
            "offset": str(self._settings.page_size),
            "sort": "asc",
        }
        api_key = self._settings.gnosisscan_api_key.get_secret_value()
        if api_key:
            params["apikey"] = api_key

        payload = await self._request_json("GET", self._settings.gnosisscan_url, params=params)
        if not isinstance(payload, dict):
            raise SourceUnavailable(self.name, "unexpected response shape")

        result = payload.get("result")
        if payload.get("status") == "1" and isinstance(result, list):
            return result
        if isinstance(result, list) and (
            not result or payload.get("message") == NO_TRANSACTIONS_MESSAGE
        ):
            return []
        # status "0" with a string result is an API-level error (rate limit, bad key)
        raise SourceUnavailable(self.name, str(result or payload.get("message")))
