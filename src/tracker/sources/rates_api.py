"""RMM rates-history API client."""

from tracker.accrual.days import date_key_to_timestamp
from tracker.config import DEFAULT_TOKENS, SourceSettings, TokenConfig
from tracker.exceptions import MalformedRecord, SourceUnavailable
from tracker.logging import get_logger
from tracker.models import RateSnapshot
from tracker.sources.base import RateHistorySource
from tracker.sources.http import HttpSource
from tracker.sources.parsing import parse_rate_point

logger = get_logger(__name__)

RESOLUTION_HOURS = 24


class RatesApiClient(HttpSource, RateHistorySource):
    """Fetches daily average liquidity and variable borrow rates per reserve."""

    name = "rates-api"

    def __init__(
        self,
        session,
        settings: SourceSettings,
        tokens: tuple[TokenConfig, ...] = DEFAULT_TOKENS,
    ) -> None:
        super().__init__(session, settings)
        self._reserve_ids = {t.symbol: t.reserve_id for t in tokens}

    async def get_rate_snapshots(self, token: str, from_date: str) -> dict[str, RateSnapshot]:
        reserve_id = self._reserve_ids.get(token)
        if reserve_id is None:
            raise SourceUnavailable(self.name, f"unknown token {token!r}")

        params = {
            "reserveId": reserve_id,
            "from": str(date_key_to_timestamp(from_date)),
            "resolutionInHours": str(RESOLUTION_HOURS),
        }
        payload = await self._request_json("GET", self._settings.rates_api_url, params=params)
        if not isinstance(payload, list):
            raise SourceUnavailable(self.name, "unexpected response shape")

        rates: dict[str, RateSnapshot] = {}
        for point in payload:
            try:
                snapshot = parse_rate_point(point)
            except MalformedRecord as e:
                logger.warning("malformed_rate_point_skipped", token=token, error=str(e))
                continue
            rates[snapshot.date] = snapshot

        logger.debug("rate_history_fetched", token=token, from_date=from_date, days=len(rates))
        return rates
