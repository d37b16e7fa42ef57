"""The Graph subgraph client: balance history and protocol event log."""

from tracker.config import SourceSettings
from tracker.exceptions import MalformedRecord, SourceUnavailable
from tracker.logging import get_logger
from tracker.models import (
    BalanceKind,
    BalanceSnapshot,
    ProtocolEvent,
    ProtocolVersion,
    TransactionType,
)
from tracker.sources.base import BalanceHistorySource, ProtocolEventSource
from tracker.sources.http import HttpSource
from tracker.sources.parsing import BALANCE_FIELDS, parse_balance_history_item, parse_protocol_event

logger = get_logger(__name__)

HISTORY_COLLECTIONS: dict[BalanceKind, str] = {
    BalanceKind.SUPPLY: "atokenBalanceHistoryItems",
    BalanceKind.DEBT: "vtokenBalanceHistoryItems",
}

# Event collection per transaction type; V2 names supplies "deposits"
EVENT_COLLECTIONS: dict[ProtocolVersion, dict[TransactionType, str]] = {
    ProtocolVersion.V3: {
        TransactionType.BORROW: "borrows",
        TransactionType.DEPOSIT: "supplies",
        TransactionType.WITHDRAW: "redeemUnderlyings",
        TransactionType.REPAY: "repays",
    },
    ProtocolVersion.V2: {
        TransactionType.BORROW: "borrows",
        TransactionType.DEPOSIT: "deposits",
        TransactionType.WITHDRAW: "redeemUnderlyings",
        TransactionType.REPAY: "repays",
    },
}

# V2 events have no txHash field; the hash is embedded in the id
EVENT_HASH_FIELD: dict[ProtocolVersion, str] = {
    ProtocolVersion.V3: "txHash",
    ProtocolVersion.V2: "id",
}

_HISTORY_QUERY = """
query BalanceHistory($user: String!, $first: Int!, $skip: Int!) {{
  {collection}(
    where: {{ userReserve_: {{ user: $user }} }}
    orderBy: timestamp
    orderDirection: asc
    first: $first
    skip: $skip
  ) {{
    timestamp
    {current_field}
    {scaled_field}
    index
    userReserve {{ reserve {{ symbol decimals }} }}
  }}
}}
"""

_EVENTS_QUERY = """
query ProtocolEvents($user: String!, $first: Int!, $skip: Int!) {{
  {collection}(
    where: {{ user_: {{ id: $user }} }}
    orderBy: timestamp
    orderDirection: asc
    first: $first
    skip: $skip
  ) {{
    {hash_field}
    reserve {{ id symbol }}
    amount
    timestamp
  }}
}}
"""


class TheGraphClient(HttpSource, BalanceHistorySource, ProtocolEventSource):
    """Queries the RMM V2 and V3 subgraphs.

    Every collection is paginated with first/skip and read until a short page.
    """

    name = "thegraph"

    def __init__(self, session, settings: SourceSettings) -> None:
        super().__init__(session, settings)
        self._urls = {
            ProtocolVersion.V3: settings.thegraph_v3_url,
            ProtocolVersion.V2: settings.thegraph_v2_url,
        }

    # ──────────────────────────────────────────────
    # Balance history
    # ──────────────────────────────────────────────

    async def get_balance_snapshots(
        self,
        address: str,
        reserve_symbol: str,
        kind: BalanceKind,
        version: ProtocolVersion = ProtocolVersion.V3,
    ) -> list[BalanceSnapshot]:
        collection = HISTORY_COLLECTIONS[kind]
        current_field, scaled_field = BALANCE_FIELDS[kind]
        query = _HISTORY_QUERY.format(
            collection=collection,
            current_field=current_field,
            scaled_field=scaled_field,
        )
        items = await self._paginate(version, query, collection, address)

        snapshots: list[BalanceSnapshot] = []
        for item in items:
            try:
                snapshot = parse_balance_history_item(item, kind)
            except MalformedRecord as e:
                logger.warning("malformed_balance_item_skipped", kind=kind.value, error=str(e))
                continue
            if snapshot.reserve_symbol == reserve_symbol:
                snapshots.append(snapshot)

        logger.debug(
            "balance_history_fetched",
            version=version.value,
            reserve=reserve_symbol,
            kind=kind.value,
            count=len(snapshots),
        )
        return snapshots

    # ──────────────────────────────────────────────
    # Protocol events
    # ──────────────────────────────────────────────

    async def get_protocol_events(
        self,
        address: str,
        version: ProtocolVersion = ProtocolVersion.V3,
    ) -> list[ProtocolEvent]:
        events: list[ProtocolEvent] = []
        for event_type, collection in EVENT_COLLECTIONS[version].items():
            query = _EVENTS_QUERY.format(
                collection=collection,
                hash_field=EVENT_HASH_FIELD[version],
            )
            for record in await self._paginate(version, query, collection, address):
                try:
                    events.append(parse_protocol_event(record, event_type, version))
                except MalformedRecord as e:
                    logger.warning(
                        "malformed_protocol_event_skipped",
                        version=version.value,
                        type=event_type.value,
                        error=str(e),
                    )

        logger.debug("protocol_events_fetched", version=version.value, count=len(events))
        return events

    # ──────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────

    async def _paginate(
        self,
        version: ProtocolVersion,
        query: str,
        collection: str,
        address: str,
    ) -> list[dict]:
        page_size = self._settings.page_size
        items: list[dict] = []
        skip = 0
        while True:
            data = await self._query(
                version,
                query,
                {"user": address.lower(), "first": page_size, "skip": skip},
            )
            batch = data.get(collection) or []
            items.extend(batch)
            if len(batch) < page_size:
                return items
            skip += page_size

    async def _query(self, version: ProtocolVersion, query: str, variables: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.thegraph_api_key.get_secret_value()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        payload = await self._request_json(
            "POST",
            self._urls[version],
            json={"query": query, "variables": variables},
            headers=headers,
        )
        if not isinstance(payload, dict):
            raise SourceUnavailable(self.name, "unexpected response shape")
        if payload.get("errors"):
            raise SourceUnavailable(self.name, f"graphql errors: {payload['errors']}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise SourceUnavailable(self.name, "response has no data")
        return data
