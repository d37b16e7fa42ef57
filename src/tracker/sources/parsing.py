"""Wire-format parsers for upstream payloads.

Each parser turns one raw record into a typed model or raises
MalformedRecord. Callers skip the record and log; a bad row never aborts
a whole fetch.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from tracker.accrual.days import date_key
from tracker.exceptions import MalformedRecord
from tracker.models import (
    BalanceKind,
    BalanceSnapshot,
    ProtocolEvent,
    ProtocolVersion,
    RateSnapshot,
    RawTransfer,
    TransactionType,
)

# The Graph field names per balance kind: (current balance, scaled balance)
BALANCE_FIELDS: dict[BalanceKind, tuple[str, str]] = {
    BalanceKind.SUPPLY: ("currentATokenBalance", "scaledATokenBalance"),
    BalanceKind.DEBT: ("currentVariableDebt", "scaledVariableDebt"),
}


def _require(record: dict, key: str):
    value = record.get(key)
    if value is None or value == "":
        raise MalformedRecord(f"missing field {key!r}")
    return value


def _to_int(value, key: str) -> int:
    try:
        if isinstance(value, str) and value.lower().startswith("0x"):
            return int(value, 16)
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"field {key!r} is not an integer: {value!r}") from e


def _to_decimal(value, key: str) -> Decimal:
    try:
        # str() first so JSON floats keep their printed digits
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedRecord(f"field {key!r} is not a number: {value!r}") from e


# ──────────────────────────────────────────────
# Transfers
# ──────────────────────────────────────────────


def parse_gnosisscan_transfer(row: dict, source: str = "gnosisscan") -> RawTransfer:
    """Parse one etherscan-style `tokentx` row."""
    block = row.get("blockNumber")
    return RawTransfer(
        hash=str(_require(row, "hash")).lower(),
        from_address=str(_require(row, "from")).lower(),
        to_address=str(_require(row, "to")).lower(),
        value=_to_int(_require(row, "value"), "value"),
        timestamp=_to_int(_require(row, "timeStamp"), "timeStamp"),
        token_contract_address=str(_require(row, "contractAddress")).lower(),
        function_selector_label=row.get("functionName") or None,
        block_number=_to_int(block, "blockNumber") if block not in (None, "") else None,
        source=source,
    )


def parse_moralis_transfer(row: dict, source: str = "moralis") -> RawTransfer:
    """Parse one Moralis ERC-20 transfer; block_timestamp is ISO-8601 UTC."""
    raw_ts = str(_require(row, "block_timestamp"))
    try:
        parsed = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedRecord(f"field 'block_timestamp' is not ISO-8601: {raw_ts!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    block = row.get("block_number")
    return RawTransfer(
        hash=str(_require(row, "transaction_hash")).lower(),
        from_address=str(_require(row, "from_address")).lower(),
        to_address=str(_require(row, "to_address")).lower(),
        value=_to_int(_require(row, "value"), "value"),
        timestamp=int(parsed.timestamp()),
        token_contract_address=str(_require(row, "address")).lower(),
        function_selector_label=None,
        block_number=_to_int(block, "block_number") if block not in (None, "") else None,
        source=source,
    )


# ──────────────────────────────────────────────
# The Graph
# ──────────────────────────────────────────────


def parse_balance_history_item(item: dict, kind: BalanceKind) -> BalanceSnapshot:
    """Parse one atokenBalanceHistoryItem / vtokenBalanceHistoryItem."""
    current_field, scaled_field = BALANCE_FIELDS[kind]
    try:
        symbol = item["userReserve"]["reserve"]["symbol"]
    except (KeyError, TypeError) as e:
        raise MalformedRecord("missing field 'userReserve.reserve.symbol'") from e

    return BalanceSnapshot(
        timestamp=_to_int(_require(item, "timestamp"), "timestamp"),
        current_balance=_to_int(_require(item, current_field), current_field),
        scaled_balance=_to_int(_require(item, scaled_field), scaled_field),
        index=_to_int(_require(item, "index"), "index"),
        reserve_symbol=str(symbol),
    )


def extract_event_hash(record: dict) -> str:
    """Return the transaction hash of a protocol event.

    V3 events expose txHash directly; V2 ids look like
    "32350433:4:0x4d1c...b9e6:14:14" with the hash in third position.
    """
    tx_hash = record.get("txHash")
    if tx_hash:
        return str(tx_hash).lower()

    parts = str(record.get("id") or "").split(":")
    if len(parts) >= 3 and parts[2].startswith("0x"):
        return parts[2].lower()
    raise MalformedRecord(f"cannot extract transaction hash from id {record.get('id')!r}")


def parse_protocol_event(
    record: dict,
    event_type: TransactionType,
    version: ProtocolVersion,
) -> ProtocolEvent:
    reserve = record.get("reserve") or {}
    reserve_id = reserve.get("id")
    if not reserve_id:
        raise MalformedRecord("missing field 'reserve.id'")
    return ProtocolEvent(
        hash=extract_event_hash(record),
        type=event_type,
        amount=_to_int(_require(record, "amount"), "amount"),
        timestamp=_to_int(_require(record, "timestamp"), "timestamp"),
        reserve_id=str(reserve_id).lower(),
        reserve_symbol=reserve.get("symbol"),
        version=version,
    )


# ──────────────────────────────────────────────
# Rates and RPC
# ──────────────────────────────────────────────


def parse_rate_point(point: dict) -> RateSnapshot:
    """Parse one rates-history point; x.month is 0-based."""
    if not isinstance(point, dict):
        raise MalformedRecord(f"rate point is not an object: {point!r}")
    x = point.get("x")
    if not isinstance(x, dict):
        raise MalformedRecord("missing field 'x'")
    try:
        day = datetime(
            int(x["year"]), int(x["month"]) + 1, int(x["date"]), tzinfo=timezone.utc
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedRecord(f"invalid rate date {x!r}") from e

    timestamp = int(day.timestamp())
    utilization = point.get("utilizationRate_avg")
    return RateSnapshot(
        date=date_key(timestamp),
        timestamp=timestamp,
        liquidity_rate_avg=_to_decimal(_require(point, "liquidityRate_avg"), "liquidityRate_avg"),
        variable_borrow_rate_avg=_to_decimal(
            _require(point, "variableBorrowRate_avg"), "variableBorrowRate_avg"
        ),
        utilization_rate_avg=(
            _to_decimal(utilization, "utilizationRate_avg") if utilization is not None else None
        ),
    )


def parse_balance_of_result(response: dict) -> int:
    """Parse a JSON-RPC eth_call response carrying a uint256 hex result."""
    if response.get("error"):
        raise MalformedRecord(f"rpc error: {response['error']}")
    result = response.get("result")
    if not isinstance(result, str) or not result.startswith("0x"):
        raise MalformedRecord(f"invalid eth_call result: {result!r}")
    if result == "0x":
        return 0
    return _to_int(result, "result")
