"""Function-label classification for raw token transfers.

Explorers report the called function as a label such as
"supply(address asset,uint256 amount,address onBehalfOf,uint16 referralCode)".
Only the name before the argument list is significant.
"""

from tracker.models import Direction, RawTransfer, TransactionType

LABEL_TYPES: dict[str, TransactionType] = {
    "supply": TransactionType.DEPOSIT,
    "depositETH": TransactionType.DEPOSIT,
    "withdraw": TransactionType.WITHDRAW,
    "withdrawETH": TransactionType.WITHDRAW,
    "repayWithATokens": TransactionType.REPAY,
    "borrow": TransactionType.BORROW,
    "disperseToken": TransactionType.DISPERSE,
}

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_label(label: str | None) -> str | None:
    """Strip the argument list: "name(args)" -> "name". Empty labels become None."""
    if not label:
        return None
    name = label.split("(", 1)[0].strip()
    return name or None


def classify(label: str | None) -> TransactionType:
    """Map a function label to a TransactionType, OTHERS when unknown or missing."""
    name = normalize_label(label)
    if name is None:
        return TransactionType.OTHERS
    return LABEL_TYPES.get(name, TransactionType.OTHERS)


def direction_of(transfer: RawTransfer, subject: str) -> Direction:
    """IN when the transfer's recipient is the subject address (case-insensitive)."""
    if transfer.to_address.lower() == subject.lower():
        return Direction.IN
    return Direction.OUT


def is_mint_or_burn(transfer: RawTransfer) -> bool:
    return ZERO_ADDRESS in (transfer.from_address.lower(), transfer.to_address.lower())


# Supply-token flow a labelled leg must have to count; other legs of that call are dropped
EXPECTED_DIRECTIONS: dict[TransactionType, Direction] = {
    TransactionType.DEPOSIT: Direction.IN,
    TransactionType.REPAY: Direction.IN,
    TransactionType.WITHDRAW: Direction.OUT,
    TransactionType.BORROW: Direction.OUT,
}


def direction_matches(tx_type: TransactionType, direction: Direction) -> bool:
    """False for a typed leg moving against its call; untyped legs always match."""
    expected = EXPECTED_DIRECTIONS.get(tx_type)
    return expected is None or expected is direction
