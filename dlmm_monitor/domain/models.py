"""
Domain models for the position monitor.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes. On-chain token amounts are
Python ints (arbitrary precision, never float); prices are floats.
"""
import re
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple, Union

from dlmm_monitor.exceptions import ValidationError

_AMOUNT_RE = re.compile(r"^\d+$")

Amount = Union[int, str]


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_amount(value: Amount, field_name: str) -> int:
    """
    Convert a token amount to int.

    Accepts ints and non-negative decimal integer strings. Anything else
    (floats, "1.5", "abc", negative values) raises ValidationError.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name}: expected integer amount, got bool")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(f"{field_name}: amount must be non-negative, got {value}")
        return value
    if isinstance(value, str) and _AMOUNT_RE.match(value.strip()):
        return int(value.strip())
    raise ValidationError(f"{field_name}: invalid amount {value!r}")


class PositionStatus(str, Enum):
    """Position lifecycle status."""
    ACTIVE = "active"
    CLOSED = "closed"
    PENDING = "pending"
    ERROR = "error"


class HistoryEventType(str, Enum):
    """Well-known history event tags. ``PositionHistory.event_type`` stays free-form."""
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHECK = "status_check"
    DELETED = "deleted"


@dataclass(frozen=True)
class TokenPair:
    """The two tokens of a liquidity pool."""
    token_a_symbol: str
    token_b_symbol: str
    token_a_mint: str
    token_b_mint: str
    token_a_decimals: int = 0
    token_b_decimals: int = 0

    @property
    def label(self) -> str:
        return f"{self.token_a_symbol}/{self.token_b_symbol}"


# ---------------------------------------------------------------------------
# On-chain data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BinInfo:
    """One discretized price bin as reported by the pool query service."""
    bin_id: int
    price_per_token: str  # decimal string, as returned by the chain

    @property
    def price(self) -> float:
        return float(self.price_per_token)


@dataclass(frozen=True)
class FeeSnapshot:
    pending_fees_x: int
    pending_fees_y: int
    total_claimed_fees_x: int
    total_claimed_fees_y: int


@dataclass(frozen=True)
class RewardSnapshot:
    reward_one: int
    reward_two: int


@dataclass(frozen=True)
class OnChainSnapshot:
    """Liquidity, fees and rewards of the user's on-chain position record."""
    liquidity_x: int
    liquidity_y: int
    fees: FeeSnapshot
    rewards: RewardSnapshot
    last_updated_at: Optional[int] = None  # unix seconds

    def changed_categories(self, previous: "OnChainSnapshot") -> List[str]:
        """Names of the categories that differ from ``previous``."""
        changes = []
        if (self.liquidity_x, self.liquidity_y) != (previous.liquidity_x, previous.liquidity_y):
            changes.append("liquidity")
        if (self.fees.pending_fees_x, self.fees.pending_fees_y) != (
            previous.fees.pending_fees_x,
            previous.fees.pending_fees_y,
        ):
            changes.append("pending fees")
        if (self.fees.total_claimed_fees_x, self.fees.total_claimed_fees_y) != (
            previous.fees.total_claimed_fees_x,
            previous.fees.total_claimed_fees_y,
        ):
            changes.append("claimed fees")
        if self.rewards != previous.rewards:
            changes.append("rewards")
        return changes


@dataclass(frozen=True)
class OnChainPositionRecord:
    """A user's position record for one pool, as returned by the chain."""
    lower_bin_id: int
    upper_bin_id: int
    total_x_amount: int
    total_y_amount: int
    fee_x: int
    fee_y: int
    total_claimed_fee_x: int
    total_claimed_fee_y: int
    reward_one: int
    reward_two: int
    last_updated_at: Optional[int] = None

    def matches(self, lower_bin_id: int, upper_bin_id: int) -> bool:
        return self.lower_bin_id == lower_bin_id and self.upper_bin_id == upper_bin_id

    def to_snapshot(self) -> OnChainSnapshot:
        return OnChainSnapshot(
            liquidity_x=self.total_x_amount,
            liquidity_y=self.total_y_amount,
            fees=FeeSnapshot(
                pending_fees_x=self.fee_x,
                pending_fees_y=self.fee_y,
                total_claimed_fees_x=self.total_claimed_fee_x,
                total_claimed_fees_y=self.total_claimed_fee_y,
            ),
            rewards=RewardSnapshot(reward_one=self.reward_one, reward_two=self.reward_two),
            last_updated_at=self.last_updated_at,
        )


# ---------------------------------------------------------------------------
# Reconciliation snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LastStatus:
    """Snapshot of the most recent successful reconciliation of a position."""
    active_bin: int
    current_price: float
    bin_in_range: bool
    timestamp: datetime
    current_lower_price: Optional[float] = None
    current_upper_price: Optional[float] = None
    on_chain: Optional[OnChainSnapshot] = None

    @property
    def last_updated_at(self) -> Optional[int]:
        return self.on_chain.last_updated_at if self.on_chain else None


@dataclass(frozen=True)
class FetchedStatus:
    """
    Result of one fetch against the pool query service.

    ``error`` is set when the enrichment steps (range bins, on-chain record)
    failed and only the active-bin information is available.
    """
    active_bin: int
    bin_in_range: bool
    current_price: float
    timestamp: datetime
    current_lower_price: Optional[float] = None
    current_upper_price: Optional[float] = None
    price_range_changed: bool = False
    on_chain: Optional[OnChainSnapshot] = None
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.error is not None

    def to_last_status(self) -> LastStatus:
        return LastStatus(
            active_bin=self.active_bin,
            current_price=self.current_price,
            bin_in_range=self.bin_in_range,
            timestamp=self.timestamp,
            current_lower_price=self.current_lower_price,
            current_upper_price=self.current_upper_price,
            on_chain=self.on_chain,
        )


# ---------------------------------------------------------------------------
# Position and history
# ---------------------------------------------------------------------------

@dataclass
class Position:
    """
    A tracked liquidity range in a DLMM pool.

    Range attributes are fixed at creation; ``status``, ``last_status``,
    ``updated_at`` and ``closed_at`` change over the position's lifetime.
    """
    id: str
    pool_address: str
    token_pair: TokenPair
    lower_bin_id: int
    upper_bin_id: int
    lower_price_limit: float
    upper_price_limit: float
    user_wallet: str
    created_at: datetime
    updated_at: datetime
    status: PositionStatus = PositionStatus.ACTIVE
    initial_liquidity_a: int = 0
    initial_liquidity_b: int = 0
    chat_id: Optional[int] = None

    # Trade intent
    sell_token_mint: Optional[str] = None
    sell_token_symbol: Optional[str] = None
    sell_token_amount: Optional[int] = None
    buy_token_mint: Optional[str] = None
    buy_token_symbol: Optional[str] = None
    expected_buy_amount: Optional[int] = None
    actual_buy_amount: Optional[int] = None
    entry_price: Optional[float] = None

    closed_at: Optional[datetime] = None
    last_status: Optional[LastStatus] = None

    position_nft: Optional[str] = None
    fee: Optional[float] = None
    notes: Optional[str] = None

    def __post_init__(self):
        """Validate position invariants."""
        if self.lower_bin_id > self.upper_bin_id:
            raise ValidationError(
                f"Invalid bin range: lower ({self.lower_bin_id}) > upper ({self.upper_bin_id})"
            )
        if self.lower_price_limit > self.upper_price_limit:
            raise ValidationError(
                f"Invalid price range: lower ({self.lower_price_limit}) > upper ({self.upper_price_limit})"
            )
        if self.created_at.tzinfo is None or self.updated_at.tzinfo is None:
            raise ValidationError("Position timestamps must be timezone-aware (UTC)")

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def sells_token_a(self) -> bool:
        return self.sell_token_mint == self.token_pair.token_a_mint


POSITION_FIELDS = frozenset(f.name for f in fields(Position))
IMMUTABLE_POSITION_FIELDS = frozenset({"id", "created_at"})


@dataclass(frozen=True)
class HistoryMetadata:
    """Optional details attached to a history record, depending on the event."""
    # status_check
    active_bin: Optional[int] = None
    bin_in_range: Optional[bool] = None
    current_lower_price: Optional[float] = None
    current_upper_price: Optional[float] = None
    on_chain: Optional[OnChainSnapshot] = None
    error: Optional[str] = None
    # updated
    updated_fields: Tuple[str, ...] = ()
    # created
    lower_bin_id: Optional[int] = None
    upper_bin_id: Optional[int] = None
    sell_token_symbol: Optional[str] = None
    sell_token_amount: Optional[int] = None
    buy_token_symbol: Optional[str] = None
    expected_buy_amount: Optional[int] = None


@dataclass(frozen=True)
class PositionHistory:
    """Immutable audit record. Never mutated or deleted after insertion."""
    position_id: str
    event_type: str
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)
    liquidity_a: Optional[int] = None
    liquidity_b: Optional[int] = None
    value_usd: Optional[float] = None
    price_at_event: Optional[float] = None
    metadata: HistoryMetadata = field(default_factory=HistoryMetadata)


@dataclass
class CreatePositionParams:
    """
    Parameters accepted by ``PositionStorage.create_position``.

    Amounts may be ints or decimal strings. Required fields left as None or
    empty are rejected with ValidationError.
    """
    pool_address: Optional[str]
    token_pair: Optional[TokenPair]
    lower_bin_id: Optional[int]
    upper_bin_id: Optional[int]
    lower_price_limit: Optional[float]
    upper_price_limit: Optional[float]
    user_wallet: Optional[str]
    initial_liquidity_a: Amount = 0
    initial_liquidity_b: Amount = 0
    chat_id: Optional[int] = None
    sell_token_mint: Optional[str] = None
    sell_token_symbol: Optional[str] = None
    sell_token_amount: Optional[Amount] = None
    buy_token_mint: Optional[str] = None
    buy_token_symbol: Optional[str] = None
    expected_buy_amount: Optional[Amount] = None
    entry_price: Optional[float] = None
    position_nft: Optional[str] = None
    fee: Optional[float] = None
    notes: Optional[str] = None


REQUIRED_CREATE_FIELDS = (
    "pool_address",
    "token_pair",
    "lower_bin_id",
    "upper_bin_id",
    "lower_price_limit",
    "upper_price_limit",
    "user_wallet",
)


# ---------------------------------------------------------------------------
# Notification destinations
# ---------------------------------------------------------------------------

@dataclass
class UserWalletMapping:
    """Links a chat (notification destination) to one or more wallets."""
    chat_id: int
    wallet_addresses: List[str] = field(default_factory=list)
    primary_wallet: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_active: Optional[datetime] = None
    name: Optional[str] = None
    telegram_username: Optional[str] = None
