"""
Backend-independent rules for building and changing position records.

Both storage backends go through these helpers so that validation, the
update merge and the audit records they write stay identical.
"""
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Tuple

from dlmm_monitor.domain.models import (
    IMMUTABLE_POSITION_FIELDS,
    POSITION_FIELDS,
    REQUIRED_CREATE_FIELDS,
    CreatePositionParams,
    HistoryEventType,
    HistoryMetadata,
    Position,
    PositionHistory,
    PositionStatus,
    TokenPair,
    UserWalletMapping,
    new_id,
    parse_amount,
    utc_now,
)
from dlmm_monitor.exceptions import ValidationError
from dlmm_monitor.monitoring.logger import get_logger

logger = get_logger(__name__)

AMOUNT_FIELDS = frozenset({
    "initial_liquidity_a",
    "initial_liquidity_b",
    "sell_token_amount",
    "expected_buy_amount",
    "actual_buy_amount",
})

# Maintained by the store itself
MANAGED_FIELDS = frozenset({"updated_at"})

# CLOSED is terminal; ERROR may go back to ACTIVE on a later retry
STATUS_TRANSITIONS = {
    PositionStatus.PENDING: frozenset({PositionStatus.ACTIVE, PositionStatus.ERROR, PositionStatus.CLOSED}),
    PositionStatus.ACTIVE: frozenset({PositionStatus.ERROR, PositionStatus.CLOSED}),
    PositionStatus.ERROR: frozenset({PositionStatus.ACTIVE, PositionStatus.CLOSED}),
    PositionStatus.CLOSED: frozenset(),
}


def build_position(params: CreatePositionParams, now: datetime = None) -> Position:
    """
    Validate creation params and build a new ACTIVE position.

    Raises:
        ValidationError: missing required field, malformed liquidity amount,
            or an inverted bin/price range
    """
    missing = [name for name in REQUIRED_CREATE_FIELDS if getattr(params, name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required position fields: {', '.join(missing)}")
    if not isinstance(params.token_pair, TokenPair):
        raise ValidationError("token_pair must be a TokenPair")

    now = now or utc_now()
    return Position(
        id=new_id(),
        pool_address=params.pool_address,
        token_pair=params.token_pair,
        lower_bin_id=int(params.lower_bin_id),
        upper_bin_id=int(params.upper_bin_id),
        lower_price_limit=float(params.lower_price_limit),
        upper_price_limit=float(params.upper_price_limit),
        user_wallet=params.user_wallet,
        created_at=now,
        updated_at=now,
        status=PositionStatus.ACTIVE,
        initial_liquidity_a=parse_amount(params.initial_liquidity_a, "initial_liquidity_a"),
        initial_liquidity_b=parse_amount(params.initial_liquidity_b, "initial_liquidity_b"),
        chat_id=params.chat_id,
        sell_token_mint=params.sell_token_mint,
        sell_token_symbol=params.sell_token_symbol,
        sell_token_amount=_optional_amount(params.sell_token_amount, "sell_token_amount"),
        buy_token_mint=params.buy_token_mint,
        buy_token_symbol=params.buy_token_symbol,
        expected_buy_amount=_optional_amount(params.expected_buy_amount, "expected_buy_amount"),
        entry_price=params.entry_price,
        position_nft=params.position_nft,
        fee=params.fee,
        notes=params.notes,
    )


def _optional_amount(value: Any, field_name: str):
    if value is None:
        return None
    try:
        return parse_amount(value, field_name)
    except ValidationError as e:
        logger.warning("Dropping malformed optional amount", field=field_name, value=repr(value), error=str(e))
        return None


def merge_updates(position: Position, updates: Dict[str, Any], now: datetime = None) -> Tuple[Position, List[str]]:
    """
    Shallow-merge ``updates`` into a copy of ``position``.

    Returns the new position and the sorted names of the updated fields.
    The input position is not modified. Moving to CLOSED stamps
    ``closed_at`` unless the position or the update already carries one.

    Raises:
        ValidationError: unknown or read-only field, malformed amount, or a
            status change ``STATUS_TRANSITIONS`` does not allow
    """
    now = now or utc_now()
    unknown = set(updates) - POSITION_FIELDS
    if unknown:
        raise ValidationError(f"Unknown position fields: {', '.join(sorted(unknown))}")
    frozen = set(updates) & (IMMUTABLE_POSITION_FIELDS | MANAGED_FIELDS)
    if frozen:
        raise ValidationError(f"Position fields cannot be updated: {', '.join(sorted(frozen))}")

    changes = dict(updates)
    for name in AMOUNT_FIELDS & set(changes):
        if changes[name] is not None:
            changes[name] = parse_amount(changes[name], name)
    if "status" in changes:
        try:
            changes["status"] = PositionStatus(changes["status"])
        except ValueError as e:
            raise ValidationError(f"Unknown position status {changes['status']!r}") from e
        check_status_transition(position.status, changes["status"])
        if changes["status"] == PositionStatus.CLOSED and changes.get("closed_at", position.closed_at) is None:
            changes["closed_at"] = now

    changes["updated_at"] = now
    # replace() re-runs Position validation
    return replace(position, **changes), sorted(updates)


def check_status_transition(current: PositionStatus, new: PositionStatus) -> None:
    if new != current and new not in STATUS_TRANSITIONS[current]:
        raise ValidationError(f"Position status cannot change from {current.value} to {new.value}")


def created_history(position: Position) -> PositionHistory:
    return PositionHistory(
        position_id=position.id,
        event_type=HistoryEventType.CREATED.value,
        liquidity_a=position.initial_liquidity_a,
        liquidity_b=position.initial_liquidity_b,
        price_at_event=position.entry_price,
        metadata=HistoryMetadata(
            lower_bin_id=position.lower_bin_id,
            upper_bin_id=position.upper_bin_id,
            sell_token_symbol=position.sell_token_symbol,
            sell_token_amount=position.sell_token_amount,
            buy_token_symbol=position.buy_token_symbol,
            expected_buy_amount=position.expected_buy_amount,
        ),
    )


def updated_history(position_id: str, updated_fields: List[str]) -> PositionHistory:
    return PositionHistory(
        position_id=position_id,
        event_type=HistoryEventType.UPDATED.value,
        metadata=HistoryMetadata(updated_fields=tuple(updated_fields)),
    )


def deleted_history(position_id: str) -> PositionHistory:
    return PositionHistory(position_id=position_id, event_type=HistoryEventType.DELETED.value)


def sort_history(entries: List[PositionHistory]) -> List[PositionHistory]:
    """Ascending by timestamp; insertion order breaks ties (sort is stable)."""
    return sorted(entries, key=lambda entry: entry.timestamp)


# ---------------------------------------------------------------------------
# Wallet map
# ---------------------------------------------------------------------------

def add_wallet_to_mapping(
    mapping: UserWalletMapping, wallet: str, set_primary: bool, now: datetime
) -> UserWalletMapping:
    wallets = list(mapping.wallet_addresses)
    if wallet not in wallets:
        wallets.append(wallet)
    return replace(
        mapping,
        wallet_addresses=wallets,
        primary_wallet=wallet if set_primary else mapping.primary_wallet,
        updated_at=now,
        last_active=now,
    )


def remove_wallet_from_mapping(mapping: UserWalletMapping, wallet: str, now: datetime) -> UserWalletMapping:
    wallets = [address for address in mapping.wallet_addresses if address != wallet]
    primary = mapping.primary_wallet
    if primary == wallet:
        primary = wallets[0] if wallets else None
    return replace(mapping, wallet_addresses=wallets, primary_wallet=primary, updated_at=now)


def primary_wallet_of(mapping: UserWalletMapping):
    return mapping.primary_wallet or (mapping.wallet_addresses[0] if mapping.wallet_addresses else None)
