"""
Record <-> dict conversion shared by the file and database backends.

Wire rules:
- token amounts are decimal integer strings (never floats, never truncated)
- timestamps are ISO-8601 with UTC offset
- enums are stored by value
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dlmm_monitor.domain.models import (
    FeeSnapshot,
    HistoryMetadata,
    LastStatus,
    OnChainSnapshot,
    Position,
    PositionHistory,
    PositionStatus,
    RewardSnapshot,
    TokenPair,
    UserWalletMapping,
    parse_amount,
)
from dlmm_monitor.exceptions import ValidationError


def dt_to_str(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def dt_from_str(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid timestamp {value!r}") from e
    return ensure_utc(parsed)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (as returned by SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def amount_to_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


def amount_from_str(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    return parse_amount(value, field_name)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

def token_pair_to_dict(pair: TokenPair) -> Dict[str, Any]:
    return {
        "token_a_symbol": pair.token_a_symbol,
        "token_b_symbol": pair.token_b_symbol,
        "token_a_mint": pair.token_a_mint,
        "token_b_mint": pair.token_b_mint,
        "token_a_decimals": pair.token_a_decimals,
        "token_b_decimals": pair.token_b_decimals,
    }


def token_pair_from_dict(data: Dict[str, Any]) -> TokenPair:
    return TokenPair(
        token_a_symbol=data["token_a_symbol"],
        token_b_symbol=data["token_b_symbol"],
        token_a_mint=data["token_a_mint"],
        token_b_mint=data["token_b_mint"],
        token_a_decimals=int(data.get("token_a_decimals", 0)),
        token_b_decimals=int(data.get("token_b_decimals", 0)),
    )


def on_chain_to_dict(snapshot: Optional[OnChainSnapshot]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    return {
        "liquidity_x": amount_to_str(snapshot.liquidity_x),
        "liquidity_y": amount_to_str(snapshot.liquidity_y),
        "fees": {
            "pending_fees_x": amount_to_str(snapshot.fees.pending_fees_x),
            "pending_fees_y": amount_to_str(snapshot.fees.pending_fees_y),
            "total_claimed_fees_x": amount_to_str(snapshot.fees.total_claimed_fees_x),
            "total_claimed_fees_y": amount_to_str(snapshot.fees.total_claimed_fees_y),
        },
        "rewards": {
            "reward_one": amount_to_str(snapshot.rewards.reward_one),
            "reward_two": amount_to_str(snapshot.rewards.reward_two),
        },
        "last_updated_at": snapshot.last_updated_at,
    }


def on_chain_from_dict(data: Optional[Dict[str, Any]]) -> Optional[OnChainSnapshot]:
    if data is None:
        return None
    fees = data["fees"]
    rewards = data["rewards"]
    return OnChainSnapshot(
        liquidity_x=parse_amount(data["liquidity_x"], "liquidity_x"),
        liquidity_y=parse_amount(data["liquidity_y"], "liquidity_y"),
        fees=FeeSnapshot(
            pending_fees_x=parse_amount(fees["pending_fees_x"], "pending_fees_x"),
            pending_fees_y=parse_amount(fees["pending_fees_y"], "pending_fees_y"),
            total_claimed_fees_x=parse_amount(fees["total_claimed_fees_x"], "total_claimed_fees_x"),
            total_claimed_fees_y=parse_amount(fees["total_claimed_fees_y"], "total_claimed_fees_y"),
        ),
        rewards=RewardSnapshot(
            reward_one=parse_amount(rewards["reward_one"], "reward_one"),
            reward_two=parse_amount(rewards["reward_two"], "reward_two"),
        ),
        last_updated_at=data.get("last_updated_at"),
    )


def last_status_to_dict(status: Optional[LastStatus]) -> Optional[Dict[str, Any]]:
    if status is None:
        return None
    return {
        "active_bin": status.active_bin,
        "current_price": status.current_price,
        "bin_in_range": status.bin_in_range,
        "timestamp": dt_to_str(status.timestamp),
        "current_lower_price": status.current_lower_price,
        "current_upper_price": status.current_upper_price,
        "on_chain": on_chain_to_dict(status.on_chain),
    }


def last_status_from_dict(data: Optional[Dict[str, Any]]) -> Optional[LastStatus]:
    if data is None:
        return None
    return LastStatus(
        active_bin=int(data["active_bin"]),
        current_price=float(data["current_price"]),
        bin_in_range=bool(data["bin_in_range"]),
        timestamp=dt_from_str(data["timestamp"]),
        current_lower_price=data.get("current_lower_price"),
        current_upper_price=data.get("current_upper_price"),
        on_chain=on_chain_from_dict(data.get("on_chain")),
    )


# ---------------------------------------------------------------------------
# Position
# ---------------------------------------------------------------------------

def position_to_dict(position: Position) -> Dict[str, Any]:
    return {
        "id": position.id,
        "pool_address": position.pool_address,
        "token_pair": token_pair_to_dict(position.token_pair),
        "lower_bin_id": position.lower_bin_id,
        "upper_bin_id": position.upper_bin_id,
        "lower_price_limit": position.lower_price_limit,
        "upper_price_limit": position.upper_price_limit,
        "user_wallet": position.user_wallet,
        "created_at": dt_to_str(position.created_at),
        "updated_at": dt_to_str(position.updated_at),
        "status": position.status.value,
        "initial_liquidity_a": amount_to_str(position.initial_liquidity_a),
        "initial_liquidity_b": amount_to_str(position.initial_liquidity_b),
        "chat_id": position.chat_id,
        "sell_token_mint": position.sell_token_mint,
        "sell_token_symbol": position.sell_token_symbol,
        "sell_token_amount": amount_to_str(position.sell_token_amount),
        "buy_token_mint": position.buy_token_mint,
        "buy_token_symbol": position.buy_token_symbol,
        "expected_buy_amount": amount_to_str(position.expected_buy_amount),
        "actual_buy_amount": amount_to_str(position.actual_buy_amount),
        "entry_price": position.entry_price,
        "closed_at": dt_to_str(position.closed_at),
        "last_status": last_status_to_dict(position.last_status),
        "position_nft": position.position_nft,
        "fee": position.fee,
        "notes": position.notes,
    }


def position_from_dict(data: Dict[str, Any]) -> Position:
    """Rebuild a Position. Malformed amounts raise ValidationError."""
    try:
        status = PositionStatus(data.get("status", PositionStatus.ACTIVE.value))
    except ValueError as e:
        raise ValidationError(f"Unknown position status {data.get('status')!r}") from e

    return Position(
        id=data["id"],
        pool_address=data["pool_address"],
        token_pair=token_pair_from_dict(data["token_pair"]),
        lower_bin_id=int(data["lower_bin_id"]),
        upper_bin_id=int(data["upper_bin_id"]),
        lower_price_limit=float(data["lower_price_limit"]),
        upper_price_limit=float(data["upper_price_limit"]),
        user_wallet=data["user_wallet"],
        created_at=dt_from_str(data["created_at"]),
        updated_at=dt_from_str(data["updated_at"]),
        status=status,
        initial_liquidity_a=parse_amount(data.get("initial_liquidity_a", "0"), "initial_liquidity_a"),
        initial_liquidity_b=parse_amount(data.get("initial_liquidity_b", "0"), "initial_liquidity_b"),
        chat_id=data.get("chat_id"),
        sell_token_mint=data.get("sell_token_mint"),
        sell_token_symbol=data.get("sell_token_symbol"),
        sell_token_amount=amount_from_str(data.get("sell_token_amount"), "sell_token_amount"),
        buy_token_mint=data.get("buy_token_mint"),
        buy_token_symbol=data.get("buy_token_symbol"),
        expected_buy_amount=amount_from_str(data.get("expected_buy_amount"), "expected_buy_amount"),
        actual_buy_amount=amount_from_str(data.get("actual_buy_amount"), "actual_buy_amount"),
        entry_price=data.get("entry_price"),
        closed_at=dt_from_str(data.get("closed_at")),
        last_status=last_status_from_dict(data.get("last_status")),
        position_nft=data.get("position_nft"),
        fee=data.get("fee"),
        notes=data.get("notes"),
    )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def history_metadata_to_dict(metadata: HistoryMetadata) -> Dict[str, Any]:
    """Only fields that are set are written."""
    data: Dict[str, Any] = {}
    for key in (
        "active_bin",
        "bin_in_range",
        "current_lower_price",
        "current_upper_price",
        "error",
        "lower_bin_id",
        "upper_bin_id",
        "sell_token_symbol",
        "buy_token_symbol",
    ):
        value = getattr(metadata, key)
        if value is not None:
            data[key] = value
    for key in ("sell_token_amount", "expected_buy_amount"):
        value = getattr(metadata, key)
        if value is not None:
            data[key] = amount_to_str(value)
    if metadata.on_chain is not None:
        data["on_chain"] = on_chain_to_dict(metadata.on_chain)
    if metadata.updated_fields:
        data["updated_fields"] = list(metadata.updated_fields)
    return data


def history_metadata_from_dict(data: Optional[Dict[str, Any]]) -> HistoryMetadata:
    data = data or {}
    return HistoryMetadata(
        active_bin=data.get("active_bin"),
        bin_in_range=data.get("bin_in_range"),
        current_lower_price=data.get("current_lower_price"),
        current_upper_price=data.get("current_upper_price"),
        on_chain=on_chain_from_dict(data.get("on_chain")),
        error=data.get("error"),
        updated_fields=tuple(data.get("updated_fields", ())),
        lower_bin_id=data.get("lower_bin_id"),
        upper_bin_id=data.get("upper_bin_id"),
        sell_token_symbol=data.get("sell_token_symbol"),
        sell_token_amount=amount_from_str(data.get("sell_token_amount"), "sell_token_amount"),
        buy_token_symbol=data.get("buy_token_symbol"),
        expected_buy_amount=amount_from_str(data.get("expected_buy_amount"), "expected_buy_amount"),
    )


def history_to_dict(entry: PositionHistory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "position_id": entry.position_id,
        "event_type": entry.event_type,
        "timestamp": dt_to_str(entry.timestamp),
        "liquidity_a": amount_to_str(entry.liquidity_a),
        "liquidity_b": amount_to_str(entry.liquidity_b),
        "value_usd": entry.value_usd,
        "price_at_event": entry.price_at_event,
        "metadata": history_metadata_to_dict(entry.metadata),
    }


def history_from_dict(data: Dict[str, Any]) -> PositionHistory:
    return PositionHistory(
        id=data["id"],
        position_id=data["position_id"],
        event_type=data["event_type"],
        timestamp=dt_from_str(data["timestamp"]),
        liquidity_a=amount_from_str(data.get("liquidity_a"), "liquidity_a"),
        liquidity_b=amount_from_str(data.get("liquidity_b"), "liquidity_b"),
        value_usd=data.get("value_usd"),
        price_at_event=data.get("price_at_event"),
        metadata=history_metadata_from_dict(data.get("metadata")),
    )


# ---------------------------------------------------------------------------
# Wallet map
# ---------------------------------------------------------------------------

def mapping_to_dict(mapping: UserWalletMapping) -> Dict[str, Any]:
    return {
        "chat_id": mapping.chat_id,
        "wallet_addresses": list(mapping.wallet_addresses),
        "primary_wallet": mapping.primary_wallet,
        "created_at": dt_to_str(mapping.created_at),
        "updated_at": dt_to_str(mapping.updated_at),
        "last_active": dt_to_str(mapping.last_active),
        "name": mapping.name,
        "telegram_username": mapping.telegram_username,
    }


def mapping_from_dict(data: Dict[str, Any]) -> UserWalletMapping:
    return UserWalletMapping(
        chat_id=int(data["chat_id"]),
        wallet_addresses=list(data.get("wallet_addresses", [])),
        primary_wallet=data.get("primary_wallet"),
        created_at=dt_from_str(data["created_at"]),
        updated_at=dt_from_str(data["updated_at"]),
        last_active=dt_from_str(data.get("last_active")),
        name=data.get("name"),
        telegram_username=data.get("telegram_username"),
    )
