"""
SQLAlchemy storage backends.

ORM models for positions, their history and the chat -> wallet map, plus
async repositories that run each synchronous session in a worker thread
(``asyncio.to_thread``) so the event loop is never blocked.
"""
import asyncio
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import BigInteger, Column, DateTime, Float, Index, Integer, String, Text

from dlmm_monitor.domain.models import (
    CreatePositionParams,
    Position,
    PositionHistory,
    PositionStatus,
    TokenPair,
    UserWalletMapping,
    utc_now,
)
from dlmm_monitor.exceptions import NotFoundError
from dlmm_monitor.monitoring.logger import get_logger
from dlmm_monitor.storage import records
from dlmm_monitor.storage.db import Base, Database
from dlmm_monitor.storage.serialization import (
    amount_from_str,
    amount_to_str,
    ensure_utc,
    history_metadata_from_dict,
    history_metadata_to_dict,
    last_status_from_dict,
    last_status_to_dict,
)

logger = get_logger(__name__)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise before writing; SQLite drops the offset."""
    if value is None:
        return None
    return ensure_utc(value).astimezone(timezone.utc)


# ORM Models
class PositionModel(Base):
    """ORM model for tracked liquidity positions."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_wallet", "user_wallet"),
        Index("idx_position_chat", "chat_id"),
        Index("idx_position_status", "status"),
    )

    id = Column(String, primary_key=True)
    pool_address = Column(String, nullable=False)
    token_a_symbol = Column(String, nullable=False)
    token_b_symbol = Column(String, nullable=False)
    token_a_mint = Column(String, nullable=False)
    token_b_mint = Column(String, nullable=False)
    token_a_decimals = Column(Integer, nullable=False, default=0)
    token_b_decimals = Column(Integer, nullable=False, default=0)
    lower_bin_id = Column(Integer, nullable=False)
    upper_bin_id = Column(Integer, nullable=False)
    lower_price_limit = Column(Float, nullable=False)
    upper_price_limit = Column(Float, nullable=False)
    user_wallet = Column(String, nullable=False)
    chat_id = Column(BigInteger, nullable=True)
    status = Column(String, nullable=False)

    # Token amounts as decimal strings (u64 and larger)
    initial_liquidity_a = Column(String, nullable=False, default="0")
    initial_liquidity_b = Column(String, nullable=False, default="0")
    sell_token_mint = Column(String, nullable=True)
    sell_token_symbol = Column(String, nullable=True)
    sell_token_amount = Column(String, nullable=True)
    buy_token_mint = Column(String, nullable=True)
    buy_token_symbol = Column(String, nullable=True)
    expected_buy_amount = Column(String, nullable=True)
    actual_buy_amount = Column(String, nullable=True)
    entry_price = Column(Float, nullable=True)

    position_nft = Column(String, nullable=True)
    fee = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    last_status = Column(Text, nullable=True)  # JSON string

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)


class PositionHistoryModel(Base):
    """ORM model for the append-only position audit trail."""
    __tablename__ = "position_history"
    __table_args__ = (
        Index("idx_history_position_time", "position_id", "timestamp"),
    )

    # Insertion order, used as the tie-breaker for equal timestamps
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)
    position_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    liquidity_a = Column(String, nullable=True)
    liquidity_b = Column(String, nullable=True)
    value_usd = Column(Float, nullable=True)
    price_at_event = Column(Float, nullable=True)
    metadata_json = Column(Text, nullable=True)


class UserWalletMappingModel(Base):
    """ORM model linking a chat to its wallets."""
    __tablename__ = "user_wallet_mappings"

    chat_id = Column(BigInteger, primary_key=True, autoincrement=False)
    wallet_addresses = Column(Text, nullable=False, default="[]")  # JSON list
    primary_wallet = Column(String, nullable=True)
    name = Column(String, nullable=True)
    telegram_username = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    last_active = Column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------

_PLAIN_POSITION_COLUMNS = (
    "pool_address",
    "lower_bin_id",
    "upper_bin_id",
    "lower_price_limit",
    "upper_price_limit",
    "user_wallet",
    "chat_id",
    "sell_token_mint",
    "sell_token_symbol",
    "buy_token_mint",
    "buy_token_symbol",
    "entry_price",
    "position_nft",
    "fee",
    "notes",
)


def _apply_position(pm: PositionModel, position: Position) -> None:
    for name in _PLAIN_POSITION_COLUMNS:
        setattr(pm, name, getattr(position, name))
    for name in records.AMOUNT_FIELDS:
        setattr(pm, name, amount_to_str(getattr(position, name)))

    pair = position.token_pair
    pm.token_a_symbol = pair.token_a_symbol
    pm.token_b_symbol = pair.token_b_symbol
    pm.token_a_mint = pair.token_a_mint
    pm.token_b_mint = pair.token_b_mint
    pm.token_a_decimals = pair.token_a_decimals
    pm.token_b_decimals = pair.token_b_decimals

    pm.status = position.status.value
    status = last_status_to_dict(position.last_status)
    pm.last_status = json.dumps(status) if status is not None else None
    pm.created_at = _to_utc(position.created_at)
    pm.updated_at = _to_utc(position.updated_at)
    pm.closed_at = _to_utc(position.closed_at)


def _position_from_model(pm: PositionModel) -> Position:
    return Position(
        id=pm.id,
        pool_address=pm.pool_address,
        token_pair=TokenPair(
            token_a_symbol=pm.token_a_symbol,
            token_b_symbol=pm.token_b_symbol,
            token_a_mint=pm.token_a_mint,
            token_b_mint=pm.token_b_mint,
            token_a_decimals=pm.token_a_decimals or 0,
            token_b_decimals=pm.token_b_decimals or 0,
        ),
        lower_bin_id=pm.lower_bin_id,
        upper_bin_id=pm.upper_bin_id,
        lower_price_limit=pm.lower_price_limit,
        upper_price_limit=pm.upper_price_limit,
        user_wallet=pm.user_wallet,
        created_at=ensure_utc(pm.created_at),
        updated_at=ensure_utc(pm.updated_at),
        status=PositionStatus(pm.status),
        initial_liquidity_a=amount_from_str(pm.initial_liquidity_a or "0", "initial_liquidity_a"),
        initial_liquidity_b=amount_from_str(pm.initial_liquidity_b or "0", "initial_liquidity_b"),
        chat_id=pm.chat_id,
        sell_token_mint=pm.sell_token_mint,
        sell_token_symbol=pm.sell_token_symbol,
        sell_token_amount=amount_from_str(pm.sell_token_amount, "sell_token_amount"),
        buy_token_mint=pm.buy_token_mint,
        buy_token_symbol=pm.buy_token_symbol,
        expected_buy_amount=amount_from_str(pm.expected_buy_amount, "expected_buy_amount"),
        actual_buy_amount=amount_from_str(pm.actual_buy_amount, "actual_buy_amount"),
        entry_price=pm.entry_price,
        closed_at=ensure_utc(pm.closed_at),
        last_status=last_status_from_dict(json.loads(pm.last_status)) if pm.last_status else None,
        position_nft=pm.position_nft,
        fee=pm.fee,
        notes=pm.notes,
    )


def _history_to_model(entry: PositionHistory) -> PositionHistoryModel:
    return PositionHistoryModel(
        id=entry.id,
        position_id=entry.position_id,
        event_type=entry.event_type,
        timestamp=_to_utc(entry.timestamp),
        liquidity_a=amount_to_str(entry.liquidity_a),
        liquidity_b=amount_to_str(entry.liquidity_b),
        value_usd=entry.value_usd,
        price_at_event=entry.price_at_event,
        metadata_json=json.dumps(history_metadata_to_dict(entry.metadata)),
    )


def _history_from_model(hm: PositionHistoryModel) -> PositionHistory:
    return PositionHistory(
        id=hm.id,
        position_id=hm.position_id,
        event_type=hm.event_type,
        timestamp=ensure_utc(hm.timestamp),
        liquidity_a=amount_from_str(hm.liquidity_a, "liquidity_a"),
        liquidity_b=amount_from_str(hm.liquidity_b, "liquidity_b"),
        value_usd=hm.value_usd,
        price_at_event=hm.price_at_event,
        metadata=history_metadata_from_dict(json.loads(hm.metadata_json) if hm.metadata_json else None),
    )


def _apply_mapping(mm: UserWalletMappingModel, mapping: UserWalletMapping) -> None:
    mm.wallet_addresses = json.dumps(list(mapping.wallet_addresses))
    mm.primary_wallet = mapping.primary_wallet
    mm.name = mapping.name
    mm.telegram_username = mapping.telegram_username
    mm.created_at = _to_utc(mapping.created_at)
    mm.updated_at = _to_utc(mapping.updated_at)
    mm.last_active = _to_utc(mapping.last_active)


def _mapping_from_model(mm: UserWalletMappingModel) -> UserWalletMapping:
    return UserWalletMapping(
        chat_id=mm.chat_id,
        wallet_addresses=json.loads(mm.wallet_addresses or "[]"),
        primary_wallet=mm.primary_wallet,
        created_at=ensure_utc(mm.created_at),
        updated_at=ensure_utc(mm.updated_at),
        last_active=ensure_utc(mm.last_active),
        name=mm.name,
        telegram_username=mm.telegram_username,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class SqlPositionStorage:
    """PositionStorage backed by SQLAlchemy (PostgreSQL or SQLite)."""

    def __init__(self, db: Database):
        self.db = db

    # Sync implementations (run in worker threads)

    def _save_position(self, position: Position, created: Optional[PositionHistory]) -> None:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, position.id)
            is_new = pm is None
            if is_new:
                pm = PositionModel(id=position.id)
                session.add(pm)
            _apply_position(pm, position)

            if created is not None and is_new:
                has_history = (
                    session.query(PositionHistoryModel.seq)
                    .filter(PositionHistoryModel.position_id == position.id)
                    .first()
                )
                if not has_history:
                    session.add(_history_to_model(created))

    def _get_position(self, position_id: str) -> Optional[Position]:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, position_id)
            return _position_from_model(pm) if pm else None

    def _query_positions(self, **filters: Any) -> List[Position]:
        with self.db.get_session() as session:
            query = session.query(PositionModel)
            for column, value in filters.items():
                query = query.filter(getattr(PositionModel, column) == value)
            return [_position_from_model(pm) for pm in query.order_by(PositionModel.created_at).all()]

    def _update_position(self, position_id: str, updates: Dict[str, Any]) -> Position:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, position_id)
            if pm is None:
                raise NotFoundError(f"Position not found: {position_id}")

            updated, changed = records.merge_updates(_position_from_model(pm), updates)
            _apply_position(pm, updated)
            session.add(_history_to_model(records.updated_history(position_id, changed)))
            return updated

    def _delete_position(self, position_id: str) -> None:
        with self.db.get_session() as session:
            deleted = session.query(PositionModel).filter(PositionModel.id == position_id).delete()
            if not deleted:
                raise NotFoundError(f"Position not found: {position_id}")
            session.add(_history_to_model(records.deleted_history(position_id)))

    def _save_history(self, entry: PositionHistory) -> None:
        with self.db.get_session() as session:
            session.add(_history_to_model(entry))

    def _get_history(self, position_id: str) -> List[PositionHistory]:
        with self.db.get_session() as session:
            rows = (
                session.query(PositionHistoryModel)
                .filter(PositionHistoryModel.position_id == position_id)
                .order_by(PositionHistoryModel.timestamp, PositionHistoryModel.seq)
                .all()
            )
            return [_history_from_model(hm) for hm in rows]

    # Async API

    async def create_position(self, params: CreatePositionParams) -> Position:
        position = records.build_position(params)
        await asyncio.to_thread(self._save_position, position, None)
        logger.info("Position created", position_id=position.id, pool=position.pool_address)
        return position

    async def save_position(self, position: Position) -> None:
        await asyncio.to_thread(self._save_position, position, records.created_history(position))

    async def get_position(self, position_id: str) -> Optional[Position]:
        return await asyncio.to_thread(self._get_position, position_id)

    async def get_all_positions(self) -> List[Position]:
        return await asyncio.to_thread(self._query_positions)

    async def get_positions_by_user(self, wallet: str) -> List[Position]:
        return await asyncio.to_thread(self._query_positions, user_wallet=wallet)

    async def get_positions_by_chat_id(self, chat_id: int) -> List[Position]:
        return await asyncio.to_thread(self._query_positions, chat_id=chat_id)

    async def update_position(self, position_id: str, updates: Dict[str, Any]) -> Position:
        return await asyncio.to_thread(self._update_position, position_id, updates)

    async def delete_position(self, position_id: str) -> None:
        await asyncio.to_thread(self._delete_position, position_id)
        logger.info("Position deleted", position_id=position_id)

    async def save_position_history(self, entry: PositionHistory) -> None:
        await asyncio.to_thread(self._save_history, entry)

    async def get_position_history(self, position_id: str) -> List[PositionHistory]:
        return await asyncio.to_thread(self._get_history, position_id)


class SqlUserWalletMapStorage:
    """Chat -> wallets mapping backed by SQLAlchemy."""

    def __init__(self, db: Database):
        self.db = db

    def _save(self, mapping: UserWalletMapping) -> None:
        with self.db.get_session() as session:
            mm = session.get(UserWalletMappingModel, mapping.chat_id)
            if mm is None:
                mm = UserWalletMappingModel(chat_id=mapping.chat_id)
                session.add(mm)
            _apply_mapping(mm, mapping)

    def _get(self, chat_id: int) -> Optional[UserWalletMapping]:
        with self.db.get_session() as session:
            mm = session.get(UserWalletMappingModel, chat_id)
            return _mapping_from_model(mm) if mm else None

    def _get_all(self) -> List[UserWalletMapping]:
        with self.db.get_session() as session:
            rows = session.query(UserWalletMappingModel).order_by(UserWalletMappingModel.chat_id).all()
            return [_mapping_from_model(mm) for mm in rows]

    def _delete(self, chat_id: int) -> None:
        with self.db.get_session() as session:
            session.query(UserWalletMappingModel).filter(UserWalletMappingModel.chat_id == chat_id).delete()

    def _add_wallet(self, chat_id: int, wallet: str, set_primary: bool) -> UserWalletMapping:
        now = utc_now()
        with self.db.get_session() as session:
            mm = session.get(UserWalletMappingModel, chat_id)
            if mm is None:
                mapping = UserWalletMapping(chat_id=chat_id, created_at=now, updated_at=now)
                mm = UserWalletMappingModel(chat_id=chat_id)
                session.add(mm)
            else:
                mapping = _mapping_from_model(mm)
            mapping = records.add_wallet_to_mapping(mapping, wallet, set_primary, now)
            _apply_mapping(mm, mapping)
            return mapping

    def _remove_wallet(self, chat_id: int, wallet: str) -> bool:
        with self.db.get_session() as session:
            mm = session.get(UserWalletMappingModel, chat_id)
            if mm is None:
                return False
            mapping = _mapping_from_model(mm)
            if wallet not in mapping.wallet_addresses:
                return False
            _apply_mapping(mm, records.remove_wallet_from_mapping(mapping, wallet, utc_now()))
            return True

    async def save_mapping(self, mapping: UserWalletMapping) -> None:
        await asyncio.to_thread(self._save, replace(mapping, updated_at=utc_now()))

    async def get_mapping(self, chat_id: int) -> Optional[UserWalletMapping]:
        return await asyncio.to_thread(self._get, chat_id)

    async def get_all_mappings(self) -> List[UserWalletMapping]:
        return await asyncio.to_thread(self._get_all)

    async def delete_mapping(self, chat_id: int) -> None:
        await asyncio.to_thread(self._delete, chat_id)

    async def add_wallet(self, chat_id: int, wallet: str, set_primary: bool = False) -> UserWalletMapping:
        return await asyncio.to_thread(self._add_wallet, chat_id, wallet, set_primary)

    async def remove_wallet(self, chat_id: int, wallet: str) -> bool:
        return await asyncio.to_thread(self._remove_wallet, chat_id, wallet)

    async def get_primary_wallet(self, chat_id: int) -> Optional[str]:
        mapping = await self.get_mapping(chat_id)
        return records.primary_wallet_of(mapping) if mapping else None

    async def get_destinations_for_wallet(self, wallet: str) -> List[int]:
        mappings = await self.get_all_mappings()
        return [m.chat_id for m in mappings if wallet in m.wallet_addresses]
