"""
JSON-file storage backends.

Positions live in ``positions.json`` (id -> record) and their audit trail in
``position_history.json`` (position id -> [records]). Other processes (the
CLI next to a running monitor) share these files, so every operation first
reloads a file whose mtime or size has changed, and new state replaces the
cached copy only after it has been written.
"""
import asyncio
import json
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from dlmm_monitor.domain.models import (
    CreatePositionParams,
    Position,
    PositionHistory,
    UserWalletMapping,
    utc_now,
)
from dlmm_monitor.exceptions import NotFoundError, StorageError
from dlmm_monitor.monitoring.logger import get_logger
from dlmm_monitor.storage import records
from dlmm_monitor.storage.serialization import (
    history_from_dict,
    history_to_dict,
    mapping_from_dict,
    mapping_to_dict,
    position_from_dict,
    position_to_dict,
)

logger = get_logger(__name__)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise StorageError(f"Failed to read {path}: {e}") from e


def _write_json(path: Path, payload: Any) -> None:
    """Write via temp file + rename so a crash never leaves a truncated file."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, path)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}") from e


def _signature(path: Path) -> Optional[Tuple[int, int, int]]:
    """Changes on every rewrite: the atomic replace always installs a new inode."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(f"Failed to stat {path}: {e}") from e
    return stat.st_ino, stat.st_mtime_ns, stat.st_size


class _JsonDocument:
    """
    Cached, decoded contents of one JSON file.

    Callers hold their store's lock around ``current()`` and ``write()``.
    The cached dict is never mutated in place; ``write()`` takes a new one.
    """

    def __init__(self, path: Path, decode: Callable[[Any], Dict], encode: Callable[[Dict], Any]):
        self.path = path
        self._decode = decode
        self._encode = encode
        self._signature: Optional[Tuple[int, int, int]] = None
        self.data: Dict = {}
        self.reload()

    def reload(self) -> Dict:
        signature = _signature(self.path)
        if signature != self._signature:
            self.data = self._decode(_read_json(self.path, {})) if signature else {}
            self._signature = signature
            logger.debug("Storage file loaded", path=str(self.path), records=len(self.data))
        return self.data

    def _write(self, payload: Any) -> None:
        _write_json(self.path, payload)
        self._signature = _signature(self.path)

    async def current(self) -> Dict:
        return await asyncio.to_thread(self.reload)

    async def write(self, data: Dict) -> None:
        await asyncio.to_thread(self._write, self._encode(data))
        self.data = data


def _decode_positions(raw: Dict[str, Any]) -> Dict[str, Position]:
    return {position_id: position_from_dict(record) for position_id, record in raw.items()}


def _encode_positions(positions: Dict[str, Position]) -> Dict[str, Any]:
    return {position_id: position_to_dict(p) for position_id, p in positions.items()}


def _decode_history(raw: Dict[str, Any]) -> Dict[str, List[PositionHistory]]:
    return {
        position_id: [history_from_dict(record) for record in entries]
        for position_id, entries in raw.items()
    }


def _encode_history(history: Dict[str, List[PositionHistory]]) -> Dict[str, Any]:
    return {
        position_id: [history_to_dict(entry) for entry in entries]
        for position_id, entries in history.items()
    }


def _decode_mappings(raw: Dict[str, Any]) -> Dict[int, UserWalletMapping]:
    return {int(chat_id): mapping_from_dict(record) for chat_id, record in raw.items()}


def _encode_mappings(mappings: Dict[int, UserWalletMapping]) -> Dict[str, Any]:
    return {str(chat_id): mapping_to_dict(m) for chat_id, m in mappings.items()}


class FilePositionStorage:
    """PositionStorage backed by two JSON files under ``data_dir``."""

    POSITIONS_FILE = "positions.json"
    HISTORY_FILE = "position_history.json"

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self._lock = asyncio.Lock()
        self._positions = _JsonDocument(self.data_dir / self.POSITIONS_FILE, _decode_positions, _encode_positions)
        self._history = _JsonDocument(self.data_dir / self.HISTORY_FILE, _decode_history, _encode_history)

        logger.info(
            "File position storage loaded",
            data_dir=str(self.data_dir),
            positions=len(self._positions.data),
            history_streams=len(self._history.data),
        )

    async def _append_history(self, entry: PositionHistory) -> None:
        history = await self._history.current()
        entries = history.get(entry.position_id, []) + [entry]
        await self._history.write({**history, entry.position_id: entries})

    async def _select(self, predicate: Callable[[Position], bool]) -> List[Position]:
        async with self._lock:
            positions = await self._positions.current()
        return [replace(p) for p in positions.values() if predicate(p)]

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def create_position(self, params: CreatePositionParams) -> Position:
        position = records.build_position(params)
        async with self._lock:
            positions = await self._positions.current()
            await self._positions.write({**positions, position.id: position})
        logger.info("Position created", position_id=position.id, pool=position.pool_address)
        return replace(position)

    async def save_position(self, position: Position) -> None:
        async with self._lock:
            positions = await self._positions.current()
            is_new = position.id not in positions
            await self._positions.write({**positions, position.id: replace(position)})
            if is_new and not (await self._history.current()).get(position.id):
                await self._append_history(records.created_history(position))

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self._lock:
            position = (await self._positions.current()).get(position_id)
        return replace(position) if position else None

    async def get_all_positions(self) -> List[Position]:
        return await self._select(lambda p: True)

    async def get_positions_by_user(self, wallet: str) -> List[Position]:
        return await self._select(lambda p: p.user_wallet == wallet)

    async def get_positions_by_chat_id(self, chat_id: int) -> List[Position]:
        return await self._select(lambda p: p.chat_id == chat_id)

    async def update_position(self, position_id: str, updates: Dict[str, Any]) -> Position:
        async with self._lock:
            positions = await self._positions.current()
            current = positions.get(position_id)
            if current is None:
                raise NotFoundError(f"Position not found: {position_id}")

            updated, changed = records.merge_updates(current, updates)
            await self._positions.write({**positions, position_id: updated})
            await self._append_history(records.updated_history(position_id, changed))
        return replace(updated)

    async def delete_position(self, position_id: str) -> None:
        async with self._lock:
            positions = await self._positions.current()
            if position_id not in positions:
                raise NotFoundError(f"Position not found: {position_id}")
            await self._positions.write({pid: p for pid, p in positions.items() if pid != position_id})
            await self._append_history(records.deleted_history(position_id))
        logger.info("Position deleted", position_id=position_id)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def save_position_history(self, entry: PositionHistory) -> None:
        async with self._lock:
            await self._append_history(entry)

    async def get_position_history(self, position_id: str) -> List[PositionHistory]:
        async with self._lock:
            history = await self._history.current()
        return records.sort_history(history.get(position_id, []))


class FileUserWalletMapStorage:
    """Chat -> wallets mapping stored in ``user_wallet_map.json``."""

    MAP_FILE = "user_wallet_map.json"

    def __init__(self, data_dir: str = "data"):
        self._lock = asyncio.Lock()
        self._mappings = _JsonDocument(Path(data_dir) / self.MAP_FILE, _decode_mappings, _encode_mappings)

    async def _all(self) -> Dict[int, UserWalletMapping]:
        async with self._lock:
            return await self._mappings.current()

    async def _put(self, mappings: Dict[int, UserWalletMapping], mapping: UserWalletMapping) -> None:
        await self._mappings.write({**mappings, mapping.chat_id: mapping})

    async def save_mapping(self, mapping: UserWalletMapping) -> None:
        async with self._lock:
            mappings = await self._mappings.current()
            await self._put(mappings, replace(mapping, updated_at=utc_now()))

    async def get_mapping(self, chat_id: int) -> Optional[UserWalletMapping]:
        mapping = (await self._all()).get(chat_id)
        return replace(mapping) if mapping else None

    async def get_all_mappings(self) -> List[UserWalletMapping]:
        return [replace(m) for m in (await self._all()).values()]

    async def delete_mapping(self, chat_id: int) -> None:
        async with self._lock:
            mappings = await self._mappings.current()
            if chat_id in mappings:
                await self._mappings.write({cid: m for cid, m in mappings.items() if cid != chat_id})

    async def add_wallet(self, chat_id: int, wallet: str, set_primary: bool = False) -> UserWalletMapping:
        now = utc_now()
        async with self._lock:
            mappings = await self._mappings.current()
            mapping = mappings.get(chat_id) or UserWalletMapping(chat_id=chat_id, created_at=now, updated_at=now)
            mapping = records.add_wallet_to_mapping(mapping, wallet, set_primary, now)
            await self._put(mappings, mapping)
        return replace(mapping)

    async def remove_wallet(self, chat_id: int, wallet: str) -> bool:
        async with self._lock:
            mappings = await self._mappings.current()
            mapping = mappings.get(chat_id)
            if mapping is None or wallet not in mapping.wallet_addresses:
                return False
            await self._put(mappings, records.remove_wallet_from_mapping(mapping, wallet, utc_now()))
        return True

    async def get_primary_wallet(self, chat_id: int) -> Optional[str]:
        mapping = (await self._all()).get(chat_id)
        return records.primary_wallet_of(mapping) if mapping else None

    async def get_destinations_for_wallet(self, wallet: str) -> List[int]:
        return [chat_id for chat_id, m in (await self._all()).items() if wallet in m.wallet_addresses]
