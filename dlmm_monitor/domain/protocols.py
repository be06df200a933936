"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts that infrastructure layers must
implement. The reconciliation engine depends only on these, so the pool
query client, the notification sink and the storage backend can be swapped
(file vs. database, HTTP vs. in-memory fakes in tests).
"""
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from dlmm_monitor.domain.models import (
    BinInfo,
    CreatePositionParams,
    OnChainPositionRecord,
    Position,
    PositionHistory,
)


@runtime_checkable
class PoolQueryClient(Protocol):
    """
    Read-only access to a DLMM pool.

    Every call may fail (network, timeout, bad reply) and raise FetchError.
    ``get_pool`` returns an opaque handle passed back to the other calls.
    """

    async def get_pool(self, pool_address: str) -> Any: ...

    async def get_active_bin(self, pool: Any) -> BinInfo: ...

    async def get_bins_in_range(self, pool: Any, lower_bin_id: int, upper_bin_id: int) -> List[BinInfo]: ...

    async def get_user_position_records(self, pool: Any, wallet: str) -> List[OnChainPositionRecord]: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers a formatted message to an opaque destination id."""

    async def send(self, destination_id: int, text: str, options: Optional[Dict[str, Any]] = None) -> None: ...


@runtime_checkable
class DestinationResolver(Protocol):
    """Maps an owning wallet to the destinations that should be notified."""

    async def get_destinations_for_wallet(self, wallet: str) -> List[int]: ...


@runtime_checkable
class PositionStorage(Protocol):
    """
    CRUD store for positions plus their append-only history.

    Implemented by FilePositionStorage and SqlPositionStorage.
    """

    async def create_position(self, params: CreatePositionParams) -> Position: ...

    async def save_position(self, position: Position) -> None: ...

    async def get_position(self, position_id: str) -> Optional[Position]: ...

    async def get_all_positions(self) -> List[Position]: ...

    async def get_positions_by_user(self, wallet: str) -> List[Position]: ...

    async def get_positions_by_chat_id(self, chat_id: int) -> List[Position]: ...

    async def update_position(self, position_id: str, updates: Dict[str, Any]) -> Position: ...

    async def delete_position(self, position_id: str) -> None: ...

    async def save_position_history(self, entry: PositionHistory) -> None: ...

    async def get_position_history(self, position_id: str) -> List[PositionHistory]: ...
