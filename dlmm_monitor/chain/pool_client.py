"""
HTTP client for the DLMM pool query service.

The service wraps the on-chain SDK and exposes read-only JSON endpoints:

    GET /pools/{address}                         -> pool summary
    GET /pools/{address}/active-bin              -> {"binId", "pricePerToken"}
    GET /pools/{address}/bins?lower=&upper=      -> {"bins": [...]} ascending by binId
    GET /pools/{address}/positions?wallet=       -> {"positions": [...]}

Token amounts arrive as decimal strings. Any network error, non-200 reply or
malformed body raises FetchError.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from dlmm_monitor.domain.models import BinInfo, OnChainPositionRecord, parse_amount
from dlmm_monitor.exceptions import FetchError, ValidationError
from dlmm_monitor.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PoolHandle:
    """Opaque pool reference returned by ``get_pool``."""
    address: str
    info: Dict[str, Any] = field(default_factory=dict, compare=False)


def parse_bin(data: Dict[str, Any]) -> BinInfo:
    try:
        price = str(data["pricePerToken"])
        float(price)
        return BinInfo(bin_id=int(data["binId"]), price_per_token=price)
    except (KeyError, TypeError, ValueError) as e:
        raise FetchError(f"Malformed bin in pool service reply: {data!r}") from e


def parse_bins(payload: Dict[str, Any]) -> List[BinInfo]:
    bins = payload.get("bins") if isinstance(payload, dict) else None
    if not isinstance(bins, list):
        raise FetchError("Pool service reply has no 'bins' list")
    return sorted((parse_bin(b) for b in bins), key=lambda b: b.bin_id)


def parse_position_record(data: Dict[str, Any]) -> OnChainPositionRecord:
    try:
        last_updated = data.get("lastUpdatedAt")
        return OnChainPositionRecord(
            lower_bin_id=int(data["lowerBinId"]),
            upper_bin_id=int(data["upperBinId"]),
            total_x_amount=parse_amount(data["totalXAmount"], "totalXAmount"),
            total_y_amount=parse_amount(data["totalYAmount"], "totalYAmount"),
            fee_x=parse_amount(data["feeX"], "feeX"),
            fee_y=parse_amount(data["feeY"], "feeY"),
            total_claimed_fee_x=parse_amount(data["totalClaimedFeeX"], "totalClaimedFeeX"),
            total_claimed_fee_y=parse_amount(data["totalClaimedFeeY"], "totalClaimedFeeY"),
            reward_one=parse_amount(data.get("rewardOne", "0"), "rewardOne"),
            reward_two=parse_amount(data.get("rewardTwo", "0"), "rewardTwo"),
            last_updated_at=int(last_updated) if last_updated is not None else None,
        )
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise FetchError(f"Malformed position record in pool service reply: {e}") from e


def parse_position_records(payload: Dict[str, Any]) -> List[OnChainPositionRecord]:
    records = payload.get("positions") if isinstance(payload, dict) else None
    if not isinstance(records, list):
        raise FetchError("Pool service reply has no 'positions' list")
    return [parse_position_record(r) for r in records]


class HttpPoolQueryClient:
    """PoolQueryClient over the pool query service's HTTP API."""

    def __init__(self, base_url: str, timeout_seconds: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        session = await self._get_session()
        try:
            async with session.get(url, params=params) as response:
                if response.status != 200:
                    body = await response.text()
                    raise FetchError(f"Pool service error {response.status} for {path}: {body[:200]}")
                return await response.json()
        except aiohttp.ClientError as e:
            logger.warning("Pool service request failed", path=path, error=str(e))
            raise FetchError(f"Pool service request failed for {path}: {e}") from e
        except asyncio.TimeoutError as e:
            logger.warning("Pool service request timed out", path=path)
            raise FetchError(f"Pool service request timed out for {path}") from e
        except ValueError as e:
            raise FetchError(f"Pool service returned invalid JSON for {path}") from e

    async def get_pool(self, pool_address: str) -> PoolHandle:
        info = await self._get_json(f"/pools/{pool_address}")
        return PoolHandle(address=pool_address, info=info if isinstance(info, dict) else {})

    async def get_active_bin(self, pool: PoolHandle) -> BinInfo:
        payload = await self._get_json(f"/pools/{pool.address}/active-bin")
        if not isinstance(payload, dict):
            raise FetchError("Pool service returned a malformed active bin")
        return parse_bin(payload)

    async def get_bins_in_range(self, pool: PoolHandle, lower_bin_id: int, upper_bin_id: int) -> List[BinInfo]:
        payload = await self._get_json(
            f"/pools/{pool.address}/bins",
            params={"lower": lower_bin_id, "upper": upper_bin_id},
        )
        return parse_bins(payload)

    async def get_user_position_records(self, pool: PoolHandle, wallet: str) -> List[OnChainPositionRecord]:
        payload = await self._get_json(f"/pools/{pool.address}/positions", params={"wallet": wallet})
        return parse_position_records(payload)
