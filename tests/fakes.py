"""
In-memory collaborators shared by the test suite.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from dlmm_monitor.domain.models import BinInfo, OnChainPositionRecord
from dlmm_monitor.exceptions import FetchError, NotificationError

WALLET = "Wa11etAddress1111111111111111111111111111111"
POOL = "Poo1Address11111111111111111111111111111111"
SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 22, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakePoolClient:
    """In-memory PoolQueryClient. Every bin has the same price unless ``prices`` says otherwise."""

    def __init__(self, price: str = "1.0"):
        self.price = price
        self.prices: Dict[int, str] = {}
        self.active_bins: Dict[str, int] = {}
        self.records: Dict[Tuple[str, str], List[OnChainPositionRecord]] = {}
        self.fail_active_bin: Set[str] = set()
        self.fail_enrichment: Set[str] = set()
        self.range_requests: List[Tuple[int, int]] = []

    def _bin(self, bin_id: int) -> BinInfo:
        return BinInfo(bin_id=bin_id, price_per_token=self.prices.get(bin_id, self.price))

    async def get_pool(self, pool_address: str) -> str:
        return pool_address

    async def get_active_bin(self, pool: str) -> BinInfo:
        if pool in self.fail_active_bin:
            raise FetchError(f"active bin unavailable for {pool}")
        return self._bin(self.active_bins[pool])

    async def get_bins_in_range(self, pool: str, lower_bin_id: int, upper_bin_id: int) -> List[BinInfo]:
        if pool in self.fail_enrichment:
            raise FetchError("bin range unavailable")
        self.range_requests.append((lower_bin_id, upper_bin_id))
        return [self._bin(b) for b in range(lower_bin_id, upper_bin_id + 1)]

    async def get_user_position_records(self, pool: str, wallet: str) -> List[OnChainPositionRecord]:
        if pool in self.fail_enrichment:
            raise FetchError("position records unavailable")
        return list(self.records.get((pool, wallet), []))


class RecordingNotifier:
    """NotificationSink that keeps every message."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[int, str, Optional[dict]]] = []

    async def send(self, destination_id: int, text: str, options: Optional[dict] = None) -> None:
        if self.fail:
            raise NotificationError("chat unreachable")
        self.sent.append((destination_id, text, options))

    @property
    def texts(self) -> List[str]:
        return [text for _, text, _ in self.sent]


class StaticResolver:
    def __init__(self, mapping: Optional[Dict[str, List[int]]] = None):
        self.mapping = mapping or {}

    async def get_destinations_for_wallet(self, wallet: str) -> List[int]:
        return list(self.mapping.get(wallet, []))


async def drain(rounds: int = 5) -> None:
    """Let spawned asyncio tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_record(lower: int = 100, upper: int = 200, **overrides) -> OnChainPositionRecord:
    values = dict(
        lower_bin_id=lower,
        upper_bin_id=upper,
        total_x_amount=1_000_000,
        total_y_amount=2_000_000,
        fee_x=10,
        fee_y=20,
        total_claimed_fee_x=0,
        total_claimed_fee_y=0,
        reward_one=0,
        reward_two=0,
        last_updated_at=1742644800,
    )
    values.update(overrides)
    return OnChainPositionRecord(**values)

