"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timezone

import pytest

from dlmm_monitor.domain.models import CreatePositionParams, Position, TokenPair, new_id
from dlmm_monitor.storage.db import init_db
from dlmm_monitor.storage.file_store import FilePositionStorage, FileUserWalletMapStorage
from dlmm_monitor.storage.repository import SqlPositionStorage, SqlUserWalletMapStorage
from tests.fakes import (
    POOL,
    SOL_MINT,
    USDC_MINT,
    WALLET,
    FakeClock,
    FakePoolClient,
    RecordingNotifier,
)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def token_pair() -> TokenPair:
    return TokenPair(
        token_a_symbol="SOL",
        token_b_symbol="USDC",
        token_a_mint=SOL_MINT,
        token_b_mint=USDC_MINT,
        token_a_decimals=9,
        token_b_decimals=6,
    )


@pytest.fixture
def make_position(token_pair):
    """Factory for in-memory positions (not persisted)."""

    def _make(**overrides) -> Position:
        now = datetime(2025, 3, 22, 11, 0, 0, tzinfo=timezone.utc)
        values = dict(
            id=new_id(),
            pool_address=POOL,
            token_pair=token_pair,
            lower_bin_id=100,
            upper_bin_id=200,
            lower_price_limit=1.0,
            upper_price_limit=1.0,
            user_wallet=WALLET,
            created_at=now,
            updated_at=now,
            chat_id=4242,
        )
        values.update(overrides)
        return Position(**values)

    return _make


@pytest.fixture
def make_params(token_pair):
    """Factory for valid creation params."""

    def _make(**overrides) -> CreatePositionParams:
        values = dict(
            pool_address=POOL,
            token_pair=token_pair,
            lower_bin_id=100,
            upper_bin_id=200,
            lower_price_limit=1.0,
            upper_price_limit=1.0,
            user_wallet=WALLET,
            initial_liquidity_a="5000000000",
            initial_liquidity_b="0",
            chat_id=4242,
        )
        values.update(overrides)
        return CreatePositionParams(**values)

    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pool_client() -> FakePoolClient:
    return FakePoolClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def file_storage(tmp_path) -> FilePositionStorage:
    return FilePositionStorage(str(tmp_path / "data"))


@pytest.fixture
def sqlite_db():
    db = init_db("sqlite://")
    yield db
    db.dispose()


@pytest.fixture(params=["file", "database"])
def storage(request, tmp_path):
    """Every PositionStorage backend, for contract tests."""
    if request.param == "file":
        yield FilePositionStorage(str(tmp_path / "data"))
    else:
        db = init_db("sqlite://")
        yield SqlPositionStorage(db)
        db.dispose()


@pytest.fixture(params=["file", "database"])
def wallet_map(request, tmp_path):
    if request.param == "file":
        yield FileUserWalletMapStorage(str(tmp_path / "data"))
    else:
        db = init_db("sqlite://")
        yield SqlUserWalletMapStorage(db)
        db.dispose()
