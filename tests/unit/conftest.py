"""Shared fakes for unit tests."""
from typing import Optional

import pytest

from src.adlayer_core.cache.ephemeral import EphemeralCache
from src.adlayer_core.cache.snapshot_store import GuardedSnapshotStore, InMemorySnapshotStore


class FakeTokens:
    """Token provider with a fixed token and account list."""

    def __init__(self, token: Optional[str] = "test-token", accounts=("act_1",)):
        self.token = token
        self.accounts = list(accounts)

    async def get_token(self, store_id: str) -> Optional[str]:
        return self.token

    async def get_ad_accounts(self, store_id: str) -> list[str]:
        return list(self.accounts)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return EphemeralCache(max_entries=64, clock=clock)


@pytest.fixture
def backend():
    return InMemorySnapshotStore()


@pytest.fixture
def snapshots(backend):
    return GuardedSnapshotStore(backend)
