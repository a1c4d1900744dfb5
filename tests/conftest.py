"""Shared test fixtures for the pollwise test suite."""

from __future__ import annotations

import pytest

from pollwise.cache import AdaptiveCache
from pollwise.config import CacheSettings, QuotaSettings
from pollwise.profiler import ChangeProfiler
from pollwise.quota import QuotaGovernor

START_MS = 1_700_000_000_000


class ManualClock:
    """Deterministic clock: time only moves when a test advances it."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def profiler(clock: ManualClock) -> ChangeProfiler:
    return ChangeProfiler(CacheSettings(), clock=clock)


@pytest.fixture()
def cache(profiler: ChangeProfiler, clock: ManualClock) -> AdaptiveCache:
    return AdaptiveCache(profiler, clock=clock)


@pytest.fixture()
def governor(clock: ManualClock) -> QuotaGovernor:
    return QuotaGovernor(QuotaSettings(), clock=clock)
