"""Application state container.

AppState is created once at startup (inside the runner's lifespan context
manager) and handed to the RequestGatekeeper. It owns every engine
explicitly; there are no module-level singletons, so tests and embedding
applications can run several independent instances side by side.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pollwise.cache import AdaptiveCache
from pollwise.clock import now_ms
from pollwise.normalizer import ResponseNormalizer
from pollwise.profiler import ChangeProfiler
from pollwise.quota import QuotaGovernor

if TYPE_CHECKING:
    import httpx

    from pollwise.clock import Clock
    from pollwise.config import Settings
    from pollwise.protocols import SnapshotStoreProtocol, TransportProtocol


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to the gatekeeper."""

    settings: Settings
    profiler: ChangeProfiler
    cache: AdaptiveCache
    quota: QuotaGovernor
    normalizer: ResponseNormalizer
    transport: TransportProtocol
    store: SnapshotStoreProtocol | None = None
    http_client: httpx.AsyncClient | None = None
    clock: Clock = now_ms


def build_state(
    settings: Settings,
    *,
    transport: TransportProtocol,
    store: SnapshotStoreProtocol | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Clock = now_ms,
) -> AppState:
    """Wire fresh engines from settings, all sharing one clock."""
    profiler = ChangeProfiler(settings.cache, clock=clock)
    return AppState(
        settings=settings,
        profiler=profiler,
        cache=AdaptiveCache(profiler, clock=clock),
        quota=QuotaGovernor(settings.quota, clock=clock),
        normalizer=ResponseNormalizer(),
        transport=transport,
        store=store,
        http_client=http_client,
        clock=clock,
    )
