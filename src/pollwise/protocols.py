"""Protocol interfaces for swappable collaborators.

The gatekeeper and AppState reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight fake transports and in-memory stores
- Other transports (a proxy, a recorded fixture) to be plugged in unchanged
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pollwise.models.snapshot import Snapshot
    from pollwise.models.transport import TransportResponse


class TransportProtocol(Protocol):
    """Performs one upstream request. Raises ``TransportError`` on network failure."""

    async def request(self, url: str) -> TransportResponse: ...


class SnapshotStoreProtocol(Protocol):
    """Flat key → value persistence for engine state."""

    async def load(self) -> Snapshot: ...

    async def save_endpoint(
        self,
        key: str,
        *,
        cache_entry: dict | None,
        profile: dict | None,
        quota: dict | None,
    ) -> None: ...

    async def delete_cache_entry(self, key: str) -> None: ...

    async def clear_cache_entries(self) -> None: ...

    async def delete_quota(self, key: str) -> None: ...
