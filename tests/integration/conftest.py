"""Integration test fixtures.

Provides a fully wired AppState with in-memory SQLite, a real httpx client
(mocked per test with respx) and the shared manual clock from
tests/conftest.py.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import httpx
import pytest

from pollwise.config import Settings
from pollwise.fetcher import HttpTransport
from pollwise.gatekeeper import RequestGatekeeper
from pollwise.state import AppState, build_state
from pollwise.store import SnapshotStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from tests.conftest import ManualClock


@pytest.fixture()
async def store() -> AsyncGenerator[SnapshotStore, None]:
    async with aiosqlite.connect(":memory:") as db:
        snapshot_store = SnapshotStore(db)
        await snapshot_store.init_db()
        yield snapshot_store


@pytest.fixture()
async def http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture()
def app_state(
    clock: ManualClock, store: SnapshotStore, http_client: httpx.AsyncClient
) -> AppState:
    """Full AppState wired for gatekeeper integration tests."""
    return build_state(
        Settings(),
        transport=HttpTransport(http_client),
        store=store,
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture()
def gatekeeper(app_state: AppState) -> RequestGatekeeper:
    return RequestGatekeeper(app_state)
