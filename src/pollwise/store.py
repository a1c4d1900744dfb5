"""SQLite snapshot store for engine state.

Three flat key → JSON tables hold cache entries, endpoint profiles (trimmed
history, fingerprints only) and quota states. The snapshot is loaded once at
startup and written per endpoint after every mutating poll.

All store operations catch ``aiosqlite.Error`` internally and degrade
gracefully: load failures return an empty snapshot (the engines simply start
cold), write failures are logged and ignored (the poll result is still
returned). Persistence problems never cross the SnapshotStore boundary.
"""

from __future__ import annotations

import json

import aiosqlite
import structlog

from pollwise.models.snapshot import Snapshot

log = structlog.get_logger()

_CREATE_CACHE_TABLE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key        TEXT PRIMARY KEY,
    payload    TEXT NOT NULL,
    expires_at INTEGER NOT NULL
)
"""

_CREATE_PROFILE_TABLE = """
CREATE TABLE IF NOT EXISTS endpoint_profiles (
    key     TEXT PRIMARY KEY,
    payload TEXT NOT NULL
)
"""

_CREATE_QUOTA_TABLE = """
CREATE TABLE IF NOT EXISTS quota_states (
    key     TEXT PRIMARY KEY,
    payload TEXT NOT NULL
)
"""


class SnapshotStore:
    """SQLite-backed store implementing SnapshotStoreProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_CACHE_TABLE)
        await self._db.execute(_CREATE_PROFILE_TABLE)
        await self._db.execute(_CREATE_QUOTA_TABLE)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self) -> Snapshot:
        """Read every table. Returns an empty snapshot on read failure."""
        try:
            snapshot = Snapshot(
                cache_entries=await self._read_table("cache_entries"),
                profiles=await self._read_table("endpoint_profiles"),
                quotas=await self._read_table("quota_states"),
            )
        except aiosqlite.Error:
            log.warning("snapshot_load_error", exc_info=True)
            return Snapshot()

        log.info(
            "snapshot_loaded",
            cache_entries=len(snapshot.cache_entries),
            profiles=len(snapshot.profiles),
            quotas=len(snapshot.quotas),
        )
        return snapshot

    async def _read_table(self, table: str) -> dict[str, dict]:
        cursor = await self._db.execute(f"SELECT key, payload FROM {table}")  # noqa: S608
        rows: dict[str, dict] = {}
        for key, payload in await cursor.fetchall():
            try:
                rows[key] = json.loads(payload)
            except ValueError:
                log.warning("snapshot_row_corrupt", table=table, key=key)
        return rows

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save_endpoint(
        self,
        key: str,
        *,
        cache_entry: dict | None,
        profile: dict | None,
        quota: dict | None,
    ) -> None:
        """Upsert whatever state exists for one endpoint. Non-fatal on failure."""
        try:
            if cache_entry is not None:
                await self._db.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, payload, expires_at) "
                    "VALUES (?, ?, ?)",
                    (key, json.dumps(cache_entry), cache_entry["expires_at"]),
                )
            if profile is not None:
                await self._db.execute(
                    "INSERT OR REPLACE INTO endpoint_profiles (key, payload) VALUES (?, ?)",
                    (key, json.dumps(profile)),
                )
            if quota is not None:
                await self._db.execute(
                    "INSERT OR REPLACE INTO quota_states (key, payload) VALUES (?, ?)",
                    (key, json.dumps(quota)),
                )
            await self._db.commit()
        except (aiosqlite.Error, TypeError, ValueError, RecursionError):
            log.warning("snapshot_write_error", key=key, exc_info=True)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def delete_cache_entry(self, key: str) -> None:
        await self._execute_and_commit(
            "DELETE FROM cache_entries WHERE key = ?", (key,), event_key=key
        )

    async def clear_cache_entries(self) -> None:
        await self._execute_and_commit("DELETE FROM cache_entries", (), event_key="*")

    async def delete_quota(self, key: str) -> None:
        await self._execute_and_commit(
            "DELETE FROM quota_states WHERE key = ?", (key,), event_key=key
        )

    async def _execute_and_commit(self, sql: str, params: tuple, *, event_key: str) -> None:
        try:
            await self._db.execute(sql, params)
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("snapshot_delete_error", key=event_key, exc_info=True)
