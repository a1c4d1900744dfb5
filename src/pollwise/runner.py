"""Command-line entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState and the gatekeeper via the lifespan context manager
- Start one poll scheduler per configured URL
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from pollwise import __version__
from pollwise.config import Settings
from pollwise.fetcher import HttpTransport, build_http_client
from pollwise.gatekeeper import RequestGatekeeper
from pollwise.schedulers import run_poll_scheduler
from pollwise.state import build_state
from pollwise.store import SnapshotStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from pollwise.models.result import PollResult

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # Logs go to stderr; stdout is left for the caller
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncGenerator[RequestGatekeeper, None]:
    """Create and tear down all shared resources for the process lifetime."""
    http_client = build_http_client(settings.fetcher)

    db: aiosqlite.Connection | None = None
    store: SnapshotStore | None = None
    if settings.persistence.enabled:
        db_path = Path(settings.persistence.db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(db_path))
        store = SnapshotStore(db)
        await store.init_db()

    state = build_state(
        settings,
        transport=HttpTransport(http_client),
        store=store,
        http_client=http_client,
    )
    gatekeeper = RequestGatekeeper(state)
    await gatekeeper.restore()

    log.info("pollwise_started", version=__version__, persistence=store is not None)
    try:
        yield gatekeeper
    finally:
        await http_client.aclose()
        if db is not None:
            await db.close()
        log.info("pollwise_stopping")


def _log_result(url: str, result: PollResult) -> None:
    log.info(
        "poll_result",
        url=url,
        ok=result.ok,
        cached=result.cached,
        stale=result.stale,
        was_learning=result.was_learning,
        message=result.message,
        retry_after_seconds=result.quota.retry_after_seconds,
    )


async def run(settings: Settings, urls: list[str]) -> None:
    async with lifespan(settings) as gatekeeper:
        tasks = [
            asyncio.create_task(
                run_poll_scheduler(
                    gatekeeper,
                    url,
                    settings.poller.interval_seconds,
                    on_result=lambda result, url=url: _log_result(url, result),
                )
            )
            for url in urls
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    setup_logging(settings)

    urls = [*settings.poller.urls, *sys.argv[1:]]
    if not urls:
        log.error("no_urls_configured", hint="Pass URLs as arguments or set poller.urls")
        sys.exit(2)

    with suppress(KeyboardInterrupt):
        asyncio.run(run(settings, urls))


if __name__ == "__main__":
    main()
