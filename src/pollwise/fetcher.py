"""HTTP transport collaborator.

All upstream network I/O goes through a single HttpTransport instance. The
transport receives an httpx.AsyncClient via constructor injection; the
lifespan owns the client lifecycle. It only performs the request and decodes
the body; status interpretation belongs to the gatekeeper.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from pollwise.config import FetcherSettings
from pollwise.errors import TransportError
from pollwise.models.transport import TransportResponse

log = structlog.get_logger()


def build_http_client(settings: FetcherSettings | None = None) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    settings = settings or FetcherSettings()
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=settings.max_connections,
            max_keepalive_connections=settings.max_keepalive_connections,
        ),
    )


def _is_json(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type.endswith(("/json", "+json"))


def _decode_body(response: httpx.Response, content_type: str) -> tuple[Any, bool]:
    """Return the decoded body and whether a JSON body failed to parse.

    JSON responses are parsed; anything else comes back as text. A JSON
    content type whose body does not parse (including one nested too deeply
    for the decoder) comes back as text with the error flag set.
    """
    if _is_json(content_type):
        try:
            return response.json(), False
        except (ValueError, RecursionError) as exc:
            log.debug("fetch_invalid_json", url=str(response.url), error=type(exc).__name__)
            return response.text, True
    return response.text, False


class HttpTransport:
    """httpx-backed implementation of TransportProtocol."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def request(self, url: str) -> TransportResponse:
        """GET a URL. Raises TransportError on network failures, never on HTTP status."""
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            log.warning("fetch_failed", url=url, error=str(exc))
            raise TransportError(f"Network error fetching {url}: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        body, json_error = _decode_body(response, content_type)

        log.info(
            "fetch_complete",
            url=url,
            status_code=response.status_code,
            content_length=len(response.content),
        )
        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers.items()),
            body=body,
            content_type=content_type,
            json_error=json_error,
        )
