from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator


class TransportResponse(BaseModel):
    """What the transport collaborator hands back for one request."""

    status: int
    headers: dict[str, str] = {}
    body: Any = None
    content_type: str = ""
    json_error: bool = False

    @field_validator("headers")
    @classmethod
    def lowercase_header_names(cls, v: dict[str, str]) -> dict[str, str]:
        return {name.lower(): value for name, value in v.items()}

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())
