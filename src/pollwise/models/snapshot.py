from __future__ import annotations

from pydantic import BaseModel


class Snapshot(BaseModel):
    """Everything the store hands back at startup, keyed by endpoint key.

    Values are the engines' own ``export_*`` dicts; each engine validates its
    part in ``load_state``.
    """

    cache_entries: dict[str, dict] = {}
    profiles: dict[str, dict] = {}
    quotas: dict[str, dict] = {}

    @property
    def is_empty(self) -> bool:
        return not (self.cache_entries or self.profiles or self.quotas)
