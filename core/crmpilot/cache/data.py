"""
Cached access to CRM records.

Each (user, kind, filters) leg is cached on its own, so a batch that
shares some legs with an earlier batch only goes to the store for the
rest. Legs of a batch run as concurrent sibling tasks.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Optional

from crmpilot.cache.store import TTLCache
from crmpilot.config import CacheSettings, TimeoutSettings
from crmpilot.context.entities import RecordKind
from crmpilot.runtime.records import RecordStore
from crmpilot.utils.logging import logger


@dataclass
class DataQuery:
    """One leg of a batched fetch."""
    kind: RecordKind
    filters: dict = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.kind.plural


def filter_fingerprint(filters: Optional[dict]) -> str:
    if not filters:
        return "{}"
    return json.dumps(filters, sort_keys=True, default=str)


def apply_filters(records: list[dict], filters: Optional[dict]) -> list[dict]:
    """Keep records whose fields equal every filter value (case-insensitive for strings)."""
    if not filters:
        return records

    def matches(record: dict) -> bool:
        for key, expected in filters.items():
            actual = record.get(key)
            if isinstance(expected, str) and isinstance(actual, str):
                if actual.lower() != expected.lower():
                    return False
            elif actual != expected:
                return False
        return True

    return [r for r in records if matches(r)]


class DataCache:
    """Record-store reads behind a short-lived TTL cache."""

    def __init__(
        self,
        records: RecordStore,
        cache: Optional[TTLCache] = None,
        settings: Optional[CacheSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
    ):
        self.settings = settings or CacheSettings()
        self.timeouts = timeouts or TimeoutSettings()
        self.records = records
        self.cache = cache or TTLCache(
            max_size=self.settings.data_max_size,
            default_ttl=self.settings.data_ttl,
            eviction_fraction=self.settings.eviction_fraction,
            name="data",
        )
        self._teams: dict[str, str] = {}

    @staticmethod
    def make_key(user_id: str, kind: RecordKind, filters: Optional[dict] = None) -> str:
        return f"crm_{user_id}_{kind.plural}_{filter_fingerprint(filters)}"

    async def team_for(self, user_id: str) -> str:
        team_id = self._teams.get(user_id)
        if team_id is None:
            team_id = await asyncio.wait_for(
                self.records.resolve_team_id(user_id), timeout=self.timeouts.record_store
            )
            self._teams[user_id] = team_id
        return team_id

    async def get_records(
        self,
        user_id: str,
        kind: RecordKind,
        filters: Optional[dict] = None,
        team_id: Optional[str] = None,
    ) -> list[dict]:
        """Fetch one kind of record, from cache when fresh."""
        key = self.make_key(user_id, kind, filters)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Data cache hit: {key}")
            return cached

        if team_id is None:
            team_id = await self.team_for(user_id)
        rows = await asyncio.wait_for(
            self.records.list_by_kind(team_id, kind), timeout=self.timeouts.record_store
        )
        rows = apply_filters(rows, filters)
        self.cache.set(key, rows)
        return rows

    async def batch(
        self,
        user_id: str,
        queries: list[DataQuery],
        team_id: Optional[str] = None,
    ) -> dict[str, list[dict]]:
        """
        Run several independent fetches concurrently.

        A failing leg is logged and comes back empty; the other legs are
        unaffected. An explicit team_id (from the request) skips the
        membership lookup.

        Returns:
            Mapping of query label (e.g. "contacts") to records
        """
        if not queries:
            return {}

        if team_id is None:
            team_id = await self.team_for(user_id)
        results = await asyncio.gather(
            *(self.get_records(user_id, q.kind, q.filters, team_id) for q in queries),
            return_exceptions=True,
        )

        combined: dict[str, list[dict]] = {}
        for query, result in zip(queries, results):
            if isinstance(result, BaseException):
                logger.warning(f"Fetching {query.label} for {user_id} failed: {result!r}")
                combined[query.label] = []
            else:
                combined[query.label] = result
        return combined

    def invalidate_user(self, user_id: str) -> int:
        return self.cache.invalidate_matching(f"crm_{user_id}_")

    def clear(self) -> None:
        self.cache.clear()
        self._teams.clear()
