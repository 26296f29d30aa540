"""
Tests for the TTL cache, the data cache and the understanding cache.
"""

import pytest

from conftest import TEAM, USER, make_records

from crmpilot.cache.data import DataCache, DataQuery
from crmpilot.cache.store import TTLCache
from crmpilot.cache.understanding import UnderstandingCache, is_aggregate_query
from crmpilot.context.entities import RecordKind
from crmpilot.engine.intent import Intent, IntentAction
from crmpilot.runtime.records import InMemoryRecordStore
from crmpilot.utils.errors import NotFoundError


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyRecordStore(InMemoryRecordStore):
    """Fails every read of one record kind."""

    def __init__(self, broken: RecordKind, **kwargs):
        super().__init__(**kwargs)
        self.broken = broken

    async def list_by_kind(self, team_id, kind):
        if kind == self.broken:
            raise ConnectionError("deals table unavailable")
        return await super().list_by_kind(team_id, kind)


class TestTTLCache:

    def test_entries_expire_lazily(self):
        clock = FakeClock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("a", 1)

        clock.advance(9)
        assert cache.get("a") == 1
        clock.advance(2)
        assert cache.get("a") is None
        assert "a" not in cache

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.advance(5)
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_full_cache_evicts_least_accessed_fifth(self):
        cache = TTLCache(max_size=10, clock=FakeClock())
        for i in range(10):
            cache.set(f"k{i}", i)
        for i in range(2, 10):
            cache.get(f"k{i}")

        cache.set("new", "value")
        assert "k0" not in cache
        assert "k1" not in cache
        assert "new" in cache
        assert len(cache) == 9
        assert cache.evictions == 2

    def test_equal_counts_evict_oldest(self):
        cache = TTLCache(max_size=5, clock=FakeClock())
        for i in range(5):
            cache.set(f"k{i}", i)
        cache.set("new", "value")
        assert "k0" not in cache
        assert all(f"k{i}" in cache for i in range(1, 5))

    def test_expired_entries_go_before_eviction(self):
        clock = FakeClock()
        cache = TTLCache(max_size=3, default_ttl=10, clock=clock)
        cache.set("stale", 1, ttl=1)
        cache.set("a", 2)
        cache.set("b", 3)
        clock.advance(5)

        cache.set("c", 4)
        assert "stale" not in cache
        assert {"a", "b", "c"} <= set(cache.keys())
        assert cache.evictions == 0

    def test_overwrite_does_not_evict(self):
        cache = TTLCache(max_size=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        assert cache.get("a") == 3
        assert len(cache) == 2

    def test_invalidate_matching(self):
        cache = TTLCache(clock=FakeClock())
        cache.set("crm_u1_deals_{}", [])
        cache.set("crm_u1_contacts_{}", [])
        cache.set("crm_u2_deals_{}", [])
        assert cache.invalidate_matching("crm_u1_") == 2
        assert cache.keys() == ["crm_u2_deals_{}"]

    def test_stats(self):
        cache = TTLCache(name="data", clock=FakeClock())
        cache.set("a", {"x": 1})
        cache.get("a")
        cache.get("missing")
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(0.5)
        assert stats["approximate_bytes"] > 0


class TestDataCache:

    @pytest.mark.asyncio
    async def test_reads_are_cached_per_leg(self, records):
        cache = DataCache(records)
        await cache.get_records(USER, RecordKind.DEAL)
        calls = records.calls
        rows = await cache.get_records(USER, RecordKind.DEAL)
        assert records.calls == calls
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_filters_are_part_of_the_key(self, records):
        cache = DataCache(records)
        proposal = await cache.get_records(USER, RecordKind.DEAL, {"stage": "Proposal"})
        everything = await cache.get_records(USER, RecordKind.DEAL)
        assert {d["name"] for d in proposal} == {"Acme Renewal", "Initech Upgrade"}
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_batch_keeps_going_when_one_leg_fails(self):
        healthy = make_records()
        store = FlakyRecordStore(RecordKind.DEAL, records=healthy._records, memberships=healthy._memberships)

        cache = DataCache(store)
        rows = await cache.batch(USER, [DataQuery(kind=RecordKind.CONTACT), DataQuery(kind=RecordKind.DEAL)])
        assert rows["deals"] == []
        assert len(rows["contacts"]) == 3

    @pytest.mark.asyncio
    async def test_invalidate_user(self, records):
        cache = DataCache(records)
        await cache.batch(USER, [DataQuery(kind=k) for k in RecordKind])
        assert cache.invalidate_user(USER) == len(RecordKind)
        assert len(cache.cache) == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, records):
        assert await DataCache(records).batch(USER, []) == {}

    @pytest.mark.asyncio
    async def test_request_team_skips_membership_lookup(self, records):
        cache = DataCache(records)
        rows = await cache.batch("outsider", [DataQuery(kind=RecordKind.CONTACT)], team_id=TEAM)
        assert len(rows["contacts"]) == 3
        deals = await cache.get_records("outsider", RecordKind.DEAL, team_id=TEAM)
        assert len(deals) == 3

    @pytest.mark.asyncio
    async def test_unknown_user_without_team(self, records):
        with pytest.raises(NotFoundError):
            await DataCache(records).get_records("outsider", RecordKind.DEAL)

    @pytest.mark.asyncio
    async def test_dev_store_default_team(self):
        store = InMemoryRecordStore(default_team_id=TEAM)
        store.add(TEAM, RecordKind.DEAL, {"id": "d1", "name": "Acme Renewal"})
        assert await store.resolve_team_id("outsider") == TEAM
        assert len(await DataCache(store).get_records("outsider", RecordKind.DEAL)) == 1


class TestUnderstandingCache:

    CONTEXT = {"userId": USER, "teamId": "team-1", "lastAction": None, "phase": "exploration"}

    def _intent(self) -> Intent:
        return Intent(action=IntentAction.VIEW_DATA, confidence=0.9)

    def test_hits_ignore_punctuation_and_case(self):
        cache = UnderstandingCache()
        assert cache.set("Show me my deals!", self.CONTEXT, self._intent())
        assert cache.get("show me my deals", self.CONTEXT) == self._intent()

    def test_context_is_part_of_the_key(self):
        cache = UnderstandingCache()
        cache.set("show me my deals", self.CONTEXT, self._intent())
        other = dict(self.CONTEXT, lastAction="create_chart")
        assert cache.get("show me my deals", other) is None

    def test_unrelated_context_keys_do_not_matter(self):
        cache = UnderstandingCache()
        cache.set("show me my deals", self.CONTEXT, self._intent())
        other = dict(self.CONTEXT, phase="analysis", interactionCount=4)
        assert cache.get("show me my deals", other) is not None

    @pytest.mark.parametrize("message", [
        "how many deals do I have",
        "count my contacts",
        "total pipeline value",
        "what is the average deal size",
    ])
    def test_aggregate_queries_are_never_cached(self, message):
        cache = UnderstandingCache()
        assert is_aggregate_query(message)
        assert not cache.set(message, self.CONTEXT, self._intent())
        assert cache.get(message, self.CONTEXT) is None
        assert len(cache) == 0

    def test_invalidate_by_user(self):
        cache = UnderstandingCache()
        cache.set("show me my deals", self.CONTEXT, self._intent())
        cache.set("show me my deals", dict(self.CONTEXT, userId="u2"), self._intent())
        assert cache.invalidate(f'"userId": "{USER}"') == 1
        assert len(cache) == 1
