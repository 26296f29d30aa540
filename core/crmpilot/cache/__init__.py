"""Cache & rate substrate - TTL caches and request counters."""

from crmpilot.cache.store import CacheEntry, TTLCache
from crmpilot.cache.data import DataCache, DataQuery
from crmpilot.cache.understanding import UnderstandingCache, is_aggregate_query
from crmpilot.cache.rate_limiter import RateLimiter, RateWindow

__all__ = [
    "CacheEntry",
    "TTLCache",
    "DataCache",
    "DataQuery",
    "UnderstandingCache",
    "is_aggregate_query",
    "RateLimiter",
    "RateWindow",
]
