"""
Per-message understanding cache.

Caches general-classification results keyed by the normalized message and
a fingerprint of the context it was classified in. Count and aggregate
questions are never stored or served, since their answer moves with the
data.
"""

import json
import re
from typing import Optional

from crmpilot.cache.store import TTLCache
from crmpilot.config import CacheSettings
from crmpilot.engine.intent import Intent
from crmpilot.utils.logging import logger

AGGREGATE_PATTERNS = [
    r"\bhow many\b",
    r"\bcount\b",
    r"\bnumber of\b",
    r"\btotal\b",
    r"\bsum of\b",
    r"\baverage\b",
]


def is_aggregate_query(message: str) -> bool:
    text = message.lower()
    return any(re.search(p, text) for p in AGGREGATE_PATTERNS)


def normalize_message(message: str) -> str:
    text = re.sub(r"[^\w\s']", " ", message.lower())
    return re.sub(r"\s+", " ", text).strip()


def context_fingerprint(context: dict) -> str:
    keep = {
        "userId": context.get("userId"),
        "teamId": context.get("teamId"),
        "lastAction": context.get("lastAction"),
    }
    return json.dumps(keep, sort_keys=True, default=str)


class UnderstandingCache:
    """Maps (message, context) pairs to previously classified intents."""

    def __init__(self, cache: Optional[TTLCache] = None, settings: Optional[CacheSettings] = None):
        settings = settings or CacheSettings()
        self.cache = cache or TTLCache(
            max_size=settings.understanding_max_size,
            default_ttl=settings.understanding_ttl,
            eviction_fraction=settings.eviction_fraction,
            name="understanding",
        )

    @staticmethod
    def make_key(message: str, context: dict) -> str:
        return f"{normalize_message(message)}|{context_fingerprint(context)}"

    def get(self, message: str, context: dict) -> Optional[Intent]:
        if is_aggregate_query(message):
            return None
        intent = self.cache.get(self.make_key(message, context))
        if intent is not None:
            logger.debug(f"Understanding cache hit: {message[:50]}")
        return intent

    def set(self, message: str, context: dict, intent: Intent) -> bool:
        """Store an intent; returns False for messages that must stay fresh."""
        if is_aggregate_query(message):
            return False
        self.cache.set(self.make_key(message, context), intent)
        return True

    def invalidate(self, pattern: str) -> int:
        """Drop every entry whose key contains the substring."""
        return self.cache.invalidate_matching(pattern)

    def clear(self) -> None:
        self.cache.clear()

    def __len__(self) -> int:
        return len(self.cache)
