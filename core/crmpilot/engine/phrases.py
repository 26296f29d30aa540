"""
Phrase cache: canonical phrasings that map straight to an intent.

Checked before any model call. Count and aggregate questions never use it
so they always get a fresh resolution.
"""

from typing import Optional

from crmpilot.cache.understanding import is_aggregate_query, normalize_message
from crmpilot.engine.intent import (
    Intent,
    IntentAction,
    IntentContext,
    IntentEntities,
    ReferringTo,
)

# phrase -> (action, entities, confidence)
PHRASES: dict[str, tuple[IntentAction, dict, float]] = {}


def _add(phrases: list[str], action: IntentAction, entities: dict, confidence: float) -> None:
    for phrase in phrases:
        PHRASES[phrase] = (action, entities, confidence)


for _data_type in ("contacts", "deals", "accounts", "activities"):
    _add(
        [
            f"show me {_data_type}",
            f"show {_data_type}",
            f"list {_data_type}",
            f"show me my {_data_type}",
            f"list my {_data_type}",
            f"view {_data_type}",
            f"view my {_data_type}",
        ],
        IntentAction.VIEW_DATA,
        {"data_type": _data_type},
        0.95,
    )

_add(["create a chart", "make a chart", "build a chart"], IntentAction.CREATE_CHART, {}, 0.9)
_add(["send email", "send an email", "email someone"], IntentAction.SEND_EMAIL, {}, 0.9)
_add(["help", "what can you do", "how does this work"], IntentAction.GENERAL_CONVERSATION, {}, 0.8)


class PhraseCache:
    """Exact-match lookup over normalized messages."""

    def __init__(self, phrases: Optional[dict[str, tuple[IntentAction, dict, float]]] = None):
        self.phrases = dict(PHRASES if phrases is None else phrases)
        self.hits = 0

    def lookup(self, message: str) -> Optional[Intent]:
        if is_aggregate_query(message):
            return None
        entry = self.phrases.get(normalize_message(message))
        if entry is None:
            return None

        action, entities, confidence = entry
        self.hits += 1
        return Intent(
            action=action,
            confidence=confidence,
            original_message=message,
            entities=IntentEntities(**entities),
            context=IntentContext(referring_to=ReferringTo.NEW_REQUEST),
        )

    def __len__(self) -> int:
        return len(self.phrases)
