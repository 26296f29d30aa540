"""
Adaptive learning and personalization.

Keeps a bounded interaction log per user, derives usage patterns from it
and maintains one preference per category. Preferences above the apply
threshold reshape replies through small, independent text transforms.

Preference confidence follows an exponential-reinforcement rule: a
matching observation adds a fixed step, a conflicting one subtracts it,
and the value is replaced once confidence falls below the replace
threshold. It is a heuristic, not a Bayesian estimate.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np

from crmpilot.config import LearningSettings
from crmpilot.utils.logging import logger


class PreferenceCategory(str, Enum):
    COMMUNICATION_STYLE = "communication_style"
    DATA_PREFERENCE = "data_preference"
    CHART_PREFERENCE = "chart_preference"
    RESPONSE_LENGTH = "response_length"
    DETAIL_LEVEL = "detail_level"


@dataclass
class UserPreference:
    user_id: str
    category: PreferenceCategory
    preference: str
    confidence: float
    usage_count: int = 1
    last_updated: datetime = field(default_factory=datetime.now)


@dataclass
class InteractionRecord:
    """One turn, as seen by the learner."""
    user_id: str
    message: str
    action: str
    response: str = ""
    success: bool = True
    response_time: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def hour(self) -> int:
        return self.timestamp.hour

    @property
    def weekday(self) -> int:
        return self.timestamp.weekday()


@dataclass
class UsagePatterns:
    """Patterns recomputed from the retained interaction window."""
    common_actions: list[tuple[str, int]]
    hour_histogram: list[int]
    weekday_histogram: list[int]
    average_response_length: float
    response_length_bucket: str
    success_rate: float
    failure_actions: list[str]
    peak_hour: Optional[int] = None
    sample_size: int = 0


STYLE_PATTERNS = {
    "polite": [r"\bplease\b", r"\bthank(s| you)\b", r"\bwould you\b", r"\bcould you\b"],
    "direct": [r"\bjust\b", r"\bquickly\b", r"\bnow\b", r"\basap\b"],
    "friendly": [r"\bhey\b", r"\bhi\b", r"\bawesome\b", r"\bcool\b", r"\bgreat\b"],
}

DATA_WORDS = ["contacts", "deals", "accounts", "activities"]
CHART_WORDS = ["pie", "bar", "line", "area", "scatter"]
BRIEF_WORDS = [r"\bsummary\b", r"\bbrief\b", r"\bquick\b", r"\bshort\b"]
DETAILED_WORDS = [r"\bdetail(s|ed)?\b", r"\bexplain\b", r"\bcomprehensive\b", r"\bin depth\b"]

DETAIL_OFFER = " Would you like me to provide more details about this?"
LENGTH_OFFER = " I can provide more information if you need it."
POLITE_CLOSING = " Please let me know if you need anything else."


def _first_sentence(text: str) -> str:
    match = re.match(r"(.+?[.!?])(\s|$)", text.strip(), re.DOTALL)
    return match.group(1) if match else text


def _length_bucket(average: float) -> str:
    if average < 100:
        return "short"
    if average < 300:
        return "medium"
    return "long"


class AdaptiveLearner:
    """Learns per-user preferences and applies them to replies."""

    def __init__(self, settings: Optional[LearningSettings] = None):
        self.settings = settings or LearningSettings()
        self._interactions: dict[str, list[InteractionRecord]] = {}
        self._preferences: dict[str, dict[PreferenceCategory, UserPreference]] = {}
        self._patterns: dict[str, UsagePatterns] = {}

    # ─────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────

    def log_interaction(self, record: InteractionRecord) -> None:
        log = self._interactions.setdefault(record.user_id, [])
        log.append(record)
        if len(log) > self.settings.max_interactions:
            del log[: len(log) - self.settings.max_interactions]

        self.infer_preferences(record)
        if len(log) >= self.settings.min_for_patterns:
            self._patterns[record.user_id] = self.analyze_patterns(log)

    def interactions(self, user_id: str) -> list[InteractionRecord]:
        return list(self._interactions.get(user_id, []))

    def patterns(self, user_id: str) -> Optional[UsagePatterns]:
        return self._patterns.get(user_id)

    @staticmethod
    def analyze_patterns(log: list[InteractionRecord]) -> UsagePatterns:
        """Recompute usage patterns from scratch over the given window."""
        hours = np.bincount(np.array([r.hour for r in log], dtype=int), minlength=24)
        weekdays = np.bincount(np.array([r.weekday for r in log], dtype=int), minlength=7)
        lengths = np.array([len(r.response) for r in log], dtype=float)
        successes = np.array([r.success for r in log], dtype=bool)

        average_length = float(lengths.mean()) if lengths.size else 0.0
        failures = Counter(r.action for r in log if not r.success)

        return UsagePatterns(
            common_actions=Counter(r.action for r in log).most_common(5),
            hour_histogram=hours.tolist(),
            weekday_histogram=weekdays.tolist(),
            average_response_length=average_length,
            response_length_bucket=_length_bucket(average_length),
            success_rate=float(successes.mean()) if successes.size else 0.0,
            failure_actions=[action for action, _ in failures.most_common()],
            peak_hour=int(np.argmax(hours)) if hours.any() else None,
            sample_size=len(log),
        )

    # ─────────────────────────────────────────────────────────
    # PREFERENCES
    # ─────────────────────────────────────────────────────────

    def infer_preferences(self, record: InteractionRecord) -> None:
        """Update preferences from the signals in one interaction."""
        text = record.message.lower()
        user_id = record.user_id

        for style, patterns in STYLE_PATTERNS.items():
            if any(re.search(p, text) for p in patterns):
                self.update_preference(user_id, PreferenceCategory.COMMUNICATION_STYLE, style, 0.8)
                break

        for word in DATA_WORDS:
            if re.search(rf"\b{word}\b", text):
                self.update_preference(user_id, PreferenceCategory.DATA_PREFERENCE, word, 0.7)
                break

        for word in CHART_WORDS:
            if re.search(rf"\b{word}\b", text) and re.search(r"\b(chart|graph|plot)\b", text):
                self.update_preference(user_id, PreferenceCategory.CHART_PREFERENCE, word, 0.9)
                break

        if record.response:
            if len(record.response) < 100:
                self.update_preference(user_id, PreferenceCategory.RESPONSE_LENGTH, "short", 0.6)
            elif len(record.response) > 500:
                self.update_preference(user_id, PreferenceCategory.RESPONSE_LENGTH, "long", 0.6)

        if any(re.search(p, text) for p in BRIEF_WORDS):
            self.update_preference(user_id, PreferenceCategory.DETAIL_LEVEL, "brief", 0.7)
        elif any(re.search(p, text) for p in DETAILED_WORDS):
            self.update_preference(user_id, PreferenceCategory.DETAIL_LEVEL, "detailed", 0.7)

    def update_preference(
        self,
        user_id: str,
        category: PreferenceCategory,
        value: str,
        confidence: float,
    ) -> UserPreference:
        """
        Reinforce or weaken the stored preference for a category.

        A matching value gains one step (capped at 1.0). A different value
        costs one step (floored); below the replace threshold the stored
        value is swapped for the observation at its proposed confidence.
        """
        step = self.settings.reinforcement_step
        prefs = self._preferences.setdefault(user_id, {})
        current = prefs.get(category)
        now = datetime.now()

        if current is None:
            current = UserPreference(user_id, category, value, confidence, last_updated=now)
            prefs[category] = current
            return current

        if current.preference == value:
            current.confidence = min(1.0, current.confidence + step)
            current.usage_count += 1
        else:
            current.confidence = max(self.settings.confidence_floor, current.confidence - step)
            if current.confidence < self.settings.replace_below:
                logger.debug(
                    f"Replacing {category.value} for {user_id}: {current.preference} -> {value}"
                )
                current.preference = value
                current.confidence = confidence
                current.usage_count = 1
        current.last_updated = now
        return current

    def get_preferences(self, user_id: str) -> dict[PreferenceCategory, UserPreference]:
        return dict(self._preferences.get(user_id, {}))

    def active_preferences(self, user_id: str) -> dict[PreferenceCategory, str]:
        threshold = self.settings.apply_above
        return {
            category: pref.preference
            for category, pref in self._preferences.get(user_id, {}).items()
            if pref.confidence > threshold
        }

    # ─────────────────────────────────────────────────────────
    # PERSONALIZATION
    # ─────────────────────────────────────────────────────────

    def apply_personalization(self, response: str, user_id: str) -> str:
        """Apply every confident preference's transform to a reply."""
        return personalize(response, self.active_preferences(user_id))

    def contextual_suggestions(self, user_id: str, limit: int = 3) -> list[str]:
        suggestions = []
        patterns = self._patterns.get(user_id)
        if patterns:
            for action, _ in patterns.common_actions:
                text = ACTION_SUGGESTIONS.get(action)
                if text and text not in suggestions:
                    suggestions.append(text)

        prefs = self.active_preferences(user_id)
        chart = prefs.get(PreferenceCategory.CHART_PREFERENCE)
        if chart:
            suggestions.append(f"Create a {chart} chart of your data")
        data = prefs.get(PreferenceCategory.DATA_PREFERENCE)
        if data:
            suggestions.append(f"Show me my {data}")
        return suggestions[:limit]

    def insights(self, user_id: str) -> dict:
        patterns = self._patterns.get(user_id)
        prefs = self._preferences.get(user_id, {})
        return {
            "interactions": len(self._interactions.get(user_id, [])),
            "patterns": None if patterns is None else {
                "common_actions": patterns.common_actions,
                "peak_hour": patterns.peak_hour,
                "success_rate": patterns.success_rate,
                "response_length": patterns.response_length_bucket,
                "failure_actions": patterns.failure_actions,
            },
            "preferences": {
                category.value: {"value": p.preference, "confidence": round(p.confidence, 2)}
                for category, p in prefs.items()
            },
        }

    def reset(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._interactions.clear()
            self._preferences.clear()
            self._patterns.clear()
            return
        self._interactions.pop(user_id, None)
        self._preferences.pop(user_id, None)
        self._patterns.pop(user_id, None)


ACTION_SUGGESTIONS = {
    "create_chart": "Create another chart",
    "modify_chart": "Try a different chart type",
    "view_data": "View your latest records",
    "analyze_data": "Analyze your pipeline",
    "send_email": "Send a follow-up email",
    "update_contact": "Update a contact",
}


def personalize(response: str, preferences: dict[PreferenceCategory, str]) -> str:
    """
    Reshape a reply for a set of active preferences.

    Transforms run in a fixed order and each one looks only at the text
    it is given.
    """
    text = response
    style = preferences.get(PreferenceCategory.COMMUNICATION_STYLE)
    detail = preferences.get(PreferenceCategory.DETAIL_LEVEL)
    length = preferences.get(PreferenceCategory.RESPONSE_LENGTH)

    if detail == "brief" or length == "short":
        text = _first_sentence(text)
    if detail == "detailed" and len(text) < 200:
        text = text + DETAIL_OFFER
    if length == "long" and len(text) < 300:
        text = text + LENGTH_OFFER
    if style == "friendly":
        text = re.sub(r"\.(\s|$)", r" 😊\1", text)
    elif style == "polite" and POLITE_CLOSING.strip() not in text:
        text = text + POLITE_CLOSING
    return text
