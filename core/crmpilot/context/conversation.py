"""
Per-session conversation state.

Tracks the conversation phase, the active chart/topic, pending
confirmations and clarifications, recent topics and a bounded history.
State lives in a ConversationStateStore that callers own and inject;
nothing expires on its own.
"""

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from crmpilot.context.entities import ContextualReference, PossibleMatch
from crmpilot.utils.logging import logger


class ConversationPhase(str, Enum):
    """Coarse stage of a multi-turn task."""
    EXPLORATION = "exploration"
    ANALYSIS = "analysis"
    MODIFICATION = "modification"
    EXPORT = "export"
    INSIGHTS = "insights"


# The only way the phase ever changes. Keys are either phase events or the
# intent actions that raise them.
PHASE_TRANSITIONS: dict[str, ConversationPhase] = {
    "chart_created": ConversationPhase.ANALYSIS,
    "create_chart": ConversationPhase.ANALYSIS,
    "chart_modified": ConversationPhase.MODIFICATION,
    "modify_chart": ConversationPhase.MODIFICATION,
    "analysis_requested": ConversationPhase.INSIGHTS,
    "analyze_data": ConversationPhase.INSIGHTS,
    "export_requested": ConversationPhase.EXPORT,
    "export_data": ConversationPhase.EXPORT,
    "new_request": ConversationPhase.EXPLORATION,
    "view_data": ConversationPhase.EXPLORATION,
    "explore_data": ConversationPhase.EXPLORATION,
}

PHASE_SUGGESTIONS: dict[ConversationPhase, list[str]] = {
    ConversationPhase.EXPLORATION: [
        "Try asking for 'deals by stage' or 'contacts by status'",
        "I can create line charts, bar charts, pie charts, and more",
        "What type of data would you like to explore?",
    ],
    ConversationPhase.ANALYSIS: [
        "Analyze trends in this data",
        "Find anomalies or patterns",
        "Export the chart",
        "Modify the chart type or settings",
    ],
    ConversationPhase.MODIFICATION: [
        "Change the chart type",
        "Adjust colors or styling",
        "Add more data dimensions",
        "Export the modified chart",
    ],
    ConversationPhase.INSIGHTS: [
        "Get deeper analysis",
        "Compare with other data",
        "Create a new visualization",
        "Export insights",
    ],
    ConversationPhase.EXPORT: [
        "Export as PDF",
        "Export as Excel",
        "Share with the team",
        "Create another chart",
    ],
}

TOPIC_VOCABULARY = {
    "data": ["deals", "contacts", "accounts", "activities", "sales", "pipeline"],
    "chart": ["line", "bar", "pie", "area", "scatter", "chart", "graph"],
    "dimension": ["stage", "status", "industry", "type", "trend", "analysis"],
}

TOPIC_PRONOUNS = [
    r"\bit\b",
    r"\bthis\b",
    r"\bthat\b",
    r"\bthe chart\b",
    r"\bthe graph\b",
    r"\bcurrent\b",
]

TOPIC_ACTION_PHRASES = ["make it", "turn it", "convert it", "change it", "switch it"]

CONFIRMATION_WORDS = {
    "yes", "y", "ok", "okay", "sure", "yeah", "yep", "confirm", "confirmed",
    "correct", "proceed", "go ahead", "do it",
}

CANCELLATION_WORDS = {"no", "n", "nope", "cancel", "stop", "abort", "nevermind", "never mind", "don't"}

MAX_RECENT_TOPICS = 5
MAX_HISTORY = 20
MAX_CONFIRMATION_LENGTH = 20


def _short_reply_matches(message: str, vocabulary: set[str]) -> bool:
    text = message.strip().lower()
    if not text or len(text) > MAX_CONFIRMATION_LENGTH:
        return False
    text = re.sub(r"[^\w\s']", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    if text in vocabulary:
        return True
    words = text.split()
    return bool(words) and words[0] in vocabulary


def is_confirmation(message: str) -> bool:
    """Short affirmative reply ("yes", "ok, do it", "sure")."""
    return _short_reply_matches(message, CONFIRMATION_WORDS)


def is_cancellation(message: str) -> bool:
    """Short negative reply ("no", "cancel that")."""
    return _short_reply_matches(message, CANCELLATION_WORDS)


@dataclass
class ActiveTopic:
    """The chart or data view the conversation is currently about."""
    data_type: str
    dimension: Optional[str] = None
    chart_type: Optional[str] = None
    topic_id: Optional[str] = None
    title: Optional[str] = None
    last_modified: datetime = field(default_factory=datetime.now)

    @property
    def descriptor(self) -> str:
        if self.dimension:
            return f"{self.data_type} by {self.dimension}"
        return self.data_type

    def to_entities(self) -> dict[str, str]:
        """Entity fields a follow-up message may inherit."""
        values = {
            "chart_type": self.chart_type,
            "data_type": self.data_type,
            "dimension": self.dimension,
        }
        return {k: v for k, v in values.items() if v}


@dataclass
class PendingAction:
    """A write waiting for the user to confirm it."""
    action: str
    entities: dict = field(default_factory=dict)
    summary: str = ""
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class PendingClarification:
    """Ambiguous references waiting for the user to pick a record."""
    original_message: str
    references: list[ContextualReference]
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class HistoryEntry:
    role: str
    content: str
    action: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class PhaseState:
    current: ConversationPhase = ConversationPhase.EXPLORATION
    previous: Optional[ConversationPhase] = None
    transitions: list[str] = field(default_factory=list)


@dataclass
class SessionPreferences:
    analysis_depth: str = "detailed"
    response_style: str = "conversational"
    preferred_chart_type: Optional[str] = None


@dataclass
class ConversationMemory:
    recent_topics: list[str] = field(default_factory=list)
    session_history: deque = field(default_factory=lambda: deque(maxlen=MAX_HISTORY))
    interaction_count: int = 0
    preferences: SessionPreferences = field(default_factory=SessionPreferences)
    session_start: datetime = field(default_factory=datetime.now)


@dataclass
class ConversationState:
    """Everything remembered about one (user, session) pair."""
    user_id: str
    session_id: str
    active_topic: Optional[ActiveTopic] = None
    current_topic: Optional[str] = None
    last_action: Optional[str] = None
    phase: PhaseState = field(default_factory=PhaseState)
    pending_action: Optional[PendingAction] = None
    pending_clarification: Optional[PendingClarification] = None
    last_mentioned: Optional[PossibleMatch] = None
    team_id: Optional[str] = None
    memory: ConversationMemory = field(default_factory=ConversationMemory)
    suggestions: list[str] = field(
        default_factory=lambda: list(PHASE_SUGGESTIONS[ConversationPhase.EXPLORATION])
    )
    last_activity: datetime = field(default_factory=datetime.now)


class ConversationStateManager:
    """Operations over a single ConversationState."""

    def __init__(self, state: ConversationState):
        self.state = state

    @property
    def phase(self) -> ConversationPhase:
        return self.state.phase.current

    # ─────────────────────────────────────────────────────────
    # UPDATES
    # ─────────────────────────────────────────────────────────

    def update(self, message: str, action: Optional[str] = None) -> None:
        """
        Record a dispatched turn.

        Args:
            message: The user's message
            action: Intent action or phase event that was dispatched
        """
        self.state.memory.interaction_count += 1
        self.state.last_activity = datetime.now()

        topics = self.extract_topics(message)
        if topics:
            merged = topics + [t for t in self.state.memory.recent_topics if t not in topics]
            self.state.memory.recent_topics = merged[:MAX_RECENT_TOPICS]

        if action:
            self.state.last_action = action
            self.transition(action)

        self.state.suggestions = list(PHASE_SUGGESTIONS[self.phase])

    def transition(self, event: str) -> bool:
        """Apply the transition table; unknown events leave the phase alone."""
        next_phase = PHASE_TRANSITIONS.get(event)
        if next_phase is None:
            return False

        phase = self.state.phase
        if next_phase != phase.current:
            logger.debug(f"Phase {phase.current.value} -> {next_phase.value} on {event}")
            phase.previous = phase.current
            phase.current = next_phase
            phase.transitions.append(f"{phase.previous.value}->{next_phase.value}")
        return True

    def set_active_topic(self, topic: ActiveTopic) -> None:
        self.state.active_topic = topic
        self.state.current_topic = topic.descriptor
        if topic.chart_type:
            self.state.memory.preferences.preferred_chart_type = topic.chart_type
        self.transition("chart_created")
        self.state.suggestions = list(PHASE_SUGGESTIONS[self.phase])

    def add_to_history(self, role: str, content: str, action: Optional[str] = None) -> None:
        self.state.memory.session_history.append(
            HistoryEntry(role=role, content=content, action=action)
        )

    def remember_record(self, match: PossibleMatch) -> None:
        """Remember the last record talked about, for pronoun follow-ups."""
        self.state.last_mentioned = match

    # ─────────────────────────────────────────────────────────
    # PENDING FLOWS
    # ─────────────────────────────────────────────────────────

    def set_pending_action(self, action: str, entities: dict, summary: str = "") -> None:
        self.state.pending_action = PendingAction(action=action, entities=entities, summary=summary)

    def clear_pending_action(self) -> Optional[PendingAction]:
        pending = self.state.pending_action
        self.state.pending_action = None
        return pending

    def set_pending_clarification(self, message: str, references: list[ContextualReference]) -> None:
        self.state.pending_clarification = PendingClarification(
            original_message=message, references=references
        )

    def clear_pending_clarification(self) -> Optional[PendingClarification]:
        pending = self.state.pending_clarification
        self.state.pending_clarification = None
        return pending

    # ─────────────────────────────────────────────────────────
    # QUERIES
    # ─────────────────────────────────────────────────────────

    @staticmethod
    def extract_topics(message: str) -> list[str]:
        text = message.lower()
        found = []
        for words in TOPIC_VOCABULARY.values():
            for word in words:
                if re.search(rf"\b{re.escape(word)}\b", text) and word not in found:
                    found.append(word)
        return found

    def is_referring_to_active_topic(self, message: str) -> bool:
        """
        Guess whether a message is a follow-up about the active topic.

        True when the message uses a pronoun or "make it"-style phrase, or
        names both the topic's data type and its dimension.
        """
        topic = self.state.active_topic
        if topic is None:
            return False

        text = message.lower()
        if any(re.search(p, text) for p in TOPIC_PRONOUNS):
            return True
        if any(phrase in text for phrase in TOPIC_ACTION_PHRASES):
            return True

        data_hit = bool(topic.data_type) and topic.data_type.rstrip("s") in text
        dimension_hit = bool(topic.dimension) and topic.dimension in text
        return data_hit and dimension_hit

    def recent_history(self, limit: int = 3) -> list[HistoryEntry]:
        history = list(self.state.memory.session_history)
        return history[-limit:] if limit else []

    def summary(self, history_lines: int = 3) -> str:
        """Plain-text state summary for classification prompts."""
        state = self.state
        lines = [f"Conversation phase: {self.phase.value}"]
        if state.active_topic:
            topic = state.active_topic
            chart = f" ({topic.chart_type} chart)" if topic.chart_type else ""
            lines.append(f"Active topic: {topic.descriptor}{chart}")
        if state.last_action:
            lines.append(f"Last action: {state.last_action}")
        if state.memory.recent_topics:
            lines.append(f"Recent topics: {', '.join(state.memory.recent_topics)}")
        if state.pending_action:
            pending = state.pending_action
            lines.append(
                f"PENDING CONFIRMATION: {pending.action} {pending.summary}".rstrip()
            )
        history = self.recent_history(history_lines)
        if history:
            lines.append("Recent messages:")
            lines.extend(f"  {h.role}: {h.content[:200]}" for h in history)
        return "\n".join(lines)

    def context_snapshot(self) -> dict[str, Any]:
        """Small dict used for cache fingerprints and replies."""
        state = self.state
        return {
            "userId": state.user_id,
            "sessionId": state.session_id,
            "teamId": state.team_id,
            "lastAction": state.last_action,
            "phase": self.phase.value,
            "currentTopic": state.current_topic,
            "interactionCount": state.memory.interaction_count,
            "recentTopics": list(state.memory.recent_topics),
        }


class ConversationStateStore:
    """
    Holds conversation state per (user_id, session_id).

    States are created on first access and kept until reset() is called.
    Not thread-safe; meant to be owned by one event loop.
    """

    def __init__(self):
        self._states: dict[tuple[str, str], ConversationState] = {}

    def get(self, user_id: str, session_id: str = "default") -> ConversationStateManager:
        key = (user_id, session_id)
        state = self._states.get(key)
        if state is None:
            state = ConversationState(user_id=user_id, session_id=session_id)
            self._states[key] = state
            logger.debug(f"Created conversation state for {user_id}/{session_id}")
        return ConversationStateManager(state)

    def reset(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        """
        Drop stored state.

        Args:
            user_id: Only this user's sessions (all users when None)
            session_id: Only this session of the user

        Returns:
            Number of states removed
        """
        if user_id is None:
            removed = len(self._states)
            self._states.clear()
            return removed

        keys = [
            key for key in self._states
            if key[0] == user_id and (session_id is None or key[1] == session_id)
        ]
        for key in keys:
            del self._states[key]
        return len(keys)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._states

    def __len__(self) -> int:
        return len(self._states)
