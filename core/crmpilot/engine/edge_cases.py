"""
Edge-case pre-filter.

Runs before any classification. Each rule is a (predicate, handler,
priority) triple; rules are tried from critical to low and the first
match ends the scan. A matching rule either answers the turn itself
(outcome carries a message) or rewrites the input and lets the pipeline
continue.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Callable, Optional

from crmpilot.utils.logging import logger


class Priority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class RuleKind:
    INPUT = "input"
    DATA = "data"
    SYSTEM = "system"
    USER = "user"


@dataclass
class EdgeCaseContext:
    """What the rules may look at besides the message."""
    user_id: str
    payload: Any = None  # data attached to the request, if any
    recent_errors: int = 0
    cache_bytes: int = 0


@dataclass
class EdgeCaseOutcome:
    rule: str
    message: Optional[str] = None
    suggestions: list[str] = field(default_factory=list)
    processed_input: Optional[str] = None
    needs_clarification: bool = False
    clear_cache: bool = False
    basic_processing: bool = False
    page_limit: Optional[int] = None

    @property
    def answers_turn(self) -> bool:
        """True when the rule's reply replaces the rest of the pipeline."""
        return self.message is not None


@dataclass
class EdgeCaseRule:
    name: str
    predicate: Callable[[str, EdgeCaseContext], bool]
    handler: Callable[[str, EdgeCaseContext], EdgeCaseOutcome]
    priority: Priority
    kind: str = RuleKind.INPUT


@dataclass
class HandledCase:
    rule: str
    kind: str
    priority: Priority
    user_id: str
    timestamp: datetime = field(default_factory=datetime.now)


MAX_INPUT_LENGTH = 1000
TRUNCATED_LENGTH = 500
LARGE_LIST = 1000
LARGE_MAPPING = 100
PAGE_LIMIT = 100
MEMORY_LIMIT_BYTES = 50 * 1024 * 1024
ERROR_STREAK = 5

GREETING_PATTERNS = [
    r"^hello\s*how\s*are\s*you",
    r"^hi\s*how\s*are\s*you",
    r"^hey\s*how\s*are\s*you",
    r"^how\s*are\s*you",
    r"^what'?s?\s*up\b",
    r"^sup\b",
    r"^hello\b",
    r"^hi\b",
    r"^hey\b",
    r"^good\s*(morning|afternoon|evening)",
    r"^thanks?\b",
    r"^thank\s*you",
    r"^bye\b",
    r"^goodbye\b",
    r"^see\s*you",
]

COMMON_NAMES = r"\b(john|jane|mike|sarah|david|emma|james|lisa|michael|jennifer)\b"

GREETING_SUGGESTIONS = [
    "Show me my contacts",
    "Create a chart",
    "View my deals",
    "Help me with accounts",
]


TASK_WORDS = r"\b(contacts?|deals?|accounts?|activit(y|ies)|charts?|graph|email|show|update|create|delete|analy[sz]e)\b"


def _is_greeting(message: str, context: EdgeCaseContext) -> bool:
    text = message.strip().lower()
    if re.search(TASK_WORDS, text):
        # "hey, show me my deals" is a request, not small talk
        return False
    return any(re.search(p, text) for p in GREETING_PATTERNS)


def _greeting_reply(message: str, context: EdgeCaseContext) -> EdgeCaseOutcome:
    text = message.strip().lower()
    reply = "Hello! I'm doing great, thank you for asking! "
    if "how are you" in text:
        reply += "I'm here to help you with your CRM tasks. What would you like to work on today?"
    elif "good morning" in text:
        reply += "Good morning! Ready to help you manage your contacts, deals, and accounts."
    elif "good afternoon" in text:
        reply += "Good afternoon! How can I assist you with your business data today?"
    elif "good evening" in text:
        reply += "Good evening! I'm here to help you with any CRM tasks you need."
    elif "what" in text and "up" in text:
        reply += "Not much, just ready to help you with your CRM! What's on your agenda?"
    elif "thank" in text:
        reply = "You're very welcome! I'm happy to help. Is there anything else you'd like me to assist you with?"
    elif "bye" in text or "see you" in text:
        reply = "Goodbye! Have a great day. Feel free to come back anytime you need help with your CRM."
    else:
        reply += "I'm here to help you with your contacts, deals, accounts, and analytics. What would you like to do?"
    return EdgeCaseOutcome(rule="greeting", message=reply, suggestions=list(GREETING_SUGGESTIONS))


def _strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def _is_large_payload(payload: Any) -> bool:
    if isinstance(payload, (list, tuple)):
        return len(payload) > LARGE_LIST
    if isinstance(payload, dict):
        return len(payload) > LARGE_MAPPING
    return False


def default_rules() -> list[EdgeCaseRule]:
    """The built-in rule set."""
    return [
        EdgeCaseRule(
            name="empty_input",
            predicate=lambda m, c: not m or not m.strip(),
            handler=lambda m, c: EdgeCaseOutcome(
                rule="empty_input",
                message="I didn't receive any input. Could you please provide more details?",
                suggestions=[
                    "Try asking a specific question",
                    "Tell me what you'd like to do",
                    "Use one of the suggested actions",
                ],
            ),
            priority=Priority.MEDIUM,
        ),
        EdgeCaseRule(
            name="oversized_input",
            predicate=lambda m, c: len(m) > MAX_INPUT_LENGTH,
            handler=lambda m, c: EdgeCaseOutcome(
                rule="oversized_input",
                processed_input=m[:TRUNCATED_LENGTH],
                suggestions=["Consider breaking this into smaller requests"],
            ),
            priority=Priority.LOW,
        ),
        EdgeCaseRule(
            name="special_characters",
            predicate=lambda m, c: bool(re.search(r"[^\x00-\x7F]", m)),
            handler=lambda m, c: EdgeCaseOutcome(
                rule="special_characters",
                processed_input=_strip_diacritics(m),
            ),
            priority=Priority.LOW,
        ),
        EdgeCaseRule(
            name="multiple_questions",
            predicate=lambda m, c: bool(re.search(r"\?.*\?", m, re.DOTALL)),
            handler=lambda m, c: EdgeCaseOutcome(
                rule="multiple_questions",
                processed_input=m.split("?")[0].strip() + "?",
                suggestions=["Ask follow-up questions one at a time"],
            ),
            priority=Priority.MEDIUM,
        ),
        EdgeCaseRule(
            name="greeting",
            predicate=_is_greeting,
            handler=_greeting_reply,
            priority=Priority.HIGH,
        ),
        EdgeCaseRule(
            name="ambiguous_common_name",
            predicate=lambda m, c: bool(re.search(COMMON_NAMES, m, re.IGNORECASE))
            and "contact" in m.lower(),
            handler=lambda m, c: EdgeCaseOutcome(
                rule="ambiguous_common_name",
                message=(
                    "I found a common name that might match multiple contacts. "
                    "Could you give me the full name or another detail, like their company or email?"
                ),
                suggestions=[
                    "Use the full name",
                    "Mention the contact's company",
                    "Mention the contact's email",
                ],
                needs_clarification=True,
            ),
            priority=Priority.HIGH,
            kind=RuleKind.DATA,
        ),
        EdgeCaseRule(
            name="large_dataset",
            predicate=lambda m, c: _is_large_payload(c.payload),
            handler=lambda m, c: EdgeCaseOutcome(rule="large_dataset", page_limit=PAGE_LIMIT),
            priority=Priority.MEDIUM,
            kind=RuleKind.DATA,
        ),
        EdgeCaseRule(
            name="memory_pressure",
            predicate=lambda m, c: c.cache_bytes > MEMORY_LIMIT_BYTES,
            handler=lambda m, c: EdgeCaseOutcome(rule="memory_pressure", clear_cache=True),
            priority=Priority.HIGH,
            kind=RuleKind.SYSTEM,
        ),
        EdgeCaseRule(
            name="error_streak",
            predicate=lambda m, c: c.recent_errors > ERROR_STREAK,
            handler=lambda m, c: EdgeCaseOutcome(
                rule="error_streak",
                basic_processing=True,
                suggestions=["Try a simpler request", "Let me guide you through this step by step"],
            ),
            priority=Priority.HIGH,
            kind=RuleKind.USER,
        ),
    ]


class EdgeCaseHandler:
    """Applies edge-case rules in priority order."""

    MAX_HANDLED = 100

    def __init__(self, rules: Optional[list[EdgeCaseRule]] = None):
        self.rules = rules if rules is not None else default_rules()
        self.handled: list[HandledCase] = []

    def add_rule(self, rule: EdgeCaseRule) -> None:
        self.rules.append(rule)

    def _ordered(self) -> list[EdgeCaseRule]:
        # sorted() is stable, so rules of equal priority keep registration order
        return sorted(self.rules, key=lambda r: r.priority, reverse=True)

    def check(self, message: str, context: EdgeCaseContext) -> Optional[EdgeCaseOutcome]:
        """
        Run the rules against a message.

        Returns:
            The first matching rule's outcome, or None
        """
        for rule in self._ordered():
            try:
                if not rule.predicate(message, context):
                    continue
                outcome = rule.handler(message, context)
            except Exception as e:
                logger.error(f"Edge-case rule {rule.name} failed: {e}")
                continue

            self.handled.append(
                HandledCase(
                    rule=rule.name,
                    kind=rule.kind,
                    priority=rule.priority,
                    user_id=context.user_id,
                )
            )
            if len(self.handled) > self.MAX_HANDLED:
                self.handled = self.handled[-self.MAX_HANDLED:]
            logger.info(f"Edge case '{rule.name}' matched")
            return outcome
        return None

    @staticmethod
    def validate_input(message: Any) -> dict:
        """Report problems with an input without acting on them."""
        issues: list[str] = []
        suggestions: list[str] = []

        if message is None or message == "":
            return {
                "is_valid": False,
                "issues": ["No input provided"],
                "suggestions": ["Please provide some input"],
            }

        if isinstance(message, str):
            if not message.strip():
                issues.append("Empty input")
                suggestions.append("Please provide meaningful input")
            if len(message) > 2000:
                issues.append("Input too long")
                suggestions.append("Consider breaking this into smaller requests")
            if re.search(r"[^\x00-\x7F]", message):
                issues.append("Contains special characters")
                suggestions.append("Consider using standard characters")
        elif isinstance(message, (list, tuple)) and len(message) > LARGE_LIST:
            issues.append("Too many items")
            suggestions.append("Consider processing in batches")

        return {"is_valid": not issues, "issues": issues, "suggestions": suggestions}

    def stats(self) -> dict:
        by_kind: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        by_rule: dict[str, int] = {}
        cutoff = datetime.now() - timedelta(hours=24)
        for case in self.handled:
            by_kind[case.kind] = by_kind.get(case.kind, 0) + 1
            by_priority[case.priority.name.lower()] = by_priority.get(case.priority.name.lower(), 0) + 1
            by_rule[case.rule] = by_rule.get(case.rule, 0) + 1
        return {
            "total_handled": len(self.handled),
            "by_kind": by_kind,
            "by_priority": by_priority,
            "by_rule": by_rule,
            "recent": sum(1 for c in self.handled if c.timestamp >= cutoff),
        }
