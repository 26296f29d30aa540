"""
Example retrieval for prompt augmentation.

Keeps small per-domain lists of past (query -> successful outcome) pairs
and hands the closest ones to the classifier prompt. Retrieval is keyword
overlap against a fixed keyword set per domain. The store only grows
(bounded per domain) and is never used to gate a decision.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from crmpilot.config import LearningSettings
from crmpilot.engine.intent import IntentAction
from crmpilot.utils.logging import logger


class ExampleDomain(str, Enum):
    CHART = "chart"
    ANALYSIS = "analysis"
    CRM = "crm"
    GENERAL = "general"


DOMAIN_KEYWORDS: dict[ExampleDomain, list[str]] = {
    ExampleDomain.CHART: [
        "chart", "graph", "plot", "pie", "bar", "line", "area", "scatter",
        "deals", "contacts", "stage", "status", "visualize",
    ],
    ExampleDomain.ANALYSIS: [
        "analyze", "analysis", "which", "most", "pipeline", "sales", "account",
        "trend", "predict", "likely", "performance", "insight",
    ],
    ExampleDomain.CRM: [
        "update", "create", "add", "delete", "remove", "contact", "email",
        "company", "phone", "deal", "activity", "account",
    ],
    ExampleDomain.GENERAL: [
        "show", "view", "list", "find", "help", "what", "how", "my",
        "contacts", "deals", "accounts", "activities",
    ],
}

_CHART_ACTIONS = {IntentAction.CREATE_CHART, IntentAction.MODIFY_CHART, IntentAction.EXPORT_DATA}
_ANALYSIS_ACTIONS = {IntentAction.ANALYZE_DATA, IntentAction.EXPLORE_DATA}


def domain_for(action: str) -> ExampleDomain:
    """Pick the sub-store an outcome belongs to."""
    try:
        intent_action = IntentAction(action)
    except ValueError:
        return ExampleDomain.GENERAL
    if intent_action in _CHART_ACTIONS:
        return ExampleDomain.CHART
    if intent_action in _ANALYSIS_ACTIONS:
        return ExampleDomain.ANALYSIS
    if intent_action.is_record_write or intent_action == IntentAction.SEND_EMAIL:
        return ExampleDomain.CRM
    return ExampleDomain.GENERAL


@dataclass
class InteractionExample:
    """A past query and the outcome that worked for it."""
    query: str
    intent: str
    entities: dict = field(default_factory=dict)
    success: bool = True
    timestamp: datetime = field(default_factory=datetime.now)
    context: dict = field(default_factory=dict)


SEED_EXAMPLES: dict[ExampleDomain, list[InteractionExample]] = {
    ExampleDomain.CHART: [
        InteractionExample("show me deals by stage", "create_chart",
                           {"chartType": "bar", "dataType": "deals", "dimension": "stage"}),
        InteractionExample("make it a pie chart", "modify_chart",
                           {"chartType": "pie", "action": "change"}),
        InteractionExample("create a line chart of contacts by status", "create_chart",
                           {"chartType": "line", "dataType": "contacts", "dimension": "status"}),
    ],
    ExampleDomain.ANALYSIS: [
        InteractionExample("which deals are most likely to close", "analyze_data",
                           {"dataType": "deals", "action": "predict"}),
        InteractionExample("analyze my sales pipeline", "analyze_data",
                           {"dataType": "deals", "action": "analyze"}),
    ],
    ExampleDomain.CRM: [
        InteractionExample("update john's email to john@acme.com", "update_contact",
                           {"contactName": "john", "field": "email", "value": "john@acme.com"}),
        InteractionExample("create a contact for Jane Doe at Acme", "create_contact",
                           {"contactName": "Jane Doe", "company": "Acme"}),
        InteractionExample("delete the Globex account", "delete_account",
                           {"accountName": "Globex"}),
    ],
    ExampleDomain.GENERAL: [
        InteractionExample("show me my contacts", "view_data", {"dataType": "contacts"}),
        InteractionExample("what can you help me with", "general_conversation", {}),
    ],
}


class ExampleStore:
    """Append-only, per-domain example memory with keyword retrieval."""

    DEFAULT_LIMIT = 2
    PROMPT_LIMIT = 3

    def __init__(
        self,
        max_per_domain: Optional[int] = None,
        seed: bool = True,
        settings: Optional[LearningSettings] = None,
    ):
        settings = settings or LearningSettings()
        self.max_per_domain = max_per_domain or settings.max_examples_per_domain
        self._examples: dict[ExampleDomain, list[InteractionExample]] = {
            domain: [] for domain in ExampleDomain
        }
        if seed:
            for domain, examples in SEED_EXAMPLES.items():
                self._examples[domain].extend(examples)
        self.retrievals = 0
        self.recorded = 0

    @staticmethod
    def _keywords_in(text: str, domain: ExampleDomain) -> set[str]:
        """Domain keywords present as whole words (plural "s" tolerated)."""
        words = set(re.findall(r"[a-z]+", text.lower()))
        words |= {w[:-1] for w in words if len(w) > 3 and w.endswith("s")}
        return words.intersection(DOMAIN_KEYWORDS[domain])

    def retrieve(
        self,
        query: str,
        domain: ExampleDomain,
        limit: int = DEFAULT_LIMIT,
    ) -> list[InteractionExample]:
        """
        Find examples sharing domain keywords with the query.

        Args:
            query: The user's message
            domain: Sub-store to search
            limit: Maximum number of examples

        Returns:
            Examples ranked by keyword overlap, newest first on ties
        """
        query_keywords = self._keywords_in(query, domain)
        if not query_keywords:
            return []

        scored = []
        for example in self._examples[domain]:
            overlap = len(query_keywords & self._keywords_in(example.query, domain))
            if overlap:
                scored.append((overlap, example))

        scored.sort(key=lambda item: (item[0], item[1].timestamp), reverse=True)
        self.retrievals += 1
        return [example for _, example in scored[:limit]]

    def retrieve_for_prompt(self, query: str, limit: int = PROMPT_LIMIT) -> list[InteractionExample]:
        """Best examples across every domain, without repeats."""
        seen: set[str] = set()
        picked: list[InteractionExample] = []
        for domain in ExampleDomain:
            for example in self.retrieve(query, domain):
                key = example.query.lower()
                if key not in seen:
                    seen.add(key)
                    picked.append(example)
        return picked[:limit]

    def record(
        self,
        query: str,
        intent: str,
        entities: Optional[dict] = None,
        success: bool = True,
        context: Optional[dict] = None,
    ) -> bool:
        """Append a successful outcome to its domain; failures are ignored."""
        if not success or not query.strip():
            return False

        domain = domain_for(intent)
        examples = self._examples[domain]
        examples.append(
            InteractionExample(
                query=query,
                intent=intent,
                entities=dict(entities or {}),
                success=True,
                context=dict(context or {}),
            )
        )
        if len(examples) > self.max_per_domain:
            del examples[: len(examples) - self.max_per_domain]
        self.recorded += 1
        logger.debug(f"Recorded {domain.value} example for {intent}")
        return True

    @staticmethod
    def format_for_prompt(examples: list[InteractionExample]) -> str:
        if not examples:
            return ""
        lines = ["Examples of previous successful requests:"]
        for example in examples:
            lines.append(f'- "{example.query}" -> action: {example.intent}, entities: {example.entities}')
        return "\n".join(lines)

    def examples(self, domain: ExampleDomain) -> list[InteractionExample]:
        return list(self._examples[domain])

    def stats(self) -> dict:
        return {
            "domains": {d.value: len(e) for d, e in self._examples.items()},
            "retrievals": self.retrievals,
            "recorded": self.recorded,
        }
