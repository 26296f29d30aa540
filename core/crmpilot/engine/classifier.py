"""
Intent classifiers.

Both strategies share one contract: classify(message, state) always
returns a well-formed Intent, and attempt() returns a StageResult the
orchestrator can fold over. The structured pass asks the model for a
fixed JSON schema with retrieved examples; the general pass uses a
conversational prompt and no examples.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from crmpilot.config import ClassifierSettings, TimeoutSettings
from crmpilot.context.conversation import ConversationStateManager, is_confirmation
from crmpilot.context.entities import EntityType, RecordKind
from crmpilot.context.resolver import ResolutionResult
from crmpilot.engine.intent import (
    Intent,
    IntentAction,
    IntentContext,
    IntentMetadata,
    ReferringTo,
    apply_confidence_gate,
    normalize_action,
    normalize_entities,
    normalize_intent,
    safe_default_intent,
)
from crmpilot.memory.examples import ExampleStore
from crmpilot.runtime.completion import CompletionOptions, CompletionService
from crmpilot.utils.errors import ClassificationError
from crmpilot.utils.json_parsing import extract_json_object
from crmpilot.utils.logging import logger


@dataclass
class StageResult:
    """Outcome of one cascade stage: an intent or the reason there is none."""
    stage: str
    intent: Optional[Intent] = None
    error: Optional[ClassificationError] = None

    @property
    def ok(self) -> bool:
        return self.intent is not None

    @classmethod
    def success(cls, stage: str, intent: Intent) -> "StageResult":
        return cls(stage=stage, intent=intent)

    @classmethod
    def failure(cls, stage: str, reason: str) -> "StageResult":
        return cls(stage=stage, error=ClassificationError(reason, stage=stage))


ACTION_DESCRIPTIONS = {
    IntentAction.CREATE_CHART: "build a new chart or graph",
    IntentAction.MODIFY_CHART: "change the current chart (type, colors, data)",
    IntentAction.VIEW_DATA: "list or count records",
    IntentAction.EXPLORE_DATA: "browse or filter records",
    IntentAction.EXPORT_DATA: "export a chart or data",
    IntentAction.ANALYZE_DATA: "analyze trends, patterns or predictions",
    IntentAction.CREATE_CONTACT: "add a contact",
    IntentAction.UPDATE_CONTACT: "change a contact's fields",
    IntentAction.DELETE_CONTACT: "remove a contact",
    IntentAction.CREATE_ACCOUNT: "add an account",
    IntentAction.UPDATE_ACCOUNT: "change an account's fields",
    IntentAction.DELETE_ACCOUNT: "remove an account",
    IntentAction.CREATE_DEAL: "add a deal",
    IntentAction.UPDATE_DEAL: "change a deal's fields",
    IntentAction.DELETE_DEAL: "remove a deal",
    IntentAction.CREATE_ACTIVITY: "log or schedule an activity",
    IntentAction.UPDATE_ACTIVITY: "change an activity",
    IntentAction.DELETE_ACTIVITY: "remove an activity",
    IntentAction.SEND_EMAIL: "send an email to a contact",
    IntentAction.GENERAL_CONVERSATION: "anything else: questions, help, small talk",
}

RESPONSE_SCHEMA = """{
  "action": "<one of the actions above>",
  "confidence": 0.0 to 1.0,
  "entities": {
    "chartType": "line|bar|pie|area|scatter", "dataType": "deals|contacts|accounts|activities",
    "dimension": "stage|status|industry|type|source|probability",
    "action": "show|hide|change|analyze|export|predict", "format": "pdf|csv|xlsx|png",
    "contactName": "", "accountName": "", "dealName": "", "activitySubject": "",
    "field": "", "value": "", "email": "", "phone": "", "company": "", "amount": "", "date": ""
  },
  "context": {"referringTo": "current_topic|previous_topic|new_request|existing_data"},
  "metadata": {"needsClarification": false, "clarificationQuestion": null}
}"""


def _action_vocabulary() -> str:
    return "\n".join(f"- {a.value}: {d}" for a, d in ACTION_DESCRIPTIONS.items())


# ─────────────────────────────────────────────────────────
# Shared post-processing
# ─────────────────────────────────────────────────────────

def confirmation_intent(message: str, manager: ConversationStateManager) -> Optional[Intent]:
    """Turn a short "yes" into the pending action, if there is one."""
    pending = manager.state.pending_action
    if pending is None or not is_confirmation(message):
        return None
    return Intent(
        action=normalize_action(pending.action),
        confidence=0.95,
        original_message=message,
        entities=normalize_entities(pending.entities),
        context=IntentContext(referring_to=ReferringTo.EXISTING_DATA),
        metadata=IntentMetadata(needs_clarification=False),
    )


_ENTITY_FIELDS = {
    EntityType.CONTACT: "contact_name",
    EntityType.ACCOUNT: "account_name",
    EntityType.DEAL: "deal_name",
    EntityType.ACTIVITY: "activity_subject",
    EntityType.DATE: "date",
    EntityType.AMOUNT: "amount",
    EntityType.EMAIL: "email",
    EntityType.PHONE: "phone",
    EntityType.COMPANY: "company",
}

_RECORD_FIELDS = {
    RecordKind.CONTACT: "contact_name",
    RecordKind.ACCOUNT: "account_name",
    RecordKind.DEAL: "deal_name",
    RecordKind.ACTIVITY: "activity_subject",
}


def enrich_with_resolution(intent: Intent, resolution: ResolutionResult) -> Intent:
    """
    Fill entity gaps from extracted entities and resolved references.

    Resolved records replace whatever name the model wrote with the
    record's canonical name. Confidence rises by a fifth of the mean
    entity confidence.
    """
    updates: dict[str, str] = {}
    for entity in resolution.entities:
        name = _ENTITY_FIELDS.get(entity.type)
        if name and getattr(intent.entities, name) is None and name not in updates:
            updates[name] = entity.value

    for match in resolution.resolved:
        updates[_RECORD_FIELDS[match.type]] = match.name

    if not updates and not resolution.entities:
        return intent

    enriched = intent.with_entities(**updates) if updates else intent
    boost = resolution.average_confidence() * 0.2
    return enriched.model_copy(update={"confidence": min(1.0, enriched.confidence + boost)})


_TOPIC_ACTIONS = {
    IntentAction.CREATE_CHART,
    IntentAction.MODIFY_CHART,
    IntentAction.VIEW_DATA,
    IntentAction.EXPLORE_DATA,
    IntentAction.EXPORT_DATA,
    IntentAction.ANALYZE_DATA,
}


def inherit_topic_context(intent: Intent, message: str, manager: ConversationStateManager) -> Intent:
    """Copy missing chart fields from the active topic for follow-up messages."""
    topic = manager.state.active_topic
    if topic is None or intent.action not in _TOPIC_ACTIONS:
        return intent
    if not manager.is_referring_to_active_topic(message):
        return intent

    inherited = {
        name: value
        for name, value in topic.to_entities().items()
        if getattr(intent.entities, name) is None
    }
    updated = intent.with_entities(**inherited) if inherited else intent
    return updated.with_context(referring_to=ReferringTo.CURRENT_TOPIC)


FALLBACK_PATTERNS: list[tuple[str, IntentAction]] = [
    (r"\b(update|change|edit|modify)\b.*\bcontact", IntentAction.UPDATE_CONTACT),
    (r"\b(add|create|new)\b.*\bcontact", IntentAction.CREATE_CONTACT),
    (r"\b(delete|remove)\b.*\bcontact", IntentAction.DELETE_CONTACT),
    (r"\b(update|change|edit|modify)\b.*\baccount", IntentAction.UPDATE_ACCOUNT),
    (r"\b(add|create|new)\b.*\baccount", IntentAction.CREATE_ACCOUNT),
    (r"\b(delete|remove)\b.*\baccount", IntentAction.DELETE_ACCOUNT),
    (r"\b(update|change|edit|modify)\b.*\bdeal", IntentAction.UPDATE_DEAL),
    (r"\b(add|create|new)\b.*\bdeal", IntentAction.CREATE_DEAL),
    (r"\b(delete|remove)\b.*\bdeal", IntentAction.DELETE_DEAL),
    (r"\b(schedule|log|add|create)\b.*\b(activity|meeting|call|task)", IntentAction.CREATE_ACTIVITY),
    (r"\b(chart|graph|plot|visuali[sz]e)\b", IntentAction.CREATE_CHART),
    (r"\b(analy[sz]e|trend|insight|predict)", IntentAction.ANALYZE_DATA),
    (r"\b(send|write)\b.*\bemail\b|^email\b", IntentAction.SEND_EMAIL),
    (r"\b(export|download)\b", IntentAction.EXPORT_DATA),
    (r"\b(show|list|view|display)\b", IntentAction.VIEW_DATA),
]


def fallback_intent(message: str) -> Intent:
    """
    Keyword-only classification for when no model result is available.

    Matches come back at 0.6 confidence (so they still ask for
    clarification); everything else is general conversation at 0.3.
    """
    text = message.lower()
    for pattern, action in FALLBACK_PATTERNS:
        if re.search(pattern, text):
            entities = {}
            for data_type in ("contacts", "deals", "accounts", "activities"):
                if data_type.rstrip("s") in text or (data_type == "activities" and "activit" in text):
                    entities["dataType"] = data_type
                    break
            intent = normalize_intent(
                {"action": action.value, "confidence": 0.6, "entities": entities}, message
            )
            return apply_confidence_gate(intent)
    return safe_default_intent(message)


# ─────────────────────────────────────────────────────────
# Classifiers
# ─────────────────────────────────────────────────────────

class Classifier(ABC):
    """Base for model-backed classification strategies."""

    name = "classifier"

    def __init__(
        self,
        completion: CompletionService,
        settings: Optional[ClassifierSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
    ):
        self.completion = completion
        self.settings = settings or ClassifierSettings()
        self.timeouts = timeouts or TimeoutSettings()
        self.calls = 0

    @property
    @abstractmethod
    def temperature(self) -> float:
        """Sampling temperature for this strategy."""

    @abstractmethod
    def build_prompt(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> str:
        """System prompt for one classification call."""

    async def classify(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> Intent:
        """
        Classify a message. Never raises.

        Returns:
            The model's intent, or a keyword fallback when the model fails
        """
        result = await self.attempt(message, manager, resolution)
        if result.ok:
            return result.intent
        logger.warning(f"{self.name} classification failed: {result.error}")
        return fallback_intent(message)

    async def attempt(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> StageResult:
        """Classify a message, reporting failure instead of hiding it."""
        shortcut = confirmation_intent(message, manager)
        if shortcut is not None:
            logger.info(f"Confirmation of pending {shortcut.action.value}")
            return StageResult.success(self.name, shortcut)

        try:
            raw = await self._request(message, manager, resolution)
        except asyncio.TimeoutError:
            return StageResult.failure(self.name, f"timed out after {self.timeouts.completion}s")
        except ClassificationError as e:
            return StageResult.failure(self.name, str(e))
        except Exception as e:
            return StageResult.failure(self.name, f"{type(e).__name__}: {e}")

        return StageResult.success(self.name, self.finalize(raw, message, manager, resolution))

    def finalize(
        self,
        raw: dict,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> Intent:
        intent = normalize_intent(raw, message)
        if resolution is not None:
            intent = enrich_with_resolution(intent, resolution)
        intent = inherit_topic_context(intent, message, manager)
        return apply_confidence_gate(intent, self.settings.clarify_below)

    async def _request(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult],
    ) -> dict:
        self.calls += 1
        completion = await asyncio.wait_for(
            self.completion.complete(
                self.build_prompt(message, manager, resolution),
                [{"role": "user", "content": message}],
                temperature=self.temperature,
                max_tokens=self.settings.max_tokens,
                options=CompletionOptions(user_id=manager.state.user_id, operation=self.name),
            ),
            timeout=self.timeouts.completion,
        )
        raw = extract_json_object(completion.text)
        if raw is None:
            raise ClassificationError("model returned no JSON object", stage=self.name)
        return raw


class StructuredClassifier(Classifier):
    """Deterministic classification against the closed action vocabulary."""

    name = "structured"

    PROMPT = """You classify requests to a CRM assistant.

Actions:
{actions}

{state}
{examples}{entities}
Respond ONLY with a JSON object of this shape:
{schema}

Set referringTo to "current_topic" when the user refers to the active chart.
Use a confidence below 0.7 when required details are missing."""

    def __init__(
        self,
        completion: CompletionService,
        examples: ExampleStore,
        settings: Optional[ClassifierSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
    ):
        super().__init__(completion, settings, timeouts)
        self.examples = examples

    @property
    def temperature(self) -> float:
        return self.settings.structured_temperature

    def build_prompt(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> str:
        retrieved = self.examples.retrieve_for_prompt(message, limit=self.settings.max_examples)
        examples_text = ExampleStore.format_for_prompt(retrieved)
        entities_text = ""
        if resolution is not None and resolution.entities:
            found = ", ".join(f"{e.type.value}: {e.value}" for e in resolution.entities)
            entities_text = f"\nEntities found in the message: {found}\n"
        return self.PROMPT.format(
            actions=_action_vocabulary(),
            state=manager.summary(self.settings.history_lines),
            examples=f"{examples_text}\n" if examples_text else "",
            entities=entities_text,
            schema=RESPONSE_SCHEMA,
        )


class GeneralClassifier(Classifier):
    """Open-ended understanding of what the user is after."""

    name = "general"

    PROMPT = """You are a helpful CRM assistant. Work out what the user wants, even when the
request is informal or indirect.

{state}

Pick the closest action from this list:
{actions}

Reply with JSON only, in this shape:
{schema}

If you are unsure, say so with a low confidence and a clarificationQuestion."""

    @property
    def temperature(self) -> float:
        return self.settings.general_temperature

    def build_prompt(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> str:
        return self.PROMPT.format(
            state=manager.summary(self.settings.history_lines),
            actions=_action_vocabulary(),
            schema=RESPONSE_SCHEMA,
        )
