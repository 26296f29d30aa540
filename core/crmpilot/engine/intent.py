"""
The Intent: what the user wants done, with its parameters.

Intents are frozen pydantic models over a closed action vocabulary.
normalize_intent() turns anything a model returns into a well-formed
Intent and is idempotent; apply_confidence_gate() forces a clarification
question when confidence is too low to act on.
"""

import math
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from crmpilot.utils.json_parsing import extract_json_object


class IntentAction(str, Enum):
    """Closed set of actions the assistant can dispatch."""
    CREATE_CHART = "create_chart"
    MODIFY_CHART = "modify_chart"
    VIEW_DATA = "view_data"
    EXPLORE_DATA = "explore_data"
    EXPORT_DATA = "export_data"
    ANALYZE_DATA = "analyze_data"
    CREATE_CONTACT = "create_contact"
    UPDATE_CONTACT = "update_contact"
    DELETE_CONTACT = "delete_contact"
    CREATE_ACCOUNT = "create_account"
    UPDATE_ACCOUNT = "update_account"
    DELETE_ACCOUNT = "delete_account"
    CREATE_DEAL = "create_deal"
    UPDATE_DEAL = "update_deal"
    DELETE_DEAL = "delete_deal"
    CREATE_ACTIVITY = "create_activity"
    UPDATE_ACTIVITY = "update_activity"
    DELETE_ACTIVITY = "delete_activity"
    SEND_EMAIL = "send_email"
    GENERAL_CONVERSATION = "general_conversation"

    @property
    def is_chart(self) -> bool:
        return self in (IntentAction.CREATE_CHART, IntentAction.MODIFY_CHART)

    @property
    def is_record_write(self) -> bool:
        return self.value.split("_", 1)[0] in ("create", "update", "delete") and not self.is_chart


class ReferringTo(str, Enum):
    CURRENT_TOPIC = "current_topic"
    PREVIOUS_TOPIC = "previous_topic"
    NEW_REQUEST = "new_request"
    EXISTING_DATA = "existing_data"


# Closed vocabularies for entity fields that handlers branch on
CHART_TYPES = ("line", "bar", "pie", "area", "scatter")
DATA_TYPES = ("deals", "contacts", "accounts", "activities")
DIMENSIONS = ("stage", "status", "industry", "type", "source", "probability")
OPERATIONS = ("show", "hide", "change", "analyze", "export", "predict")
ENTITY_CONTEXTS = ("existing", "new", "modification", "reference")
EXPORT_FORMATS = ("pdf", "csv", "xlsx", "png")

CLOSED_VALUES = {
    "chart_type": CHART_TYPES,
    "data_type": DATA_TYPES,
    "dimension": DIMENSIONS,
    "operation": OPERATIONS,
    "reference_context": ENTITY_CONTEXTS,
    "export_format": EXPORT_FORMATS,
}

_SINGULAR_DATA_TYPES = {"deal": "deals", "contact": "contacts", "account": "accounts", "activity": "activities"}


class IntentEntities(BaseModel):
    """Parameters of an intent, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    chart_type: Optional[Literal["line", "bar", "pie", "area", "scatter"]] = Field(None, alias="chartType")
    data_type: Optional[Literal["deals", "contacts", "accounts", "activities"]] = Field(None, alias="dataType")
    dimension: Optional[Literal["stage", "status", "industry", "type", "source", "probability"]] = None
    reference_context: Optional[Literal["existing", "new", "modification", "reference"]] = Field(None, alias="context")
    operation: Optional[Literal["show", "hide", "change", "analyze", "export", "predict"]] = Field(None, alias="action")
    target: Optional[str] = None
    contact_name: Optional[str] = Field(None, alias="contactName")
    account_name: Optional[str] = Field(None, alias="accountName")
    deal_name: Optional[str] = Field(None, alias="dealName")
    activity_subject: Optional[str] = Field(None, alias="activitySubject")
    activity_type: Optional[str] = Field(None, alias="activityType")
    field: Optional[str] = None
    value: Optional[str] = None
    date: Optional[str] = None
    amount: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    industry: Optional[str] = None
    website: Optional[str] = None
    stage: Optional[str] = None
    status: Optional[str] = None
    record_type: Optional[str] = Field(None, alias="type")
    export_format: Optional[Literal["pdf", "csv", "xlsx", "png"]] = Field(None, alias="format")
    subject: Optional[str] = None
    description: Optional[str] = None
    recipient: Optional[str] = None
    query: Optional[str] = None

    def to_raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def missing(self, names: tuple[str, ...]) -> list[str]:
        return [name for name in names if getattr(self, name) is None]


class IntentContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    referring_to: ReferringTo = Field(ReferringTo.NEW_REQUEST, alias="referringTo")
    user_goal: Optional[str] = Field(None, alias="userGoal")


class IntentMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    needs_clarification: bool = Field(False, alias="needsClarification")
    clarification_question: Optional[str] = Field(None, alias="clarificationQuestion")
    is_ambiguous: bool = Field(False, alias="isAmbiguous")


class Intent(BaseModel):
    """A classified user request. Built once per message and never mutated."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: IntentAction
    confidence: float = Field(ge=0.0, le=1.0)
    original_message: str = Field("", alias="originalMessage")
    entities: IntentEntities = Field(default_factory=IntentEntities)
    context: IntentContext = Field(default_factory=IntentContext)
    metadata: IntentMetadata = Field(default_factory=IntentMetadata)

    @property
    def needs_clarification(self) -> bool:
        return self.metadata.needs_clarification

    @property
    def clarification_question(self) -> Optional[str]:
        return self.metadata.clarification_question

    def missing_required(self) -> list[str]:
        return self.entities.missing(REQUIRED_ENTITIES.get(self.action, ()))

    def to_raw(self) -> dict:
        """Camel-cased plain dict, the same shape the classifiers ask models for."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def with_entities(self, **updates: Any) -> "Intent":
        return self.model_copy(update={"entities": self.entities.model_copy(update=updates)})

    def with_metadata(self, **updates: Any) -> "Intent":
        return self.model_copy(update={"metadata": self.metadata.model_copy(update=updates)})

    def with_context(self, **updates: Any) -> "Intent":
        return self.model_copy(update={"context": self.context.model_copy(update=updates)})


# Entities an action cannot be executed without
REQUIRED_ENTITIES: dict[IntentAction, tuple[str, ...]] = {
    IntentAction.CREATE_CHART: ("chart_type", "data_type"),
    IntentAction.MODIFY_CHART: ("operation",),
    IntentAction.VIEW_DATA: ("data_type",),
    IntentAction.EXPLORE_DATA: ("data_type",),
    IntentAction.EXPORT_DATA: ("data_type",),
    IntentAction.ANALYZE_DATA: ("operation",),
    IntentAction.CREATE_CONTACT: ("contact_name",),
    IntentAction.UPDATE_CONTACT: ("contact_name",),
    IntentAction.DELETE_CONTACT: ("contact_name",),
    IntentAction.CREATE_ACCOUNT: ("account_name",),
    IntentAction.UPDATE_ACCOUNT: ("account_name",),
    IntentAction.DELETE_ACCOUNT: ("account_name",),
    IntentAction.CREATE_DEAL: ("deal_name",),
    IntentAction.UPDATE_DEAL: ("deal_name",),
    IntentAction.DELETE_DEAL: ("deal_name",),
    IntentAction.CREATE_ACTIVITY: ("activity_subject",),
    IntentAction.UPDATE_ACTIVITY: ("activity_subject",),
    IntentAction.DELETE_ACTIVITY: ("activity_subject",),
    IntentAction.SEND_EMAIL: ("contact_name",),
}

DEFAULT_CLARIFICATION = "Could you please clarify what you'd like me to help you with?"

CLARIFICATION_TABLE: dict[tuple[IntentAction, str], str] = {
    (IntentAction.CREATE_CHART, "chart_type"): (
        "What type of chart would you like? I can create line charts, bar charts, "
        "pie charts, area charts, or scatter plots."
    ),
    (IntentAction.CREATE_CHART, "data_type"): (
        "What data would you like to visualize? I can show deals, contacts, accounts, or activities."
    ),
    (IntentAction.MODIFY_CHART, "operation"): (
        "What would you like to change about the chart? I can change the chart type, "
        "colors, or add more data."
    ),
    (IntentAction.ANALYZE_DATA, "operation"): (
        "What kind of analysis would you like? I can analyze trends, find patterns, "
        "or make predictions."
    ),
    (IntentAction.VIEW_DATA, "data_type"): "Which records would you like to see: deals, contacts, accounts, or activities?",
    (IntentAction.EXPLORE_DATA, "data_type"): "Which data would you like to explore: deals, contacts, accounts, or activities?",
    (IntentAction.EXPORT_DATA, "data_type"): "Which data should I export?",
    (IntentAction.CREATE_CONTACT, "contact_name"): "What is the new contact's name?",
    (IntentAction.UPDATE_CONTACT, "contact_name"): "Which contact would you like to update?",
    (IntentAction.DELETE_CONTACT, "contact_name"): "Which contact would you like to delete?",
    (IntentAction.CREATE_ACCOUNT, "account_name"): "What is the new account's name?",
    (IntentAction.UPDATE_ACCOUNT, "account_name"): "Which account would you like to update?",
    (IntentAction.DELETE_ACCOUNT, "account_name"): "Which account would you like to delete?",
    (IntentAction.CREATE_DEAL, "deal_name"): "What should the new deal be called?",
    (IntentAction.UPDATE_DEAL, "deal_name"): "Which deal would you like to update?",
    (IntentAction.DELETE_DEAL, "deal_name"): "Which deal would you like to delete?",
    (IntentAction.CREATE_ACTIVITY, "activity_subject"): "What is the activity about?",
    (IntentAction.UPDATE_ACTIVITY, "activity_subject"): "Which activity would you like to update?",
    (IntentAction.DELETE_ACTIVITY, "activity_subject"): "Which activity would you like to delete?",
    (IntentAction.SEND_EMAIL, "contact_name"): "Who should I send the email to?",
}


# ─────────────────────────────────────────────────────────
# NORMALIZATION
# ─────────────────────────────────────────────────────────

def normalize_action(value: Any) -> IntentAction:
    if isinstance(value, IntentAction):
        return value
    if not isinstance(value, str):
        return IntentAction.GENERAL_CONVERSATION
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return IntentAction(key)
    except ValueError:
        return IntentAction.GENERAL_CONVERSATION


def normalize_confidence(value: Any, default: float = 0.5) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return max(0.0, min(1.0, number))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _closed_value(name: str, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    if name == "data_type":
        key = _SINGULAR_DATA_TYPES.get(key, key)
    return key if key in CLOSED_VALUES[name] else None


def normalize_entities(raw: Any) -> IntentEntities:
    """Coerce a loose entity mapping into IntentEntities, dropping what does not fit."""
    if isinstance(raw, IntentEntities):
        raw = raw.to_raw()
    if not isinstance(raw, dict):
        return IntentEntities()

    data: dict[str, str] = {}
    for name, info in IntentEntities.model_fields.items():
        alias = info.alias or name
        value = raw.get(alias)
        if value is None:
            value = raw.get(name)
        if value is None:
            continue

        if name in CLOSED_VALUES:
            closed = _closed_value(name, value)
            if closed is not None:
                data[name] = closed
        elif isinstance(value, (str, int, float)) and not isinstance(value, bool):
            text = str(value).strip()
            if text:
                data[name] = text
    return IntentEntities(**data)


def normalize_intent(raw: Any, original_message: str = "") -> Intent:
    """
    Build a well-formed Intent from arbitrary classifier output.

    Accepts an Intent, a dict, a JSON string or anything else. Unknown
    actions become general_conversation, confidence is clamped to [0, 1]
    (0.5 when missing) and absent sections get defaults. Applying it to
    its own output returns an equal Intent.
    """
    if isinstance(raw, Intent):
        raw = raw.to_raw()
    elif isinstance(raw, str):
        raw = extract_json_object(raw) or {}
    if not isinstance(raw, dict):
        raw = {}

    message = original_message or raw.get("originalMessage")
    if not isinstance(message, str):
        message = ""

    context_raw = raw.get("context") if isinstance(raw.get("context"), dict) else {}
    try:
        referring_to = ReferringTo(str(context_raw.get("referringTo", "")).strip().lower())
    except ValueError:
        referring_to = ReferringTo.NEW_REQUEST
    user_goal = context_raw.get("userGoal")
    if not isinstance(user_goal, str) or not user_goal.strip():
        user_goal = None

    metadata_raw = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
    needs = metadata_raw.get("needsClarification", raw.get("needsClarification", False))
    question = metadata_raw.get("clarificationQuestion", raw.get("clarificationQuestion"))
    if not isinstance(question, str) or not question.strip():
        question = None
    ambiguous = metadata_raw.get("isAmbiguous", raw.get("isAmbiguous", False))

    return Intent(
        action=normalize_action(raw.get("action")),
        confidence=normalize_confidence(raw.get("confidence")),
        original_message=message,
        entities=normalize_entities(raw.get("entities")),
        context=IntentContext(referring_to=referring_to, user_goal=user_goal),
        metadata=IntentMetadata(
            needs_clarification=_as_bool(needs),
            clarification_question=question.strip() if question else None,
            is_ambiguous=_as_bool(ambiguous),
        ),
    )


def apply_confidence_gate(intent: Intent, threshold: float = 0.7) -> Intent:
    """
    Force a clarification question onto intents below the threshold.

    An intent that already asks for clarification always leaves with a
    question, whatever its confidence.
    """
    if intent.confidence >= threshold:
        if not intent.needs_clarification or intent.clarification_question:
            return intent

    missing = intent.missing_required()
    question = CLARIFICATION_TABLE.get((intent.action, missing[0])) if missing else None
    question = question or intent.clarification_question or DEFAULT_CLARIFICATION
    return intent.with_metadata(needs_clarification=True, clarification_question=question)


def safe_default_intent(message: str, confidence: float = 0.3) -> Intent:
    """The intent used when nothing better could be determined."""
    return Intent(
        action=IntentAction.GENERAL_CONVERSATION,
        confidence=confidence,
        original_message=message,
        metadata=IntentMetadata(
            needs_clarification=True,
            clarification_question=DEFAULT_CLARIFICATION,
        ),
    )
