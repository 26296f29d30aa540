"""
The Router maps a resolved Intent to the handler that carries it out.

Handlers are tried in registration order and the first one that accepts
the intent runs; the conversation handler catches everything else.
Handlers return opaque payloads that the orchestrator personalizes and
returns.
"""

import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from crmpilot.cache.data import DataCache
from crmpilot.context.conversation import ActiveTopic, ConversationStateManager
from crmpilot.context.entities import RecordKind
from crmpilot.engine.intent import CHART_TYPES, Intent, IntentAction, ReferringTo
from crmpilot.utils.logging import logger


@dataclass
class HandlerResult:
    """What a handler produced for an intent."""
    type: str
    content: Optional[str] = None
    data: Any = None
    has_data: bool = False
    needs_confirmation: bool = False
    confirmation_summary: str = ""
    changed_data: bool = False


@dataclass
class HandlerContext:
    user_id: str
    manager: ConversationStateManager
    data_cache: DataCache
    team_id: Optional[str] = None
    page_limit: Optional[int] = None
    extra: dict = field(default_factory=dict)


class IntentHandler(ABC):
    """A domain handler behind the router."""

    name = "handler"

    @abstractmethod
    def can_handle(self, intent: Intent) -> bool:
        """Whether this handler accepts the intent."""

    @abstractmethod
    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        """Carry out the intent."""


def _records_kind(data_type: Optional[str]) -> Optional[RecordKind]:
    return RecordKind.from_data_type(data_type) if data_type else None


def _group_counts(rows: list[dict], dimension: Optional[str]) -> dict[str, int]:
    if not dimension:
        return {"total": len(rows)}
    counts = Counter(str(row.get(dimension) or "unknown") for row in rows)
    return dict(counts.most_common())


class ChartHandler(IntentHandler):
    """Builds and modifies chart specs over grouped record counts."""

    name = "chart"

    def can_handle(self, intent: Intent) -> bool:
        return intent.action.is_chart

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        entities = intent.entities
        manager = context.manager

        if intent.action == IntentAction.MODIFY_CHART:
            topic = manager.state.active_topic
            if topic is None:
                return HandlerResult(
                    type="message",
                    content="There's no chart to change yet. Which data would you like to chart first?",
                )
            if entities.chart_type:
                topic.chart_type = entities.chart_type
            if entities.dimension:
                topic.dimension = entities.dimension
            manager.state.current_topic = topic.descriptor
            data_type, dimension, chart_type = topic.data_type, topic.dimension, topic.chart_type
        else:
            data_type = entities.data_type or "deals"
            dimension = entities.dimension or ("stage" if data_type == "deals" else "status")
            chart_type = entities.chart_type or "bar"

        kind = _records_kind(data_type) or RecordKind.DEAL
        rows = await context.data_cache.get_records(context.user_id, kind, team_id=context.team_id)
        counts = _group_counts(rows, dimension)
        chart = {
            "chartType": chart_type,
            "dataType": data_type,
            "dimension": dimension,
            "labels": list(counts),
            "values": list(counts.values()),
        }

        if intent.action == IntentAction.CREATE_CHART:
            manager.set_active_topic(
                ActiveTopic(data_type=data_type, dimension=dimension, chart_type=chart_type)
            )
            content = f"Here's a {chart_type} chart of your {data_type} by {dimension}."
        else:
            content = f"I've updated the chart to a {chart_type} chart of {data_type} by {dimension}."
        return HandlerResult(type="chart", content=content, data=chart, has_data=bool(rows))


class DataViewHandler(IntentHandler):
    """Lists records of one kind."""

    name = "data_view"
    DEFAULT_PAGE = 25

    def can_handle(self, intent: Intent) -> bool:
        return intent.action in (IntentAction.VIEW_DATA, IntentAction.EXPLORE_DATA)

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        data_type = intent.entities.data_type or "contacts"
        kind = _records_kind(data_type) or RecordKind.CONTACT
        filters = {}
        if intent.entities.stage:
            filters["stage"] = intent.entities.stage
        if intent.entities.status:
            filters["status"] = intent.entities.status

        rows = await context.data_cache.get_records(
            context.user_id, kind, filters or None, team_id=context.team_id
        )
        page = rows[: context.page_limit or self.DEFAULT_PAGE]
        noun = data_type if len(rows) != 1 else kind.value
        content = f"You have {len(rows)} {noun}."
        if len(rows) > len(page):
            content += f" Showing the first {len(page)}."
        return HandlerResult(type="data", content=content, data=page, has_data=bool(rows))


class RecordCrudHandler(IntentHandler):
    """
    Create/update/delete for contacts, accounts, deals and activities.

    Every write is confirmed first: the first pass returns a confirmation
    request, and the confirmed intent comes back with referring_to set
    to existing_data.
    """

    name = "record_crud"

    def can_handle(self, intent: Intent) -> bool:
        return intent.action.is_record_write

    @staticmethod
    def describe(intent: Intent) -> str:
        verb, noun = intent.action.value.split("_", 1)
        entities = intent.entities
        target = (
            entities.contact_name or entities.account_name or entities.deal_name
            or entities.activity_subject or ""
        )
        change = ""
        if entities.field and entities.value:
            change = f" ({entities.field} -> {entities.value})"
        elif entities.email and verb == "update":
            change = f" (email -> {entities.email})"
        return f"{verb} {noun} {target}{change}".strip()

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        summary = self.describe(intent)
        if intent.context.referring_to != ReferringTo.EXISTING_DATA:
            return HandlerResult(
                type="confirmation",
                content=f"Just to confirm, you want me to {summary}? (yes/no)",
                needs_confirmation=True,
                confirmation_summary=summary,
            )

        logger.info(f"Applying confirmed write for {context.user_id}: {summary}")
        return HandlerResult(
            type="record_change",
            content=f"Done. I'll {summary}.",
            data={"operation": intent.action.value, "entities": intent.entities.to_raw()},
            has_data=True,
            changed_data=True,
        )


class MessagingHandler(IntentHandler):
    name = "messaging"

    def can_handle(self, intent: Intent) -> bool:
        return intent.action == IntentAction.SEND_EMAIL

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        recipient = intent.entities.contact_name or intent.entities.recipient or intent.entities.email
        subject = intent.entities.subject or "a quick follow-up"
        if intent.context.referring_to != ReferringTo.EXISTING_DATA:
            summary = f"email {recipient} about {subject}"
            return HandlerResult(
                type="confirmation",
                content=f"Should I send an email to {recipient} about {subject}? (yes/no)",
                needs_confirmation=True,
                confirmation_summary=summary,
            )
        return HandlerResult(
            type="email",
            content=f"Your email to {recipient} is on its way.",
            data={"to": recipient, "subject": subject, "body": intent.entities.description},
            has_data=True,
        )


class AnalysisHandler(IntentHandler):
    """Summary statistics over deals (or another record kind)."""

    name = "analysis"

    def can_handle(self, intent: Intent) -> bool:
        return intent.action == IntentAction.ANALYZE_DATA

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        data_type = intent.entities.data_type or "deals"
        kind = _records_kind(data_type) or RecordKind.DEAL
        rows = await context.data_cache.get_records(context.user_id, kind, team_id=context.team_id)
        if not rows:
            return HandlerResult(type="analysis", content=f"You don't have any {data_type} to analyze yet.")

        amounts = np.array([float(r.get("amount") or 0) for r in rows])
        by_stage = _group_counts(rows, "stage" if kind == RecordKind.DEAL else "status")
        top_group = next(iter(by_stage))
        summary = {
            "count": len(rows),
            "total_amount": float(amounts.sum()),
            "average_amount": float(amounts.mean()),
            "groups": by_stage,
        }
        content = f"You have {len(rows)} {data_type}; most are in {top_group}."
        if kind == RecordKind.DEAL and summary["total_amount"]:
            content += (
                f" Total value is {summary['total_amount']:,.0f}"
                f" (average {summary['average_amount']:,.0f})."
            )
        return HandlerResult(type="analysis", content=content, data=summary, has_data=True)


class ExportHandler(IntentHandler):
    """Hands the active chart or data set to the export service."""

    name = "export"

    def can_handle(self, intent: Intent) -> bool:
        return intent.action == IntentAction.EXPORT_DATA

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        topic = context.manager.state.active_topic
        target = topic.descriptor if topic else (intent.entities.data_type or "your data")
        return HandlerResult(
            type="export",
            content=f"I've prepared {target} for export.",
            data={"target": target, "format": intent.entities.export_format or "pdf"},
            has_data=True,
        )


class ConversationHandler(IntentHandler):
    """Fallback for general conversation and anything unrouted."""

    name = "conversation"

    HELP = (
        "I can show your contacts, deals, accounts and activities, build and change charts, "
        "analyze your pipeline, update records and send emails. What would you like to do?"
    )

    def can_handle(self, intent: Intent) -> bool:
        return True

    async def handle(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        if intent.needs_clarification and intent.clarification_question:
            return HandlerResult(type="message", content=intent.clarification_question)
        return HandlerResult(type="message", content=self.HELP)


class IntentRouter:
    """Dispatches intents to the first handler that accepts them."""

    def __init__(
        self,
        handlers: Optional[list[IntentHandler]] = None,
        fallback: Optional[IntentHandler] = None,
    ):
        self.handlers = handlers if handlers is not None else [
            ChartHandler(),
            DataViewHandler(),
            RecordCrudHandler(),
            MessagingHandler(),
            AnalysisHandler(),
            ExportHandler(),
        ]
        self.fallback = fallback or ConversationHandler()

    def register(self, handler: IntentHandler) -> None:
        self.handlers.append(handler)

    def select(self, intent: Intent) -> IntentHandler:
        for handler in self.handlers:
            if handler.can_handle(intent):
                return handler
        return self.fallback

    @staticmethod
    def follow_up(intent: Intent, message: str, manager: ConversationStateManager) -> Intent:
        """
        Re-target chit-chat that is really about the active chart.

        "pie instead" after a chart was built comes back as
        general_conversation from the classifiers; this turns it into
        modify_chart.
        """
        if intent.action != IntentAction.GENERAL_CONVERSATION:
            return intent
        if manager.state.active_topic is None:
            return intent

        text = message.lower()
        chart_type = next((c for c in CHART_TYPES if re.search(rf"\b{c}\b", text)), None)
        if chart_type is None or not (manager.is_referring_to_active_topic(message) or "instead" in text):
            return intent

        logger.info(f"Follow-up on active chart detected: {chart_type}")
        updated = intent.model_copy(
            update={"action": IntentAction.MODIFY_CHART, "confidence": max(intent.confidence, 0.8)}
        )
        updated = updated.with_entities(chart_type=chart_type, operation="change")
        updated = updated.with_metadata(needs_clarification=False, clarification_question=None)
        return updated.with_context(referring_to=ReferringTo.CURRENT_TOPIC)

    async def route(self, intent: Intent, context: HandlerContext) -> HandlerResult:
        handler = self.select(intent)
        logger.info(f"Routing {intent.action.value} to {handler.name}")
        return await handler.handle(intent, context)
