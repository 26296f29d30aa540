"""
Tests for the structured and general classifiers.
"""

import pytest

from conftest import ScriptedCompletion, intent_json

from crmpilot.config import TimeoutSettings
from crmpilot.context.conversation import ActiveTopic
from crmpilot.context.entities import (
    ContextualReference,
    Entity,
    EntityType,
    PossibleMatch,
    RecordKind,
    ReferenceType,
)
from crmpilot.context.resolver import ResolutionResult
from crmpilot.engine.classifier import (
    GeneralClassifier,
    StructuredClassifier,
    enrich_with_resolution,
    fallback_intent,
)
from crmpilot.engine.intent import Intent, IntentAction, ReferringTo
from crmpilot.memory.examples import ExampleStore
from crmpilot.utils.errors import CompletionError


@pytest.fixture
def structured(completion):
    return StructuredClassifier(completion, ExampleStore())


class TestStructuredClassifier:

    @pytest.mark.asyncio
    async def test_model_json_becomes_intent(self, completion, structured, manager):
        completion.on("structured", intent_json("create_chart", 0.9, chartType="pie", dataType="deals"))
        intent = await structured.classify("pie chart of deals", manager)
        assert intent.action == IntentAction.CREATE_CHART
        assert intent.entities.chart_type == "pie"
        assert not intent.needs_clarification

    @pytest.mark.asyncio
    async def test_prompt_carries_state_and_examples(self, completion, structured, manager):
        manager.set_pending_action("update_contact", {"contactName": "John Smith"}, "update contact John Smith")
        completion.on("structured", intent_json("view_data", dataType="deals"))
        await structured.classify("show me deals by stage", manager)

        _, prompt, _ = completion.calls[-1]
        assert "PENDING CONFIRMATION: update_contact" in prompt
        assert "show me deals by stage" in prompt  # retrieved example
        assert "create_chart" in prompt

    @pytest.mark.parametrize("reply", ["yes", "Yes!", "ok", "sure", "go ahead", "yep do it"])
    @pytest.mark.asyncio
    async def test_confirmation_shortcut_skips_the_model(self, completion, structured, manager, reply):
        manager.set_pending_action("update_contact", {"contactName": "John Smith", "email": "new@acme.com"})
        intent = await structured.classify(reply, manager)

        assert completion.calls == []
        assert intent.action == IntentAction.UPDATE_CONTACT
        assert intent.confidence == pytest.approx(0.95)
        assert intent.context.referring_to == ReferringTo.EXISTING_DATA
        assert intent.entities.contact_name == "John Smith"
        assert not intent.needs_clarification

    @pytest.mark.asyncio
    async def test_long_reply_is_not_a_confirmation(self, completion, structured, manager):
        manager.set_pending_action("update_contact", {"contactName": "John Smith"})
        completion.on("structured", intent_json("view_data", dataType="contacts"))
        await structured.classify("yes and also show me all of my contacts", manager)
        assert completion.operations() == ["structured"]

    @pytest.mark.asyncio
    async def test_low_confidence_gets_clarification(self, completion, structured, manager):
        completion.on("structured", intent_json("create_chart", 0.5, dataType="deals"))
        intent = await structured.classify("chart something", manager)
        assert intent.needs_clarification
        assert "type of chart" in intent.clarification_question

    @pytest.mark.asyncio
    async def test_follow_up_inherits_active_topic(self, completion, structured, manager):
        manager.set_active_topic(ActiveTopic(data_type="deals", dimension="stage", chart_type="bar"))
        completion.on("structured", intent_json("modify_chart", 0.85, chartType="pie", action="change"))
        intent = await structured.classify("make it a pie chart", manager)

        assert intent.entities.chart_type == "pie"
        assert intent.entities.data_type == "deals"
        assert intent.entities.dimension == "stage"
        assert intent.context.referring_to == ReferringTo.CURRENT_TOPIC

    @pytest.mark.asyncio
    async def test_record_actions_do_not_inherit_topic(self, completion, structured, manager):
        manager.set_active_topic(ActiveTopic(data_type="deals", dimension="stage"))
        completion.on("structured", intent_json("update_contact", contactName="Maria Lopez"))
        intent = await structured.classify("update it for Maria", manager)
        assert intent.entities.data_type is None


class TestNeverRaises:

    @pytest.mark.parametrize("reply", [
        "",
        "I am not sure what you mean",
        "{broken json",
        CompletionError("model crashed"),
        RuntimeError("boom"),
    ])
    @pytest.mark.asyncio
    async def test_bad_model_output_falls_back(self, completion, structured, manager, reply):
        completion.on("structured", reply)
        intent = await structured.classify("please show my deals", manager)
        assert isinstance(intent, Intent)
        assert 0.0 <= intent.confidence <= 1.0

    @pytest.mark.asyncio
    async def test_attempt_reports_failure(self, completion, structured, manager):
        completion.on("structured", "no json here")
        result = await structured.attempt("hmm", manager)
        assert not result.ok
        assert result.error.stage == "structured"

    @pytest.mark.asyncio
    async def test_timeout_is_a_failed_stage(self, manager):
        slow = ScriptedCompletion(delay=0.5).on("general", intent_json("view_data", dataType="deals"))
        classifier = GeneralClassifier(slow, timeouts=TimeoutSettings(completion=0.05))
        result = await classifier.attempt("show deals", manager)
        assert not result.ok
        assert "timed out" in str(result.error)


class TestGeneralClassifier:

    @pytest.mark.asyncio
    async def test_uses_conversational_temperature(self, completion, manager):
        classifier = GeneralClassifier(completion)
        completion.on("general", intent_json("analyze_data", action="analyze", dataType="deals"))
        intent = await classifier.classify("how is my pipeline doing", manager)
        assert intent.action == IntentAction.ANALYZE_DATA
        assert classifier.temperature == pytest.approx(0.3)
        assert classifier.calls == 1


class TestEnrichment:

    def test_resolved_records_fill_names(self):
        intent = Intent(action=IntentAction.UPDATE_CONTACT, confidence=0.6)
        match = PossibleMatch(id="c1", name="John Smith", type=RecordKind.CONTACT, confidence=1.0)
        resolution = ResolutionResult(
            entities=[Entity(EntityType.CONTACT, "John Smith", 1.0)],
            references=[
                ContextualReference(
                    type=ReferenceType.NAME,
                    value="John Smith",
                    possible_matches=[match],
                    resolved_entity=match,
                )
            ],
        )
        enriched = enrich_with_resolution(intent, resolution)
        assert enriched.entities.contact_name == "John Smith"
        assert enriched.confidence == pytest.approx(0.8)

    def test_no_resolution_leaves_intent_alone(self):
        intent = Intent(action=IntentAction.VIEW_DATA, confidence=0.9)
        assert enrich_with_resolution(intent, ResolutionResult()) is intent


class TestFallback:

    @pytest.mark.parametrize("message,action", [
        ("update the contact for Maria", IntentAction.UPDATE_CONTACT),
        ("draw a graph of deals", IntentAction.CREATE_CHART),
        ("send an email to Maria", IntentAction.SEND_EMAIL),
        ("export everything", IntentAction.EXPORT_DATA),
    ])
    def test_keyword_matches_ask_for_clarification(self, message, action):
        intent = fallback_intent(message)
        assert intent.action == action
        assert intent.confidence == pytest.approx(0.6)
        assert intent.needs_clarification

    def test_no_match_is_safe_default(self):
        intent = fallback_intent("the weather is nice")
        assert intent.action == IntentAction.GENERAL_CONVERSATION
        assert intent.confidence == pytest.approx(0.3)
