"""
End-to-end tests for the orchestration pipeline.

The completion service is scripted per operation, so each test states
exactly which model calls it expects.
"""

import asyncio

import pytest

from conftest import USER, ScriptedCompletion, intent_json

from crmpilot.cache.rate_limiter import RateLimiter
from crmpilot.config import RateLimits, TimeoutSettings
from crmpilot.engine.intent import DEFAULT_CLARIFICATION, IntentAction
from crmpilot.engine.orchestrator import ConversationalOrchestrator
from crmpilot.engine.phrases import PhraseCache
from crmpilot.engine.router import IntentHandler, IntentRouter
from crmpilot.memory.examples import ExampleStore
from crmpilot.runtime.completion import RateLimitedCompletionService
from crmpilot.utils.error_recovery import RETRY_LIMIT_EXCEEDED
from crmpilot.utils.response_formatter import APOLOGY, GENERIC_SUGGESTIONS

AMBIGUOUS_JOHN = [{"type": "contact", "value": "John", "confidence": 0.6}]


class SlowStructured(ScriptedCompletion):
    """Structured calls hang; everything else answers at once."""

    async def complete(self, system_prompt, messages, temperature=0.1, max_tokens=500, options=None):
        if options is not None and options.operation == "structured":
            await asyncio.sleep(1)
        return await super().complete(system_prompt, messages, temperature, max_tokens, options)


class FailingHandler(IntentHandler):
    name = "failing"

    def __init__(self, error: Exception):
        self.error = error
        self.attempts = 0

    def can_handle(self, intent):
        return intent.action == IntentAction.VIEW_DATA

    async def handle(self, intent, context):
        self.attempts += 1
        raise self.error


class TestPhraseCache:

    @pytest.mark.asyncio
    async def test_canonical_phrase_skips_the_model(self, completion, orchestrator):
        reply = await orchestrator.resolve("show me contacts", USER)

        assert completion.calls == []
        assert reply.stage == "phrase_cache"
        assert reply.action == "view_data"
        assert reply.response_type == "data"
        assert len(reply.data) == 3
        assert reply.message.startswith("You have 3 contacts.")
        assert "1) John Smith (john.smith@acme.com)" in reply.message

    @pytest.mark.asyncio
    async def test_aggregate_question_is_not_a_phrase(self, completion, orchestrator):
        completion.on("structured", intent_json("view_data", 0.9, dataType="deals"))
        reply = await orchestrator.resolve("how many deals", USER)
        assert reply.stage == "structured"


class TestClarification:

    @pytest.mark.asyncio
    async def test_two_johns_then_pick_one(self, completion, orchestrator):
        completion.on("entity_extraction", AMBIGUOUS_JOHN)
        completion.on(
            "structured",
            intent_json("update_contact", 0.9, contactName="John", field="email", value="john@new.com"),
        )

        question = await orchestrator.resolve("update John's email to john@new.com", USER)
        assert question.stage == "resolver"
        assert question.needs_clarification
        assert question.response_type == "clarification"
        assert "John Smith (contact)" in question.message
        assert "John Doe (contact)" in question.message
        assert completion.operations() == ["entity_extraction"]

        answer = await orchestrator.resolve("John Smith", USER)
        assert answer.stage == "structured"
        assert answer.needs_confirmation
        assert answer.message == (
            "Just to confirm, you want me to update contact John Smith (email -> john@new.com)? (yes/no)"
        )
        state = orchestrator.states.get(USER).state
        assert state.pending_clarification is None
        assert state.last_mentioned.id == "c1"
        assert state.pending_action.entities["contactName"] == "John Smith"

    @pytest.mark.asyncio
    async def test_cancelling_the_question(self, completion, orchestrator):
        completion.on("entity_extraction", AMBIGUOUS_JOHN)
        await orchestrator.resolve("update John's email to john@new.com", USER)

        reply = await orchestrator.resolve("never mind", USER)
        assert reply.stage == "cancelled"
        assert orchestrator.states.get(USER).state.pending_clarification is None

    @pytest.mark.asyncio
    async def test_unrelated_reply_is_a_new_request(self, completion, orchestrator):
        completion.on("entity_extraction", AMBIGUOUS_JOHN)
        await orchestrator.resolve("update John's email to john@new.com", USER)

        reply = await orchestrator.resolve("show me deals", USER)
        assert reply.stage == "phrase_cache"
        assert reply.action == "view_data"
        assert orchestrator.states.get(USER).state.pending_clarification is None


class TestConfirmation:

    @pytest.fixture
    def delete_deal(self, completion):
        completion.on("structured", intent_json("delete_deal", 0.9, dealName="Initech Upgrade"))
        return "delete the Initech Upgrade deal"

    @pytest.mark.asyncio
    async def test_write_waits_for_yes(self, completion, orchestrator, delete_deal):
        first = await orchestrator.resolve(delete_deal, USER)
        assert first.response_type == "confirmation"
        assert first.needs_confirmation
        assert orchestrator.states.get(USER).state.pending_action.action == "delete_deal"

        done = await orchestrator.resolve("yes", USER)
        assert done.stage == "confirmation"
        assert done.response_type == "record_change"
        assert done.data == {"operation": "delete_deal", "entities": {"dealName": "Initech Upgrade"}}
        assert orchestrator.states.get(USER).state.pending_action is None
        assert completion.operations().count("structured") == 1

    @pytest.mark.asyncio
    async def test_no_cancels_the_write(self, orchestrator, delete_deal):
        await orchestrator.resolve(delete_deal, USER)
        reply = await orchestrator.resolve("no", USER)

        assert reply.stage == "cancelled"
        assert reply.message == "Okay, I won't delete deal Initech Upgrade."
        assert orchestrator.states.get(USER).state.pending_action is None

    @pytest.mark.asyncio
    async def test_confirmed_write_invalidates_cached_data(self, orchestrator, delete_deal):
        await orchestrator.resolve("show me deals", USER)
        assert len(orchestrator.data_cache.cache) == 1

        await orchestrator.resolve(delete_deal, USER)
        await orchestrator.resolve("yes", USER)
        assert len(orchestrator.data_cache.cache) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("between", ["show me contacts", "hello"])
    async def test_yes_after_another_turn_does_not_confirm(self, orchestrator, delete_deal, between):
        await orchestrator.resolve(delete_deal, USER)
        await orchestrator.resolve(between, USER)
        assert orchestrator.states.get(USER).state.pending_action is None

        later = await orchestrator.resolve("yes", USER)
        assert later.stage != "confirmation"
        assert later.response_type != "record_change"


class TestStageFallthrough:

    @pytest.mark.asyncio
    async def test_structured_timeout_falls_through_to_general(self, records):
        completion = SlowStructured().on("general", intent_json("analyze_data", 0.85, dataType="deals"))
        orchestrator = ConversationalOrchestrator(
            completion,
            records=records,
            examples=ExampleStore(seed=False),
            timeouts=TimeoutSettings(completion=0.05),
        )
        reply = await orchestrator.resolve("which deals are closing soon", USER)

        assert reply.stage == "general"
        assert reply.action == "analyze_data"
        assert reply.data["count"] == 3

    @pytest.mark.asyncio
    async def test_low_structured_confidence_is_not_accepted(self, completion, orchestrator):
        completion.on("structured", intent_json("analyze_data", 0.5, dataType="deals"))
        completion.on("general", intent_json("analyze_data", 0.85, dataType="deals"))
        reply = await orchestrator.resolve("which deals are closing soon", USER)
        assert reply.stage == "general"
        assert completion.operations() == ["entity_extraction", "structured", "general"]

    @pytest.mark.asyncio
    async def test_every_stage_failing_apologizes(self, completion, orchestrator):
        completion.on("structured", "I have no idea")
        completion.on("general", RuntimeError("model crashed"))
        reply = await orchestrator.resolve("frobnicate the widgets", USER)

        assert reply.message == APOLOGY
        assert reply.suggestions == GENERIC_SUGGESTIONS
        assert reply.error_code == "CLASSIFICATION_FAILED"

    @pytest.mark.asyncio
    async def test_low_confidence_question_gets_prefix(self, completion, orchestrator):
        completion.on("structured", intent_json("create_chart", 0.5, dataType="deals"))
        completion.on("general", intent_json("create_chart", 0.5, dataType="deals"))
        reply = await orchestrator.resolve("do the visual thing with deals", USER)

        assert reply.needs_clarification
        assert reply.message.startswith("I think you want me to create a chart. ")
        assert "type of chart" in reply.message

    @pytest.mark.asyncio
    async def test_confident_clarification_without_question(self, completion, orchestrator):
        asking = intent_json("general_conversation", 0.9)
        asking["metadata"] = {"needsClarification": True, "clarificationQuestion": None}
        completion.on("structured", asking)
        completion.on("general", asking)
        reply = await orchestrator.resolve("hmm, the thing from before", USER)

        assert reply.needs_clarification
        assert reply.message == DEFAULT_CLARIFICATION

        completion.on("structured", intent_json("view_data", 0.9, dataType="deals"))
        nxt = await orchestrator.resolve("pull up my deals from last week", USER)
        assert nxt.stage == "structured"
        assert nxt.action == "view_data"
        assert nxt.error_code is None


class TestUnderstandingCache:

    @pytest.fixture
    def scripted(self, completion):
        completion.on("structured", intent_json("view_data", 0.4, dataType="deals"))
        completion.on("general", intent_json("view_data", 0.9, dataType="deals"))
        return completion

    @pytest.mark.asyncio
    async def test_general_results_are_reused(self, scripted, orchestrator):
        first = await orchestrator.resolve("what's in my pipeline", USER)
        assert first.stage == "general"

        orchestrator.reset(USER)
        second = await orchestrator.resolve("What's in my pipeline?", USER)
        assert second.stage == "understanding_cache"
        assert scripted.operations().count("general") == 1

    @pytest.mark.asyncio
    async def test_aggregate_questions_are_never_cached(self, scripted, orchestrator):
        await orchestrator.resolve("how many deals do I have", USER)
        orchestrator.reset(USER)
        second = await orchestrator.resolve("how many deals do I have", USER)

        assert second.stage == "general"
        assert scripted.operations().count("general") == 2
        assert len(orchestrator.understanding) == 0


class TestDispatch:

    @pytest.mark.asyncio
    async def test_follow_up_changes_the_chart(self, completion, orchestrator):
        completion.on(
            "structured",
            intent_json("create_chart", 0.9, chartType="bar", dataType="deals", dimension="stage"),
            intent_json("general_conversation", 0.9),
        )
        await orchestrator.resolve("chart my deals by stage as bars", USER)
        reply = await orchestrator.resolve("pie instead", USER)

        assert reply.action == "modify_chart"
        assert reply.data["chartType"] == "pie"
        assert reply.data["dataType"] == "deals"
        assert reply.phase == "modification"

    @pytest.mark.asyncio
    async def test_retryable_handler_error_hits_the_ceiling(self, completion, records):
        failing = FailingHandler(ConnectionError("connection reset"))
        orchestrator = ConversationalOrchestrator(
            completion, records=records, router=IntentRouter(handlers=[failing])
        )
        reply = await orchestrator.resolve("show me contacts", USER)

        assert failing.attempts == 4
        assert reply.error_code == RETRY_LIMIT_EXCEEDED
        assert reply.response_type == "error"
        assert reply.stage == "phrase_cache"
        assert reply.message.startswith("I couldn't reach your data")

    @pytest.mark.asyncio
    async def test_non_retryable_handler_error(self, completion, records):
        failing = FailingHandler(PermissionError("permission denied"))
        orchestrator = ConversationalOrchestrator(
            completion, records=records, router=IntentRouter(handlers=[failing])
        )
        reply = await orchestrator.resolve("show me contacts", USER)

        assert failing.attempts == 1
        assert reply.error_code == "AUTH_ERROR"

    @pytest.mark.asyncio
    async def test_edge_case_answers_without_the_model(self, completion, orchestrator):
        reply = await orchestrator.resolve("hello", USER)
        assert reply.stage == "edge_case"
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_never_raises(self, completion, records):
        class BrokenPhrases(PhraseCache):
            def lookup(self, message):
                raise RuntimeError("boom")

        orchestrator = ConversationalOrchestrator(completion, records=records, phrases=BrokenPhrases())
        reply = await orchestrator.resolve("show me contacts", USER)
        assert reply.stage == "error"
        assert reply.error_code == "GENERIC_ERROR"

    @pytest.mark.asyncio
    async def test_team_id_from_request_context(self, orchestrator):
        reply = await orchestrator.resolve("show me deals", USER, context={"teamId": "team-1"})
        assert reply.context["teamId"] == "team-1"

    @pytest.mark.asyncio
    async def test_sessions_are_separate(self, orchestrator, completion):
        completion.on("structured", intent_json("delete_deal", 0.9, dealName="Initech Upgrade"))
        await orchestrator.resolve("delete the Initech Upgrade deal", USER, session_id="a")
        other = await orchestrator.resolve("yes", USER, session_id="b")
        assert other.stage != "confirmation"


class TestLearning:

    @pytest.mark.asyncio
    async def test_successes_become_examples(self, orchestrator):
        await orchestrator.resolve("show me contacts", USER)
        assert orchestrator.examples.stats()["recorded"] == 1
        assert orchestrator.learner.interactions(USER)[0].action == "view_data"

    @pytest.mark.asyncio
    async def test_polite_users_get_polite_replies(self, orchestrator):
        await orchestrator.resolve("please show me my contacts", USER)
        reply = await orchestrator.resolve("show me deals", USER)
        assert reply.message.endswith("Please let me know if you need anything else.")


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_shape(self, orchestrator):
        await orchestrator.resolve("show me contacts", USER)
        await orchestrator.resolve("hello", USER)
        stats = orchestrator.stats()

        assert stats["stages"] == {"phrase_cache": 1, "edge_case": 1}
        assert stats["sessions"] == 1
        assert stats["caches"]["phrases"]["hits"] == 1
        assert stats["edge_cases"]["by_rule"] == {"greeting": 1}
        assert stats["classifier_calls"] == {"structured": 0, "general": 0}
        assert "rate_limits" not in stats

    @pytest.mark.asyncio
    async def test_rate_limited_stack(self, records):
        limiter = RateLimiter(RateLimits(user_per_minute=2))
        completion = RateLimitedCompletionService(
            ScriptedCompletion().on("structured", intent_json("analyze_data", 0.9, dataType="deals")),
            limiter,
        )
        orchestrator = ConversationalOrchestrator(
            completion, records=records, limiter=limiter, usage=completion.tracker
        )

        ok = await orchestrator.resolve("which deals look risky", USER)
        assert ok.action == "analyze_data"

        # extraction and structured used the user's two requests
        blocked = await orchestrator.resolve("which deals look risky now", USER)
        assert blocked.error_code == "CLASSIFICATION_FAILED"

        stats = orchestrator.stats()
        assert stats["rate_limits"]["rejections"] >= 2
        assert stats["usage"]["calls"] == 2
