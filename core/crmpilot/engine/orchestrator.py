"""
Conversational orchestrator: one user message in, one reply out.

STAGES (first one that produces an intent wins):
0. Pending flows - cancel a pending write, confirm it, or answer a
   clarification question
1. Edge-case filter - may answer the turn or rewrite the input
2. Phrase cache - canonical phrasings, no model call
3. Reference resolver - ambiguity ends the turn with a question
4. Structured classifier - accepted above the confidence threshold
5. Understanding cache
6. General classifier

The resolved intent is then dispatched through the router, personalized,
learned from and recorded in the conversation state.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from crmpilot.cache.data import DataCache
from crmpilot.cache.rate_limiter import RateLimiter
from crmpilot.cache.understanding import UnderstandingCache
from crmpilot.config import CacheSettings, ClassifierSettings, LearningSettings, TimeoutSettings
from crmpilot.context.conversation import (
    ConversationStateManager,
    ConversationStateStore,
    is_cancellation,
    is_confirmation,
)
from crmpilot.context.resolver import ReferenceResolver, ResolutionResult
from crmpilot.engine.classifier import (
    GeneralClassifier,
    StageResult,
    StructuredClassifier,
    confirmation_intent,
    fallback_intent,
)
from crmpilot.engine.edge_cases import EdgeCaseContext, EdgeCaseHandler
from crmpilot.engine.intent import DEFAULT_CLARIFICATION, Intent, IntentAction
from crmpilot.engine.phrases import PhraseCache
from crmpilot.engine.router import HandlerContext, HandlerResult, IntentRouter
from crmpilot.memory.examples import ExampleStore
from crmpilot.memory.learning import AdaptiveLearner, InteractionRecord
from crmpilot.runtime.completion import CompletionService, UsageTracker
from crmpilot.runtime.records import InMemoryRecordStore, RecordStore
from crmpilot.utils.error_recovery import RETRY_LIMIT_EXCEEDED, ErrorRecovery
from crmpilot.utils.logging import logger
from crmpilot.utils.response_formatter import APOLOGY, GENERIC_SUGGESTIONS, ResponseFormatter

MAX_SUGGESTIONS = 4


@dataclass
class AssistantReply:
    """What the orchestrator hands back for one message."""
    message: str
    stage: str
    action: Optional[str] = None
    intent: Optional[Intent] = None
    response_type: str = "message"
    data: Any = None
    suggestions: list[str] = field(default_factory=list)
    needs_clarification: bool = False
    needs_confirmation: bool = False
    phase: Optional[str] = None
    context: dict = field(default_factory=dict)
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "stage": self.stage,
            "action": self.action,
            "intent": self.intent.to_raw() if self.intent else None,
            "response_type": self.response_type,
            "data": self.data,
            "suggestions": list(self.suggestions),
            "needs_clarification": self.needs_clarification,
            "needs_confirmation": self.needs_confirmation,
            "phase": self.phase,
            "context": dict(self.context),
            "error_code": self.error_code,
        }


Stage = Callable[[str, ConversationStateManager, Optional[ResolutionResult]], Awaitable[StageResult]]


class ConversationalOrchestrator:
    """
    Resolves messages into intents and carries them out.

    Every collaborator is injected; the defaults are in-process stores,
    which is right for one event loop per process.
    """

    def __init__(
        self,
        completion: CompletionService,
        records: Optional[RecordStore] = None,
        states: Optional[ConversationStateStore] = None,
        data_cache: Optional[DataCache] = None,
        understanding: Optional[UnderstandingCache] = None,
        examples: Optional[ExampleStore] = None,
        learner: Optional[AdaptiveLearner] = None,
        edge_cases: Optional[EdgeCaseHandler] = None,
        recovery: Optional[ErrorRecovery] = None,
        phrases: Optional[PhraseCache] = None,
        resolver: Optional[ReferenceResolver] = None,
        structured: Optional[StructuredClassifier] = None,
        general: Optional[GeneralClassifier] = None,
        router: Optional[IntentRouter] = None,
        limiter: Optional[RateLimiter] = None,
        usage: Optional[UsageTracker] = None,
        settings: Optional[ClassifierSettings] = None,
        cache_settings: Optional[CacheSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
        learning_settings: Optional[LearningSettings] = None,
    ):
        self.completion = completion
        self.settings = settings or ClassifierSettings()
        self.timeouts = timeouts or TimeoutSettings()
        cache_settings = cache_settings or CacheSettings()

        self.records = records or InMemoryRecordStore()
        self.states = states or ConversationStateStore()
        self.data_cache = data_cache or DataCache(self.records, settings=cache_settings, timeouts=self.timeouts)
        self.understanding = understanding or UnderstandingCache(settings=cache_settings)
        self.examples = examples or ExampleStore(settings=learning_settings)
        self.learner = learner or AdaptiveLearner(learning_settings)
        self.edge_cases = edge_cases or EdgeCaseHandler()
        self.recovery = recovery or ErrorRecovery()
        self.phrases = phrases or PhraseCache()
        self.resolver = resolver or ReferenceResolver(completion, self.data_cache, timeouts=self.timeouts)
        self.structured = structured or StructuredClassifier(
            completion, self.examples, self.settings, self.timeouts
        )
        self.general = general or GeneralClassifier(completion, self.settings, self.timeouts)
        self.router = router or IntentRouter()
        self.limiter = limiter
        self.usage = usage

        self.stage_counts: dict[str, int] = {}

    # ─────────────────────────────────────────────────────────
    # ENTRY POINT
    # ─────────────────────────────────────────────────────────

    async def resolve(
        self,
        message: str,
        user_id: str,
        session_id: str = "default",
        context: Optional[dict] = None,
    ) -> AssistantReply:
        """
        Handle one user message. Never raises.

        Args:
            message: Raw user text
            user_id: Who sent it
            session_id: Conversation within the user's sessions
            context: Optional request context (teamId, payload)

        Returns:
            AssistantReply for the turn
        """
        started = time.monotonic()
        manager = self.states.get(user_id, session_id)
        try:
            return await self._resolve(message or "", manager, context or {}, started)
        except Exception as e:
            logger.error(f"Failed to resolve message for {user_id}: {e}")
            recovery = self.recovery.recover(e, user_id=user_id, operation="resolve")
            return self._reply(
                manager,
                message=recovery.message,
                stage="error",
                suggestions=recovery.suggestions,
                error_code=recovery.code,
            )

    async def _resolve(
        self,
        message: str,
        manager: ConversationStateManager,
        context: dict,
        started: float,
    ) -> AssistantReply:
        state = manager.state
        if context.get("teamId"):
            state.team_id = context["teamId"]

        pending = await self._pending_flows(message, manager, started)
        if pending is not None:
            return pending

        # a pending write only survives into the very next turn
        stale = manager.clear_pending_action()
        if stale is not None:
            logger.info(f"Dropping pending {stale.action} for {state.user_id}: turn moved on")

        # 1. edge cases
        outcome = self.edge_cases.check(
            message,
            EdgeCaseContext(
                user_id=state.user_id,
                payload=context.get("payload"),
                recent_errors=self.recovery.recent_errors(state.user_id),
                cache_bytes=self.cache_bytes(),
            ),
        )
        basic = False
        page_limit = None
        if outcome is not None:
            if outcome.clear_cache:
                logger.warning("Cache memory limit exceeded, clearing caches")
                self.clear_caches()
            if outcome.answers_turn:
                self._count("edge_case")
                manager.add_to_history("user", message)
                manager.add_to_history("assistant", outcome.message)
                return self._reply(
                    manager,
                    message=outcome.message,
                    stage="edge_case",
                    suggestions=outcome.suggestions,
                    needs_clarification=outcome.needs_clarification,
                )
            message = outcome.processed_input or message
            basic = outcome.basic_processing
            page_limit = outcome.page_limit

        # 2. phrase cache
        intent = self.phrases.lookup(message)
        if intent is not None:
            return await self._dispatch(intent, "phrase_cache", message, manager, started, page_limit=page_limit)

        if basic:
            logger.warning(f"Basic processing for {state.user_id} after repeated errors")
            return await self._dispatch(fallback_intent(message), "basic", message, manager, started, page_limit=page_limit)

        # 3. references
        resolution = await self.resolver.process(message, state.user_id, state)
        if resolution.needs_clarification:
            self._count("resolver")
            manager.set_pending_clarification(message, resolution.ambiguous)
            manager.add_to_history("user", message)
            manager.add_to_history("assistant", resolution.clarification_message)
            return self._reply(
                manager,
                message=resolution.clarification_message,
                stage="resolver",
                needs_clarification=True,
                response_type="clarification",
            )

        return await self._classify_and_dispatch(message, manager, resolution, started, page_limit)

    # ─────────────────────────────────────────────────────────
    # PENDING FLOWS
    # ─────────────────────────────────────────────────────────

    async def _pending_flows(
        self,
        message: str,
        manager: ConversationStateManager,
        started: float,
    ) -> Optional[AssistantReply]:
        state = manager.state

        if state.pending_action is not None:
            if is_cancellation(message):
                pending = manager.clear_pending_action()
                logger.info(f"Pending {pending.action} cancelled by {state.user_id}")
                return self._cancelled(manager, message, f"Okay, I won't {pending.summary or 'do that'}.")
            if is_confirmation(message):
                intent = confirmation_intent(message, manager)
                manager.clear_pending_action()
                return await self._dispatch(intent, "confirmation", message, manager, started)

        pending_question = state.pending_clarification
        if pending_question is None:
            return None

        if is_cancellation(message):
            manager.clear_pending_clarification()
            return self._cancelled(manager, message, "Okay, never mind. What would you like to do instead?")

        references = self.resolver.apply_answer(pending_question, message)
        manager.clear_pending_clarification()
        if references is None:
            logger.info("Reply did not answer the clarification; treating it as a new request")
            return None

        for reference in references:
            if reference.is_resolved:
                manager.remember_record(reference.resolved_entity)
        manager.add_to_history("user", message)
        resolution = ResolutionResult(references=references)
        return await self._classify_and_dispatch(
            pending_question.original_message, manager, resolution, started
        )

    def _cancelled(self, manager: ConversationStateManager, message: str, reply: str) -> AssistantReply:
        self._count("cancelled")
        manager.add_to_history("user", message)
        manager.add_to_history("assistant", reply)
        return self._reply(manager, message=reply, stage="cancelled", response_type="cancelled")

    # ─────────────────────────────────────────────────────────
    # CLASSIFICATION
    # ─────────────────────────────────────────────────────────

    async def _classify_and_dispatch(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult],
        started: float,
        page_limit: Optional[int] = None,
    ) -> AssistantReply:
        if resolution is not None:
            for match in resolution.resolved[:1]:
                manager.remember_record(match)

        result = await self.classify(message, manager, resolution)
        if not result.ok:
            logger.error(f"All classification stages failed: {result.error}")
            self._count("failed")
            self.learner.log_interaction(
                InteractionRecord(
                    user_id=manager.state.user_id,
                    message=message,
                    action="unknown",
                    response=APOLOGY,
                    success=False,
                    response_time=time.monotonic() - started,
                )
            )
            return self._reply(
                manager,
                message=APOLOGY,
                stage=result.stage,
                suggestions=list(GENERIC_SUGGESTIONS),
                error_code="CLASSIFICATION_FAILED",
            )
        return await self._dispatch(result.intent, result.stage, message, manager, started, page_limit=page_limit)

    async def classify(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult] = None,
    ) -> StageResult:
        """
        Fold over the model-backed stages.

        Returns:
            The first successful StageResult, or the last failure
        """
        stages: list[Stage] = [self._structured_stage, self._cached_stage, self._general_stage]
        result = StageResult.failure("none", "no stages ran")
        for stage in stages:
            result = await stage(message, manager, resolution)
            if result.ok:
                return result
            logger.info(f"Stage {result.stage} passed: {result.error}")
        return result

    async def _structured_stage(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult],
    ) -> StageResult:
        result = await self.structured.attempt(message, manager, resolution)
        if not result.ok:
            return result
        intent = result.intent
        if intent.confidence <= self.settings.accept_confidence or intent.needs_clarification:
            return StageResult.failure(
                result.stage, f"confidence {intent.confidence:.2f} not accepted"
            )
        return result

    async def _cached_stage(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult],
    ) -> StageResult:
        cached = self.understanding.get(message, manager.context_snapshot())
        if cached is None:
            return StageResult.failure("understanding_cache", "miss")
        return StageResult.success("understanding_cache", cached.model_copy(update={"original_message": message}))

    async def _general_stage(
        self,
        message: str,
        manager: ConversationStateManager,
        resolution: Optional[ResolutionResult],
    ) -> StageResult:
        result = await self.general.attempt(message, manager, resolution)
        if result.ok:
            self.understanding.set(message, manager.context_snapshot(), result.intent)
        return result

    # ─────────────────────────────────────────────────────────
    # DISPATCH
    # ─────────────────────────────────────────────────────────

    async def _dispatch(
        self,
        intent: Intent,
        stage: str,
        message: str,
        manager: ConversationStateManager,
        started: float,
        page_limit: Optional[int] = None,
    ) -> AssistantReply:
        state = manager.state
        self._count(stage)
        intent = self.router.follow_up(intent, message, manager)
        logger.info(
            f"Resolved {intent.action.value} ({intent.confidence:.2f}) via {stage} for {state.user_id}"
        )

        if intent.needs_clarification:
            question = intent.clarification_question or DEFAULT_CLARIFICATION
            if (
                intent.confidence < self.settings.low_confidence_prefix_below
                and intent.action != IntentAction.GENERAL_CONVERSATION
            ):
                question = ResponseFormatter.low_confidence_prefix(intent) + question
            manager.add_to_history("user", message)
            manager.add_to_history("assistant", question)
            manager.update(message)
            return self._reply(
                manager,
                message=question,
                stage=stage,
                intent=intent,
                needs_clarification=True,
                response_type="clarification",
            )

        handler_context = HandlerContext(
            user_id=state.user_id,
            manager=manager,
            data_cache=self.data_cache,
            team_id=state.team_id,
            page_limit=page_limit,
        )
        result = await self._route_with_recovery(intent, handler_context)
        if isinstance(result, AssistantReply):
            self.learner.log_interaction(
                InteractionRecord(
                    user_id=state.user_id,
                    message=message,
                    action=intent.action.value,
                    response=result.message,
                    success=False,
                    response_time=time.monotonic() - started,
                )
            )
            result.stage = stage
            return result

        text = ResponseFormatter.format_result(result.type, result.content, result.data)
        if not result.needs_confirmation:
            text = self.learner.apply_personalization(text, state.user_id)
        if intent.confidence < self.settings.low_confidence_prefix_below:
            text = ResponseFormatter.low_confidence_prefix(intent) + text

        if result.changed_data:
            self.data_cache.invalidate_user(state.user_id)
            self.understanding.invalidate(f'"userId": "{state.user_id}"')

        self._learn(state.user_id, intent, message, text, stage, started)
        self._record_turn(intent, message, text, result, manager)

        return self._reply(
            manager,
            message=text,
            stage=stage,
            intent=intent,
            response_type=result.type,
            data=result.data,
            suggestions=self._suggestions(state.user_id, manager),
            needs_confirmation=result.needs_confirmation,
        )

    async def _route_with_recovery(self, intent: Intent, context: HandlerContext):
        """Run the handler, retrying while the recovery strategy allows it."""
        retry_count = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.router.route(intent, context), timeout=self.timeouts.handler
                )
            except Exception as e:
                recovery = self.recovery.recover(
                    e,
                    retry_count=retry_count,
                    user_id=context.user_id,
                    operation=intent.action.value,
                )
                if recovery.retryable and recovery.code != RETRY_LIMIT_EXCEEDED:
                    retry_count += 1
                    continue
                return self._reply(
                    context.manager,
                    message=recovery.message,
                    stage="dispatch",
                    intent=intent,
                    suggestions=recovery.suggestions,
                    error_code=recovery.code,
                    response_type="error",
                )

    def _learn(
        self,
        user_id: str,
        intent: Intent,
        message: str,
        reply: str,
        stage: str,
        started: float,
    ) -> None:
        try:
            self.examples.record(
                query=message,
                intent=intent.action.value,
                entities=intent.entities.to_raw(),
                success=True,
                context={"stage": stage},
            )
            self.learner.log_interaction(
                InteractionRecord(
                    user_id=user_id,
                    message=message,
                    action=intent.action.value,
                    response=reply,
                    success=True,
                    response_time=time.monotonic() - started,
                )
            )
        except Exception as e:
            logger.error(f"Failed to record interaction: {e}")

    def _record_turn(
        self,
        intent: Intent,
        message: str,
        reply: str,
        result: HandlerResult,
        manager: ConversationStateManager,
    ) -> None:
        action = intent.action.value
        manager.add_to_history("user", message, action)
        manager.add_to_history("assistant", reply, action)
        manager.update(message, action)

        if result.needs_confirmation:
            manager.set_pending_action(action, intent.entities.to_raw(), result.confirmation_summary)

    # ─────────────────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────────────────

    def _suggestions(self, user_id: str, manager: ConversationStateManager) -> list[str]:
        suggestions = self.learner.contextual_suggestions(user_id)
        for text in manager.state.suggestions:
            if text not in suggestions:
                suggestions.append(text)
        return suggestions[:MAX_SUGGESTIONS]

    def _reply(self, manager: ConversationStateManager, **fields) -> AssistantReply:
        if "intent" in fields and fields["intent"] is not None:
            fields.setdefault("action", fields["intent"].action.value)
        return AssistantReply(
            phase=manager.phase.value,
            context=manager.context_snapshot(),
            **fields,
        )

    def _count(self, stage: str) -> None:
        self.stage_counts[stage] = self.stage_counts.get(stage, 0) + 1

    def cache_bytes(self) -> int:
        return self.data_cache.cache.approximate_bytes() + self.understanding.cache.approximate_bytes()

    def clear_caches(self) -> None:
        self.data_cache.clear()
        self.understanding.clear()

    def reset(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        """Forget conversation state (and learned data when a whole user is reset)."""
        removed = self.states.reset(user_id, session_id)
        if session_id is None:
            self.learner.reset(user_id)
        if user_id is None:
            self.clear_caches()
        else:
            self.data_cache.invalidate_user(user_id)
        return removed

    def stats(self) -> dict:
        stats = {
            "stages": dict(self.stage_counts),
            "sessions": len(self.states),
            "caches": {
                "data": self.data_cache.cache.stats(),
                "understanding": self.understanding.cache.stats(),
                "phrases": {"size": len(self.phrases), "hits": self.phrases.hits},
            },
            "edge_cases": self.edge_cases.stats(),
            "errors": self.recovery.stats(),
            "examples": self.examples.stats(),
            "classifier_calls": {
                self.structured.name: self.structured.calls,
                self.general.name: self.general.calls,
            },
        }
        if self.limiter is not None:
            stats["rate_limits"] = {
                "global": self.limiter.status().get("global", {}),
                "rejections": self.limiter.rejections,
            }
        if self.usage is not None:
            stats["usage"] = self.usage.summary()
        return stats
