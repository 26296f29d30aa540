"""Shared orchestrator instance for API routes."""

from typing import Optional

from crmpilot.cache.rate_limiter import RateLimiter
from crmpilot.config import DEFAULT_TEAM_ID
from crmpilot.engine.orchestrator import ConversationalOrchestrator
from crmpilot.runtime.completion import (
    LocalCompletionService,
    RateLimitedCompletionService,
    UsageTracker,
)
from crmpilot.runtime.records import InMemoryRecordStore

orchestrator: Optional[ConversationalOrchestrator] = None
local_model: Optional[LocalCompletionService] = None


def build_orchestrator() -> ConversationalOrchestrator:
    """Wire the default stack: local model behind rate limits, in-memory records."""
    global local_model
    local_model = LocalCompletionService()
    limiter = RateLimiter()
    tracker = UsageTracker()
    completion = RateLimitedCompletionService(local_model, limiter=limiter, tracker=tracker)
    return ConversationalOrchestrator(
        completion,
        records=InMemoryRecordStore(default_team_id=DEFAULT_TEAM_ID),
        limiter=limiter,
        usage=tracker,
    )


async def get_orchestrator() -> ConversationalOrchestrator:
    """Get or create the orchestrator instance."""
    global orchestrator
    if orchestrator is None:
        orchestrator = build_orchestrator()
    return orchestrator


async def shutdown() -> None:
    global orchestrator, local_model
    if local_model is not None:
        await local_model.stop()
    local_model = None
    orchestrator = None
