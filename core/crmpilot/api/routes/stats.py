"""Pipeline statistics routes."""

from fastapi import APIRouter

from crmpilot.api.orchestrator_store import get_orchestrator
from crmpilot.api.schemas import StatsResponse

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("", response_model=StatsResponse)
async def get_stats():
    """Cache, rate limit, edge-case, error and example statistics."""
    orch = await get_orchestrator()
    return StatsResponse(stats=orch.stats())


@router.get("/users/{user_id}")
async def get_user_insights(user_id: str):
    """What the assistant has learned about one user."""
    orch = await get_orchestrator()
    return orch.learner.insights(user_id)
