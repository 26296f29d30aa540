"""Chat API routes."""

import uuid

from fastapi import APIRouter, HTTPException

from crmpilot.api import orchestrator_store
from crmpilot.api.orchestrator_store import get_orchestrator
from crmpilot.api.schemas import (
    ChatRequest,
    ChatResponse,
    ResetRequest,
    ResetResponse,
    StateResponse,
)
from crmpilot.utils.logging import logger

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("", response_model=ChatResponse)
async def send_message(request: ChatRequest):
    """
    Send a message to the assistant.
    The message is resolved into an intent and carried out.
    """
    logger.info(f"Received message from {request.user_id}: {request.message[:50]}...")

    try:
        orch = await get_orchestrator()
        context = {"teamId": request.team_id, "payload": request.payload}
        reply = await orch.resolve(
            request.message,
            request.user_id,
            session_id=request.session_id,
            context=context,
        )
    except Exception as e:
        error_detail = f"{type(e).__name__}: {str(e)}"
        logger.error(f"Chat error: {error_detail}")
        raise HTTPException(status_code=500, detail=error_detail)

    return ChatResponse(
        id=str(uuid.uuid4()),
        content=reply.message,
        action=reply.action,
        stage=reply.stage,
        response_type=reply.response_type,
        data=reply.data,
        suggestions=reply.suggestions,
        needs_clarification=reply.needs_clarification,
        needs_confirmation=reply.needs_confirmation,
        phase=reply.phase,
        error_code=reply.error_code,
    )


@router.post("/reset", response_model=ResetResponse)
async def reset_chat(request: ResetRequest):
    """Forget conversation state for a session, a user, or everyone."""
    orch = await get_orchestrator()
    removed = orch.reset(request.user_id, request.session_id)
    return ResetResponse(success=True, removed=removed)


@router.get("/state", response_model=StateResponse)
async def get_state(user_id: str, session_id: str = "default"):
    """Get the conversation state of one session without creating it."""
    orch = orchestrator_store.orchestrator
    if orch is None or (user_id, session_id) not in orch.states:
        return StateResponse(user_id=user_id, session_id=session_id, exists=False)

    manager = orch.states.get(user_id, session_id)
    state = manager.state
    return StateResponse(
        user_id=user_id,
        session_id=session_id,
        exists=True,
        phase=manager.phase.value,
        active_topic=state.active_topic.descriptor if state.active_topic else None,
        pending_action=state.pending_action.action if state.pending_action else None,
        awaiting_clarification=state.pending_clarification is not None,
        suggestions=list(state.suggestions),
        context=manager.context_snapshot(),
    )
