"""Pydantic models for API request/response schemas."""

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    model_loaded: bool = False


class ChatRequest(BaseModel):
    """Chat message request."""

    message: str
    user_id: str
    session_id: str = "default"
    team_id: str | None = None
    payload: Any = None


class ChatResponse(BaseModel):
    """Chat message response."""

    id: str
    content: str
    role: str = "assistant"
    action: str | None = None
    stage: str
    response_type: str = "message"
    data: Any = None
    suggestions: list[str] = Field(default_factory=list)
    needs_clarification: bool = False
    needs_confirmation: bool = False
    phase: str | None = None
    error_code: str | None = None


class ResetRequest(BaseModel):
    """Conversation reset request."""

    user_id: str | None = None
    session_id: str | None = None


class ResetResponse(BaseModel):
    """Conversation reset response."""

    success: bool
    removed: int


class StateResponse(BaseModel):
    """Conversation state for one session."""

    user_id: str
    session_id: str
    exists: bool
    phase: str | None = None
    active_topic: str | None = None
    pending_action: str | None = None
    awaiting_clarification: bool = False
    suggestions: list[str] = Field(default_factory=list)
    context: dict = Field(default_factory=dict)


class StatsResponse(BaseModel):
    """Pipeline statistics."""

    stats: dict
