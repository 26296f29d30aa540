"""
Conversation context and entity tracking for CRM conversations.

This module provides:
- Entity / PossibleMatch / ContextualReference: what a message talks about
- ConversationStateStore: per (user, session) state, created lazily
- ConversationStateManager: phase transitions, active topic, pending flows

The reference resolver lives in crmpilot.context.resolver.
"""

from crmpilot.context.entities import (
    ContextualReference,
    CrmRecord,
    Entity,
    EntityType,
    PossibleMatch,
    RecordKind,
    ReferenceType,
)
from crmpilot.context.conversation import (
    ActiveTopic,
    ConversationPhase,
    ConversationState,
    ConversationStateManager,
    ConversationStateStore,
)

__all__ = [
    "ContextualReference",
    "CrmRecord",
    "Entity",
    "EntityType",
    "PossibleMatch",
    "RecordKind",
    "ReferenceType",
    "ActiveTopic",
    "ConversationPhase",
    "ConversationState",
    "ConversationStateManager",
    "ConversationStateStore",
]
