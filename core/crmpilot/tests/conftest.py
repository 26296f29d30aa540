"""Shared fixtures: a scripted completion service and a small CRM."""

import asyncio
import json
from typing import Any, Optional

import pytest

from crmpilot.cache.data import DataCache
from crmpilot.context.conversation import ConversationStateStore
from crmpilot.context.entities import RecordKind
from crmpilot.engine.orchestrator import ConversationalOrchestrator
from crmpilot.memory.examples import ExampleStore
from crmpilot.runtime.completion import Completion, CompletionOptions, CompletionService, TokenUsage
from crmpilot.runtime.records import InMemoryRecordStore

USER = "u1"
TEAM = "team-1"


class Sequence(list):
    """Responses consumed one per call; the last one repeats."""


class ScriptedCompletion(CompletionService):
    """
    Completion fake keyed by operation name.

    A script entry may be a string, a dict/list (sent as JSON), an
    exception instance (raised), or a callable taking the user message.
    Several entries given to on() are consumed one per call; the last
    one repeats.
    """

    def __init__(self, script: Optional[dict[str, Any]] = None, delay: float = 0.0):
        self.script = dict(script or {})
        self.delay = delay
        self.calls: list[tuple[str, str, str]] = []

    def on(self, operation: str, *responses: Any) -> "ScriptedCompletion":
        self.script[operation] = Sequence(responses) if len(responses) > 1 else responses[0]
        return self

    def operations(self) -> list[str]:
        return [op for op, _, _ in self.calls]

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        temperature: float = 0.1,
        max_tokens: int = 500,
        options: Optional[CompletionOptions] = None,
    ) -> Completion:
        options = options or CompletionOptions()
        message = messages[-1]["content"] if messages else ""
        self.calls.append((options.operation, system_prompt, message))
        if self.delay:
            await asyncio.sleep(self.delay)

        entry = self.script.get(options.operation, "[]" if options.operation == "entity_extraction" else "")
        if isinstance(entry, Sequence):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            entry = entry(message)
        if isinstance(entry, (dict, list)):
            entry = json.dumps(entry)
        return Completion(text=entry, usage=TokenUsage(input_tokens=20, output_tokens=10), model="fake")


def make_records() -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    store.add_member(USER, TEAM)
    store.add(TEAM, RecordKind.CONTACT, {"id": "c1", "firstName": "John", "lastName": "Smith", "email": "john.smith@acme.com", "status": "active"})
    store.add(TEAM, RecordKind.CONTACT, {"id": "c2", "firstName": "John", "lastName": "Doe", "email": "jdoe@globex.com", "status": "lead"})
    store.add(TEAM, RecordKind.CONTACT, {"id": "c3", "firstName": "Maria", "lastName": "Lopez", "email": "maria@initech.com", "status": "active"})
    store.add(TEAM, RecordKind.ACCOUNT, {"id": "a1", "name": "Acme Corp", "industry": "manufacturing"})
    store.add(TEAM, RecordKind.ACCOUNT, {"id": "a2", "name": "Globex", "industry": "energy"})
    store.add(TEAM, RecordKind.DEAL, {"id": "d1", "name": "Acme Renewal", "stage": "proposal", "amount": 5000})
    store.add(TEAM, RecordKind.DEAL, {"id": "d2", "name": "Globex Expansion", "stage": "negotiation", "amount": 12000})
    store.add(TEAM, RecordKind.DEAL, {"id": "d3", "name": "Initech Upgrade", "stage": "proposal", "amount": 3000})
    store.add(TEAM, RecordKind.ACTIVITY, {"id": "t1", "subject": "Kickoff call", "status": "open"})
    return store


def intent_json(action: str, confidence: float = 0.9, /, **entities) -> dict:
    return {
        "action": action,
        "confidence": confidence,
        "entities": entities,
        "context": {"referringTo": "new_request"},
        "metadata": {"needsClarification": False, "clarificationQuestion": None},
    }


@pytest.fixture
def records():
    return make_records()


@pytest.fixture
def completion():
    return ScriptedCompletion()


@pytest.fixture
def data_cache(records):
    return DataCache(records)


@pytest.fixture
def states():
    return ConversationStateStore()


@pytest.fixture
def manager(states):
    return states.get(USER)


@pytest.fixture
def orchestrator(completion, records):
    return ConversationalOrchestrator(
        completion,
        records=records,
        examples=ExampleStore(seed=False),
    )
