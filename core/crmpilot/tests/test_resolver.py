"""
Tests for entity extraction and reference resolution.
"""

import pytest

from conftest import USER, ScriptedCompletion

from crmpilot.context.entities import (
    ContextualReference,
    PossibleMatch,
    RecordKind,
    ReferenceType,
)
from crmpilot.context.conversation import PendingClarification
from crmpilot.context.resolver import ReferenceResolver
from crmpilot.utils.errors import RateLimitExceeded


@pytest.fixture
def resolver(completion, data_cache):
    return ReferenceResolver(completion, data_cache)


def _ambiguous_johns() -> PendingClarification:
    options = [
        PossibleMatch(id="c1", name="John Smith", type=RecordKind.CONTACT, confidence=0.9),
        PossibleMatch(id="c2", name="John Doe", type=RecordKind.CONTACT, confidence=0.9),
    ]
    return PendingClarification(
        original_message="update John's email to john@new.com",
        references=[ContextualReference(type=ReferenceType.AMBIGUOUS, value="John", possible_matches=options)],
    )


class TestScoring:

    @pytest.mark.asyncio
    async def test_scores_follow_match_quality(self, resolver):
        snapshot = await resolver.load_snapshot(USER)

        exact = resolver.score_candidates("John Smith", snapshot)
        assert exact[0].name == "John Smith"
        assert exact[0].confidence == pytest.approx(1.0)

        first = resolver.score_candidates("john", snapshot)
        assert {m.name for m in first} == {"John Smith", "John Doe"}
        assert all(m.confidence == pytest.approx(0.9) for m in first)

        last = resolver.score_candidates("lopez", snapshot)
        assert last[0].confidence == pytest.approx(0.8)

        substring = resolver.score_candidates("acme", snapshot)
        assert {m.name for m in substring} == {"Acme Corp", "Acme Renewal"}
        assert all(m.confidence == pytest.approx(0.7) for m in substring)

    @pytest.mark.asyncio
    async def test_matches_are_capped_and_sorted(self, resolver, records):
        for i in range(8):
            records.add("team-1", RecordKind.CONTACT, {"id": f"x{i}", "firstName": "John", "lastName": f"Extra{i}"})
        snapshot = await resolver.load_snapshot(USER)
        matches = resolver.score_candidates("john", snapshot)
        assert len(matches) == 5
        assert [m.confidence for m in matches] == sorted((m.confidence for m in matches), reverse=True)

    @pytest.mark.asyncio
    async def test_unrelated_names_are_dropped(self, resolver):
        snapshot = await resolver.load_snapshot(USER)
        assert resolver.score_candidates("Zebulon", snapshot) == []


class TestProcess:

    @pytest.mark.asyncio
    async def test_two_johns_need_clarification(self, completion, resolver):
        completion.on("entity_extraction", [{"type": "contact", "value": "John", "confidence": 0.6}])
        result = await resolver.process("update John's email to john@new.com", USER)

        assert result.needs_clarification
        assert "I found some ambiguous references" in result.clarification_message
        assert "John Smith (contact)" in result.clarification_message
        assert "John Doe (contact)" in result.clarification_message
        assert result.clarification_message.endswith("Please specify which one you mean, or provide more details.")

    @pytest.mark.asyncio
    async def test_exact_name_resolves(self, completion, resolver):
        completion.on("entity_extraction", [{"type": "contact", "value": "Maria Lopez", "confidence": 0.95}])
        result = await resolver.process("email Maria Lopez", USER)

        assert not result.needs_clarification
        assert [m.name for m in result.resolved] == ["Maria Lopez"]

    @pytest.mark.asyncio
    async def test_confident_exact_match_beats_partial_ones(self, completion, resolver):
        completion.on("entity_extraction", [{"type": "contact", "value": "John Smith", "confidence": 0.9}])
        result = await resolver.process("call John Smith", USER)
        assert not result.needs_clarification
        assert result.resolved[0].id == "c1"

    @pytest.mark.parametrize("failure", [
        "not a json array",
        RuntimeError("model down"),
        RateLimitExceeded("user:u1", "minute", 30.0),
    ])
    @pytest.mark.asyncio
    async def test_extraction_failures_give_no_entities(self, completion, resolver, failure):
        completion.on("entity_extraction", failure)
        result = await resolver.process("update John's email", USER)
        assert result.entities == []
        assert not result.needs_clarification

    @pytest.mark.asyncio
    async def test_unknown_user_still_resolves_pronouns(self, completion, resolver):
        result = await resolver.process("email them", "stranger")
        assert [r.type for r in result.references] == [ReferenceType.PRONOUN]
        assert not result.needs_clarification

    @pytest.mark.asyncio
    async def test_pronoun_uses_last_mentioned_record(self, resolver, manager):
        maria = PossibleMatch(id="c3", name="Maria Lopez", type=RecordKind.CONTACT, confidence=1.0)
        manager.remember_record(maria)
        result = await resolver.process("send her the proposal", USER, manager.state)
        assert result.resolved == [maria]

    @pytest.mark.asyncio
    async def test_snapshot_is_cached(self, resolver, records):
        await resolver.load_snapshot(USER)
        calls = records.calls
        await resolver.load_snapshot(USER)
        assert records.calls == calls


class TestClarificationAnswers:

    @pytest.mark.parametrize("answer,expected", [
        ("John Smith", "John Smith"),
        ("the Doe one", "John Doe"),
        ("smith", "John Smith"),
        ("the first one", "John Smith"),
        ("the second one", "John Doe"),
        ("2", "John Doe"),
        ("the last", "John Doe"),
    ])
    def test_answer_picks_one_option(self, resolver, answer, expected):
        references = resolver.apply_answer(_ambiguous_johns(), answer)
        assert references is not None
        assert references[0].resolved_entity.name == expected

    @pytest.mark.parametrize("answer", ["john", "the fifth", "what?", ""])
    def test_unsettled_answers(self, resolver, answer):
        assert resolver.apply_answer(_ambiguous_johns(), answer) is None


@pytest.mark.asyncio
async def test_extraction_prompt_lists_records(data_cache):
    completion = ScriptedCompletion()
    resolver = ReferenceResolver(completion, data_cache)
    await resolver.process("update Maria", USER)

    operation, prompt, message = completion.calls[0]
    assert operation == "entity_extraction"
    assert message == "update Maria"
    assert "Maria Lopez" in prompt
    assert "Acme Renewal" in prompt
