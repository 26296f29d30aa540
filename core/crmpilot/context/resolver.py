"""
Reference resolver for mapping messages to the user's CRM records.

Handles:
- Entity extraction: one model call, grounded with the user's record names
- Pronouns: he, she, they, him, her, them, his, their
- Partial or uncertain names: "john", "acme"
- Clarification answers: "the second one", "John Smith"
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Optional

from crmpilot.cache.data import DataCache, DataQuery
from crmpilot.config import ResolverSettings, TimeoutSettings
from crmpilot.context.conversation import ConversationState, PendingClarification
from crmpilot.context.entities import (
    ContextualReference,
    CrmRecord,
    Entity,
    PossibleMatch,
    RecordKind,
    RecordSnapshot,
    ReferenceType,
)
from crmpilot.runtime.completion import CompletionOptions, CompletionService
from crmpilot.utils.json_parsing import extract_json_array
from crmpilot.utils.logging import logger


@dataclass
class ResolutionResult:
    """Entities and references found in one message."""
    entities: list[Entity] = field(default_factory=list)
    references: list[ContextualReference] = field(default_factory=list)
    needs_clarification: bool = False
    clarification_message: Optional[str] = None

    @property
    def resolved(self) -> list[PossibleMatch]:
        return [r.resolved_entity for r in self.references if r.resolved_entity]

    @property
    def ambiguous(self) -> list[ContextualReference]:
        return [r for r in self.references if r.is_ambiguous]

    def average_confidence(self) -> float:
        if not self.entities:
            return 0.0
        return sum(e.confidence for e in self.entities) / len(self.entities)


def format_clarification(references: list[ContextualReference]) -> str:
    """List the named options of every ambiguous reference."""
    parts = ["I found some ambiguous references. Could you please clarify:"]
    for ref in references:
        if not ref.is_ambiguous:
            continue
        options = "\n".join(f"- {m.name} ({m.type.value})" for m in ref.possible_matches)
        parts.append(f"**{ref.value}** could refer to:\n{options}")
    parts.append("Please specify which one you mean, or provide more details.")
    return "\n\n".join(parts)


class ReferenceResolver:
    """
    Extracts entities from a message and resolves them against the user's
    records.
    """

    PRONOUNS = ["he", "she", "they", "him", "her", "them", "his", "their"]

    ORDINALS = {
        r"\b(the )?(first|1st|1)\b": 0,
        r"\b(the )?(second|2nd|two|2)\b": 1,
        r"\b(the )?(third|3rd|three|3)\b": 2,
        r"\b(the )?(fourth|4th|four|4)\b": 3,
        r"\b(the )?(fifth|5th|five|5)\b": 4,
        r"\b(the )?(last)\b": -1,
    }

    EXTRACTION_PROMPT = """You extract CRM entities from a user's message.

Entity types: contact, account, deal, activity, date, amount, email, phone, company.

The user's records:
{records}

Respond ONLY with a JSON array. Each item:
{{"type": "<entity type>", "value": "<text as written>", "confidence": 0.0-1.0, "startIndex": <int>, "endIndex": <int>}}
Use lower confidence when a name could match several records. Return [] when there are none."""

    def __init__(
        self,
        completion: CompletionService,
        data_cache: DataCache,
        settings: Optional[ResolverSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
    ):
        self.completion = completion
        self.data_cache = data_cache
        self.settings = settings or ResolverSettings()
        self.timeouts = timeouts or TimeoutSettings()

    async def process(
        self,
        message: str,
        user_id: str,
        state: Optional[ConversationState] = None,
    ) -> ResolutionResult:
        """
        Extract entities and resolve references for a message.

        Never raises; extraction problems leave the entity list empty.
        """
        snapshot = await self.load_snapshot(user_id, state.team_id if state else None)
        entities = await self.extract_entities(message, user_id, snapshot)
        references = self.resolve_references(message, entities, snapshot, state)

        ambiguous = [r for r in references if r.is_ambiguous]
        if ambiguous:
            logger.info(f"Ambiguous references in message: {[r.value for r in ambiguous]}")
            return ResolutionResult(
                entities=entities,
                references=references,
                needs_clarification=True,
                clarification_message=format_clarification(ambiguous),
            )
        return ResolutionResult(entities=entities, references=references)

    async def load_snapshot(self, user_id: str, team_id: Optional[str] = None) -> RecordSnapshot:
        queries = [DataQuery(kind=kind) for kind in RecordKind]
        try:
            rows = await self.data_cache.batch(user_id, queries, team_id=team_id)
        except Exception as e:
            logger.warning(f"Could not load records for {user_id}: {e!r}")
            return RecordSnapshot()

        records: list[CrmRecord] = []
        for kind in RecordKind:
            for raw in rows.get(kind.plural, []):
                record = CrmRecord.from_store(kind, raw)
                if record.name:
                    records.append(record)
        return RecordSnapshot(records=records)

    async def extract_entities(
        self, message: str, user_id: str, snapshot: RecordSnapshot
    ) -> list[Entity]:
        """Ask the model for typed entities. Failures return []."""
        if not message.strip():
            return []

        names = snapshot.names_by_kind()
        records_text = "\n".join(
            f"- {kind}: {', '.join(values[:50])}" for kind, values in sorted(names.items())
        ) or "- (no records)"

        try:
            completion = await asyncio.wait_for(
                self.completion.complete(
                    self.EXTRACTION_PROMPT.format(records=records_text),
                    [{"role": "user", "content": message}],
                    temperature=0.1,
                    max_tokens=self.settings.max_tokens,
                    options=CompletionOptions(user_id=user_id, operation="entity_extraction"),
                ),
                timeout=self.timeouts.completion,
            )
        except asyncio.TimeoutError:
            logger.warning("Entity extraction timed out")
            return []
        except Exception as e:
            logger.warning(f"Entity extraction failed: {e}")
            return []

        items = extract_json_array(completion.text) or []
        entities = []
        for item in items:
            entity = Entity.from_dict(item, message)
            if entity is not None:
                entities.append(entity)
        return entities

    # ─────────────────────────────────────────────────────────
    # REFERENCES
    # ─────────────────────────────────────────────────────────

    def resolve_references(
        self,
        message: str,
        entities: list[Entity],
        snapshot: RecordSnapshot,
        state: Optional[ConversationState] = None,
    ) -> list[ContextualReference]:
        references = []
        text = message.lower()

        for pronoun in self.PRONOUNS:
            for match in re.finditer(rf"\b{pronoun}\b", text):
                references.append(self._resolve_pronoun(pronoun, match.span(), state))

        for entity in entities:
            if entity.record_kind is None:
                continue
            matches = self.score_candidates(entity.value, snapshot)
            if not matches:
                continue

            confident = entity.confidence >= self.settings.ambiguous_below
            if len(matches) == 1 or (confident and self._single_exact(matches)):
                references.append(
                    ContextualReference(
                        type=ReferenceType.NAME,
                        value=entity.value,
                        possible_matches=matches,
                        span=entity.span,
                        resolved_entity=matches[0],
                    )
                )
            elif not confident:
                references.append(
                    ContextualReference(
                        type=ReferenceType.AMBIGUOUS,
                        value=entity.value,
                        possible_matches=matches,
                        span=entity.span,
                    )
                )
        return references

    @staticmethod
    def _single_exact(matches: list[PossibleMatch]) -> bool:
        exact = [m for m in matches if m.confidence >= 1.0]
        return len(exact) == 1

    def _resolve_pronoun(
        self,
        pronoun: str,
        span: tuple[int, int],
        state: Optional[ConversationState],
    ) -> ContextualReference:
        last = state.last_mentioned if state else None
        if last is None:
            return ContextualReference(type=ReferenceType.PRONOUN, value=pronoun, span=span)
        return ContextualReference(
            type=ReferenceType.PRONOUN,
            value=pronoun,
            possible_matches=[last],
            span=span,
            resolved_entity=last,
        )

    def score_candidates(self, value: str, snapshot: RecordSnapshot) -> list[PossibleMatch]:
        """
        Score every record against a name.

        Returns:
            Matches scoring at least the minimum, best first, at most five
        """
        needle = value.strip().lower()
        if not needle:
            return []

        matches = []
        for record in snapshot.records:
            score = self._name_match_score(needle, record)
            if score >= self.settings.min_match:
                matches.append(PossibleMatch.from_record(record, score))

        matches.sort(key=lambda m: m.confidence, reverse=True)
        return matches[: self.settings.max_matches]

    @staticmethod
    def _name_match_score(needle: str, record: CrmRecord) -> float:
        full = record.name.lower()
        if not full:
            return 0.0
        if needle == full:
            return 1.0

        if record.kind == RecordKind.CONTACT:
            first = record.first_name.lower()
            last = record.last_name.lower()
            if first and needle == first:
                return 0.9
            if last and needle == last:
                return 0.8

        if needle in full:
            return 0.7

        needle_tokens = set(re.findall(r"\w+", needle))
        record_tokens = set(re.findall(r"\w+", full))
        if needle_tokens & record_tokens:
            return 0.6
        return 0.0

    # ─────────────────────────────────────────────────────────
    # CLARIFICATION ANSWERS
    # ─────────────────────────────────────────────────────────

    def apply_answer(
        self, pending: PendingClarification, answer: str
    ) -> Optional[list[ContextualReference]]:
        """
        Interpret a reply to a clarification question.

        Every ambiguous reference must be settled by the answer, either by
        ordinal ("the second one") or by a name matching exactly one option.

        Returns:
            The references with choices filled in, or None if the answer
            does not settle them
        """
        text = answer.strip().lower()
        if not text:
            return None

        resolved = []
        for ref in pending.references:
            if not ref.is_ambiguous:
                resolved.append(ref)
                continue

            choice = self._choose_by_name(text, ref.possible_matches)
            if choice is None:
                choice = self._choose_by_ordinal(text, ref.possible_matches)
            if choice is None:
                return None

            resolved.append(
                ContextualReference(
                    type=ReferenceType.NAME,
                    value=ref.value,
                    possible_matches=ref.possible_matches,
                    span=ref.span,
                    resolved_entity=choice,
                )
            )
        return resolved

    def _choose_by_ordinal(self, text: str, options: list[PossibleMatch]) -> Optional[PossibleMatch]:
        for pattern, index in self.ORDINALS.items():
            if re.search(pattern, text):
                if -len(options) <= index < len(options):
                    return options[index]
                return None
        return None

    @staticmethod
    def _choose_by_name(text: str, options: list[PossibleMatch]) -> Optional[PossibleMatch]:
        exact = [o for o in options if o.name.lower() == text or o.name.lower() in text]
        if len(exact) == 1:
            return exact[0]

        tokens = set(re.findall(r"\w+", text))
        partial = [
            o for o in options
            if tokens & (set(re.findall(r"\w+", o.name.lower())) - _shared_tokens(options))
        ]
        if len(partial) == 1:
            return partial[0]
        return None


def _shared_tokens(options: list[PossibleMatch]) -> set[str]:
    """Name tokens every option has in common (e.g. the first name "john")."""
    token_sets = [set(re.findall(r"\w+", o.name.lower())) for o in options]
    if not token_sets:
        return set()
    return set.intersection(*token_sets)
