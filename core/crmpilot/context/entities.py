"""
Entity types for CRM reference resolution.

Entities are typed spans extracted from a single message. Records are
the user's existing CRM objects that references get resolved against.
Neither is persisted by this package.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EntityType(str, Enum):
    """Kind of span extracted from a message."""
    CONTACT = "contact"
    ACCOUNT = "account"
    DEAL = "deal"
    ACTIVITY = "activity"
    DATE = "date"
    AMOUNT = "amount"
    EMAIL = "email"
    PHONE = "phone"
    COMPANY = "company"


class RecordKind(str, Enum):
    """Kind of CRM record held by the record store."""
    CONTACT = "contact"
    ACCOUNT = "account"
    DEAL = "deal"
    ACTIVITY = "activity"

    @property
    def plural(self) -> str:
        if self == RecordKind.ACTIVITY:
            return "activities"
        return f"{self.value}s"

    @classmethod
    def from_data_type(cls, data_type: str) -> Optional["RecordKind"]:
        """Map "contacts"/"deals"/... to a kind."""
        for kind in cls:
            if kind.plural == data_type or kind.value == data_type:
                return kind
        return None


# Entity types that can point at an existing record
RECORD_ENTITY_TYPES = {
    EntityType.CONTACT: RecordKind.CONTACT,
    EntityType.ACCOUNT: RecordKind.ACCOUNT,
    EntityType.COMPANY: RecordKind.ACCOUNT,
    EntityType.DEAL: RecordKind.DEAL,
    EntityType.ACTIVITY: RecordKind.ACTIVITY,
}


class ReferenceType(str, Enum):
    """How a reference was detected."""
    PRONOUN = "pronoun"
    NAME = "name"
    AMBIGUOUS = "ambiguous"


def _clamp(value: Any, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


@dataclass
class Entity:
    """A typed span of text extracted from the current message."""
    type: EntityType
    value: str
    confidence: float
    span: tuple[int, int] = (0, 0)
    metadata: dict = field(default_factory=dict)

    @property
    def record_kind(self) -> Optional[RecordKind]:
        return RECORD_ENTITY_TYPES.get(self.type)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "startIndex": self.span[0],
            "endIndex": self.span[1],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict, message: str = "") -> Optional["Entity"]:
        """
        Build an entity from loosely structured model output.

        Returns None when the type is unknown or the value is empty.
        """
        if not isinstance(data, dict):
            return None
        try:
            entity_type = EntityType(str(data.get("type", "")).lower())
        except ValueError:
            return None

        value = str(data.get("value") or "").strip()
        if not value:
            return None

        start = data.get("startIndex")
        end = data.get("endIndex")
        if not isinstance(start, int) or not isinstance(end, int):
            # Locate the span ourselves when the model omits it
            start = message.lower().find(value.lower()) if message else -1
            end = start + len(value) if start >= 0 else 0
            start = max(start, 0)

        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return cls(
            type=entity_type,
            value=value,
            confidence=_clamp(data.get("confidence")),
            span=(start, end),
            metadata=metadata,
        )


@dataclass
class CrmRecord:
    """Name-level view of a CRM record, enough to match references against."""
    id: str
    kind: RecordKind
    name: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None

    @classmethod
    def from_store(cls, kind: RecordKind, raw: dict) -> "CrmRecord":
        """Map a raw record-store row onto the fields we match on."""
        record_id = str(raw.get("id") or raw.get("_id") or "")
        first = str(raw.get("firstName") or raw.get("first_name") or "").strip()
        last = str(raw.get("lastName") or raw.get("last_name") or "").strip()

        if kind == RecordKind.CONTACT:
            name = f"{first} {last}".strip() or str(raw.get("name") or "")
        elif kind == RecordKind.ACTIVITY:
            name = str(raw.get("subject") or raw.get("name") or "")
        else:
            name = str(raw.get("name") or "")

        return cls(
            id=record_id,
            kind=kind,
            name=name.strip(),
            first_name=first,
            last_name=last,
            email=raw.get("email"),
        )


@dataclass
class PossibleMatch:
    """A candidate record for a reference."""
    id: str
    name: str
    type: RecordKind
    confidence: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_record(cls, record: CrmRecord, confidence: float) -> "PossibleMatch":
        return cls(id=record.id, name=record.name, type=record.kind, confidence=confidence)


@dataclass
class ContextualReference:
    """A pronoun or name that may point at an existing record."""
    type: ReferenceType
    value: str
    possible_matches: list[PossibleMatch] = field(default_factory=list)
    span: tuple[int, int] = (0, 0)
    resolved_entity: Optional[PossibleMatch] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_entity is not None

    @property
    def is_ambiguous(self) -> bool:
        return self.resolved_entity is None and len(self.possible_matches) > 1

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "value": self.value,
            "possibleMatches": [m.to_dict() for m in self.possible_matches],
            "resolvedEntity": self.resolved_entity.to_dict() if self.resolved_entity else None,
        }


@dataclass
class RecordSnapshot:
    """The user's records at the time of a resolution."""
    records: list[CrmRecord] = field(default_factory=list)

    def by_kind(self, kind: RecordKind) -> list[CrmRecord]:
        return [r for r in self.records if r.kind == kind]

    def names_by_kind(self) -> dict[str, list[str]]:
        names: dict[str, list[str]] = {}
        for record in self.records:
            if record.name:
                names.setdefault(record.kind.plural, []).append(record.name)
        return names

    def __len__(self) -> int:
        return len(self.records)
