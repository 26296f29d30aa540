"""
Record store boundary.

The pipeline only reads records: it lists them per kind for a team and
looks up which team a user belongs to. Writes belong to the handlers and
are never assumed to be atomic across records.
"""

from abc import ABC, abstractmethod
from typing import Optional

from crmpilot.context.entities import RecordKind
from crmpilot.utils.errors import NotFoundError


class RecordStore(ABC):
    """Read-only view of the CRM consumed by the pipeline."""

    @abstractmethod
    async def list_by_kind(self, team_id: str, kind: RecordKind) -> list[dict]:
        """Return raw records of one kind for a team."""

    @abstractmethod
    async def resolve_team_id(self, user_id: str) -> str:
        """Return the team a user belongs to."""


class InMemoryRecordStore(RecordStore):
    """
    Record store backed by plain dicts.

    Used for local development and tests. Records are grouped per team,
    then per kind. With a default_team_id, users without a membership
    read that team instead of failing the lookup.
    """

    def __init__(
        self,
        records: Optional[dict[str, dict[RecordKind, list[dict]]]] = None,
        memberships: Optional[dict[str, str]] = None,
        default_team_id: Optional[str] = None,
    ):
        self._records = records or {}
        self._memberships = memberships or {}
        self.default_team_id = default_team_id
        self.calls = 0

    def add(self, team_id: str, kind: RecordKind, record: dict) -> None:
        self._records.setdefault(team_id, {}).setdefault(kind, []).append(record)

    def add_member(self, user_id: str, team_id: str) -> None:
        self._memberships[user_id] = team_id

    async def list_by_kind(self, team_id: str, kind: RecordKind) -> list[dict]:
        self.calls += 1
        return list(self._records.get(team_id, {}).get(kind, []))

    async def resolve_team_id(self, user_id: str) -> str:
        team_id = self._memberships.get(user_id, self.default_team_id)
        if team_id is None:
            raise NotFoundError(f"Team for user {user_id}")
        return team_id
