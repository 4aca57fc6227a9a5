"""Closed set of issue types handled by the mirror."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class IssueType(Enum):
    """Issue types, split into the grouping type (Epic) and child types."""

    EPIC = 'Epic'
    STORY = 'Story'
    TASK = 'Task'
    BUG = 'Bug'
    SPIKE = 'Spike'

    @property
    def is_grouping(self) -> bool:
        return self is IssueType.EPIC

    @property
    def prefix(self) -> str:
        """Lower-case file name prefix, e.g. 'story' in story-POP-12.md."""
        return self.value.lower()

    def file_name(self, key: str) -> str:
        return f"{self.prefix}-{key}.md"

    @classmethod
    def from_name(cls, name: Optional[str]) -> Optional[IssueType]:
        """Resolve a remote or local type name case-insensitively; None if unknown."""
        if not name:
            return None
        wanted = str(name).strip().lower()
        for member in cls:
            if member.prefix == wanted:
                return member
        return None

    @classmethod
    def child_types(cls) -> tuple:
        return tuple(member for member in cls if not member.is_grouping)
