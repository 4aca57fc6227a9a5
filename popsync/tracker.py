"""
Remote tracker capability consumed by the mirror engine.

All methods return raw nested wire records; only field_mapper.extract
interprets their shape.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from popsync.errors import TrackerError


class TrackerClient(Protocol):
    """Async tracker operations. Failures raise TrackerError / RemoteWriteFailure."""

    async def fetch_entity(self, key: str) -> Optional[Dict[str, Any]]:
        """Fetch one issue; None when it does not exist."""
        ...

    async def fetch_children(self, parent_key: str) -> List[Dict[str, Any]]:
        ...

    async def fetch_entities_by_component_and_type(self, component: str, issue_type: str) -> List[Dict[str, Any]]:
        ...

    async def update_entity(self, key: str, wire_fields: Dict[str, Any]) -> None:
        ...

    async def create_entity(self, wire_fields: Dict[str, Any]) -> str:
        """Create an issue and return its key."""
        ...


class OfflineTracker:
    """Stand-in used when no Jira credentials are configured; every call fails."""

    def __init__(self, reason: str):
        self.reason = reason

    def _fail(self) -> TrackerError:
        return TrackerError(f"Jira is not available: {self.reason}")

    async def fetch_entity(self, key: str) -> Optional[Dict[str, Any]]:
        raise self._fail()

    async def fetch_children(self, parent_key: str) -> List[Dict[str, Any]]:
        raise self._fail()

    async def fetch_entities_by_component_and_type(self, component: str, issue_type: str) -> List[Dict[str, Any]]:
        raise self._fail()

    async def update_entity(self, key: str, wire_fields: Dict[str, Any]) -> None:
        raise self._fail()

    async def create_entity(self, wire_fields: Dict[str, Any]) -> str:
        raise self._fail()
