"""
Shared fixtures for the popsync test suite.

- settings: MirrorSettings rooted in tmp_path (built-in templates)
- make_issue: factory for raw Jira records
- FakeTracker: in-memory TrackerClient recording every write
"""

import copy
from typing import Any, Dict, Iterable, List, Optional

import pytest

from popsync import logger as logger_module
from popsync.config_loader import MirrorSettings
from popsync.errors import RemoteWriteFailure
from popsync.logger import SyncLogger
from popsync.snapshot_cache import SnapshotCache
from popsync.templates import TemplateStore


class FakeTracker:
    """In-memory tracker; updates are applied to the stored records."""

    def __init__(self, records: Iterable[Dict[str, Any]] = ()):
        self.records: Dict[str, Dict[str, Any]] = {r['key']: copy.deepcopy(r) for r in records}
        self.updates: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.fail_updates: set = set()

    def add(self, *records: Dict[str, Any]) -> 'FakeTracker':
        for record in records:
            self.records[record['key']] = copy.deepcopy(record)
        return self

    async def fetch_entity(self, key: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.records.get(key))

    async def fetch_children(self, parent_key: str) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(r) for r in self.records.values()
            if r['fields'].get('customfield_10000') == parent_key
        ]

    async def fetch_entities_by_component_and_type(self, component: str, issue_type: str) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(r) for r in self.records.values()
            if r['fields']['issuetype']['name'] == issue_type
            and component in [c['name'] for c in r['fields'].get('components') or []]
        ]

    async def update_entity(self, key: str, wire_fields: Dict[str, Any]) -> None:
        if key in self.fail_updates:
            raise RemoteWriteFailure(f"Failed to update {key}: HTTP 400", key=key, status_code=400)
        self.updates.append((key, copy.deepcopy(wire_fields)))
        if key in self.records:
            self.records[key]['fields'].update(copy.deepcopy(wire_fields))

    async def create_entity(self, wire_fields: Dict[str, Any]) -> str:
        key = f"POP-{900 + len(self.created)}"
        self.created.append(copy.deepcopy(wire_fields))
        self.records[key] = {'key': key, 'fields': copy.deepcopy(wire_fields)}
        return key


@pytest.fixture
def make_issue():
    def factory(
        key: str,
        type_name: str,
        summary: str,
        components: Iterable[str] = (),
        parent: Optional[str] = None,
        description: Optional[str] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        record = {
            'key': key,
            'fields': {
                'issuetype': {'name': type_name},
                'summary': summary,
                'description': description,
                'project': {'key': key.split('-')[0]},
                'status': {'name': 'To Do'},
                'assignee': None,
                'labels': [],
                'components': [{'name': c} for c in components],
            },
        }
        if parent is not None:
            record['fields']['customfield_10000'] = parent
        record['fields'].update(fields)
        return record

    return factory


@pytest.fixture
def settings(tmp_path):
    return MirrorSettings(
        project_key='POP',
        mirror_root=tmp_path / 'planning' / 'increments' / 'FY26Q1',
        templates_dir=tmp_path / 'templates' / 'planning',
    )


@pytest.fixture
def cache(settings):
    return SnapshotCache(settings)


@pytest.fixture
def templates(settings):
    return TemplateStore(settings.templates_dir)


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Fresh logger writing under tmp_path; no Jira or config variables leak in."""
    for name in ('JIRA_BASE_URL', 'JIRA_PROJECT', 'JIRA_PERSONAL_TOKEN', 'JIRA_API_TOKEN',
                 'JIRA_EMAIL', 'POPSYNC_CONFIG', 'DEBUG'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(
        logger_module, '_logger',
        SyncLogger(log_dir=tmp_path / 'logs', console_output=False),
    )
