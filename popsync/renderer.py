#!/usr/bin/env python3
"""
Rendering of fetched Jira records into mirror documents.

Handles:
- Reading identity fields (key, type, summary, components, parent link) from raw records
- Building frontmatter properties from a template mapping
- The two-section markdown body (## Summary / ## Description)
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from popsync.config_loader import DEFAULT_PARENT_LINK_FIELDS
from popsync.errors import StructuralMismatch
from popsync.field_mapper import MappingTable, extract, lookup
from popsync.frontmatter import Document, content_hash, update_sync
from popsync.issue_types import IssueType
from popsync.logger import get_logger
from popsync.slug import slugify


IDENTITY_TABLE = MappingTable({
    'key': 'key',
    'type': 'fields.issuetype.name',
    'summary': 'fields.summary',
    'components': 'fields.components[].name',
    'labels': 'fields.labels[]',
})

NO_DESCRIPTION = 'No description available.'


@dataclass
class Entity:
    """Identity view of one fetched Jira record."""

    key: str
    type_name: str
    summary: str
    description: str
    components: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    parent_key: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def issue_type(self) -> Optional[IssueType]:
        return IssueType.from_name(self.type_name)

    @property
    def component(self) -> Optional[str]:
        return self.components[0] if self.components else None

    @property
    def file_name(self) -> Optional[str]:
        issue_type = self.issue_type
        return issue_type.file_name(self.key) if issue_type else None

    @classmethod
    def from_snapshot(
        cls,
        record: Mapping[str, Any],
        parent_link_fields: Sequence[str] = DEFAULT_PARENT_LINK_FIELDS,
    ) -> Entity:
        """
        Build an Entity from a raw record.

        Raises:
            StructuralMismatch: The record carries no issue key
        """
        ident = extract(record, IDENTITY_TABLE)
        key = ident.get('key')
        if not key:
            raise StructuralMismatch('snapshot record has no issue key')

        return cls(
            key=str(key),
            type_name=str(ident.get('type') or ''),
            summary=str(ident.get('summary') or ''),
            description=description_text(lookup(record, 'fields.description')),
            components=[str(c) for c in ident.get('components') or [] if c],
            labels=[str(label) for label in ident.get('labels') or [] if label],
            parent_key=parent_link(record, parent_link_fields),
            raw=dict(record),
        )


def epic_directory_name(entity: Entity) -> str:
    """
    Directory name shared by an epic and its children: epic-{slug of summary}.

    Raises:
        StructuralMismatch: Neither the summary nor the key yields a usable slug
    """
    slug = slugify(entity.summary)
    if not slug:
        get_logger().warning(
            f"Epic {entity.key} summary yields an empty slug, falling back to its key",
            context={'summary': entity.summary}
        )
        slug = slugify(entity.key)
    if not slug:
        raise StructuralMismatch(f"cannot derive a directory name for epic {entity.key!r}")
    return f"epic-{slug}"


def parent_link(record: Mapping[str, Any], paths: Sequence[str]) -> Optional[str]:
    """First non-empty epic link among the configured paths (string or {key})."""
    for path in paths:
        value = lookup(record, path)
        if isinstance(value, Mapping):
            value = value.get('key')
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def description_text(description: Any) -> str:
    """Plain text of a description: either a string or an Atlassian document."""
    if description is None:
        return ''
    if isinstance(description, str):
        return description
    if not isinstance(description, Mapping):
        return str(description)

    blocks = description.get('content') or []
    return '\n'.join(_node_text(block) for block in blocks if isinstance(block, Mapping))


def _node_text(node: Mapping[str, Any]) -> str:
    if node.get('type') == 'text':
        return str(node.get('text') or '')
    if node.get('type') == 'hardBreak':
        return '\n'
    children = [child for child in node.get('content') or [] if isinstance(child, Mapping)]
    if node.get('type') in ('bulletList', 'orderedList'):
        return '\n'.join(f"- {_node_text(child)}" for child in children)
    if node.get('type') == 'heading':
        level = int((node.get('attrs') or {}).get('level', 3))
        return '#' * level + ' ' + ''.join(_node_text(child) for child in children)
    return ''.join(_node_text(child) for child in children)


def snapshot_hash(record: Mapping[str, Any]) -> str:
    payload = json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def render_body(entity: Entity) -> str:
    description = entity.description.strip() or NO_DESCRIPTION
    return f"## Summary\n\n{entity.summary}\n\n## Description\n\n{description}\n"


def split_body(body: str) -> Tuple[str, str]:
    """Return (summary, description) text of a document body."""
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in body.splitlines():
        stripped = line.strip()
        if stripped in ('## Summary', '## Description'):
            current = stripped[3:].lower()
            sections[current] = []
            continue
        if current == 'summary' and stripped.startswith('## '):
            current = None
            continue
        if current is not None:
            sections[current].append(line)

    summary = '\n'.join(sections.get('summary', [])).strip()
    description = '\n'.join(sections.get('description', [])).strip()
    return summary, description


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def render_document(
    entity: Entity,
    mapping: Mapping[str, Any],
    synced_at: Optional[str] = None,
) -> Document:
    """
    Render an entity with the given template mapping.

    The sync group records the issue key, sync time, the document's own
    content hash and a hash of the raw remote record.
    """
    table = MappingTable(mapping)
    properties = extract(entity.raw, table)
    properties['sync'] = {
        'issue_key': entity.key,
        'last_sync': synced_at or utc_now(),
        'local_hash': None,
        'remote_hash': snapshot_hash(entity.raw),
    }
    document = Document(properties=properties, mapping=dict(mapping), body=render_body(entity))
    return update_sync(document, local_hash=content_hash(document))
