#!/usr/bin/env python3
"""
Frontmatter codec for mirrored issue documents.

Document layout:

    ---
    properties:
      key: POP-12
      type: Story
      ...
      sync:
        issue_key: POP-12
        last_sync: '2026-10-18T09:00:00+00:00'
        local_hash: ...
        remote_hash: ...
    mapping:
      key: key
      type: fields.issuetype.name
      ...
    ---

    ## Summary
    ...

Serialization keeps key order as given so unchanged input re-emits byte for byte.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from popsync.errors import MalformedDocument
from popsync.field_mapper import MappingTable


DELIMITER = '---'

SYNC_FIELDS = ('issue_key', 'last_sync', 'local_hash', 'remote_hash')
VOLATILE_SYNC_FIELDS = ('local_hash', 'remote_hash')


@dataclass
class Document:
    """One mirrored issue: metadata (properties + mapping) and markdown body."""

    properties: Dict[str, Any]
    mapping: Dict[str, Any]
    body: str = ''
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def sync(self) -> Dict[str, Any]:
        return self.properties.setdefault('sync', empty_sync())

    @property
    def key(self) -> Optional[str]:
        return self.properties.get('key') or self.sync.get('issue_key')

    @property
    def issue_type(self) -> Optional[str]:
        return self.properties.get('type')

    def mapping_table(self) -> MappingTable:
        """Mapping table of this document; raises MappingError if malformed."""
        return MappingTable(self.mapping)

    def metadata(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'properties': self.properties, 'mapping': self.mapping}
        data.update(self.extra)
        return data


def empty_sync() -> Dict[str, Any]:
    return {name: None for name in SYNC_FIELDS}


def _normalize_sync(properties: Dict[str, Any]) -> None:
    sync = properties.get('sync')
    if sync is None:
        properties['sync'] = empty_sync()
        return
    if not isinstance(sync, dict):
        raise MalformedDocument("'properties.sync' must be a mapping")
    for name in SYNC_FIELDS:
        sync.setdefault(name, None)


def parse(text: str, path: Optional[str] = None) -> Document:
    """
    Parse a document into metadata and body.

    Raises:
        MalformedDocument: Missing opening/closing delimiter or unusable metadata.
            No defaults are guessed for a document without frontmatter.
    """
    lines = text.split('\n')
    if not lines or lines[0].rstrip('\r') != DELIMITER:
        raise MalformedDocument('document does not start with a frontmatter delimiter', path)

    end = None
    for index in range(1, len(lines)):
        if lines[index].rstrip('\r') == DELIMITER:
            end = index
            break
    if end is None:
        raise MalformedDocument('frontmatter is not closed', path)

    try:
        metadata = yaml.safe_load('\n'.join(lines[1:end]))
    except yaml.YAMLError as e:
        raise MalformedDocument(f'invalid YAML in frontmatter: {e}', path)

    if not isinstance(metadata, dict):
        raise MalformedDocument('frontmatter must be a mapping', path)

    properties = metadata.pop('properties', None)
    mapping = metadata.pop('mapping', None)
    if not isinstance(properties, dict):
        raise MalformedDocument("frontmatter is missing the 'properties' mapping", path)
    if not isinstance(mapping, dict):
        raise MalformedDocument("frontmatter is missing the 'mapping' table", path)

    try:
        _normalize_sync(properties)
    except MalformedDocument as e:
        raise MalformedDocument(str(e), path)

    body = '\n'.join(lines[end + 1:])
    # One blank line separates the closing delimiter from the body
    if body.startswith('\r\n'):
        body = body[2:]
    elif body.startswith('\n'):
        body = body[1:]

    return Document(properties=properties, mapping=mapping, body=body, extra=metadata)


def dump_metadata(metadata: Dict[str, Any]) -> str:
    return yaml.safe_dump(
        metadata,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=float('inf'),
    )


def serialize(document: Document) -> str:
    """Emit the document: delimiter, YAML metadata, delimiter, blank line, body."""
    return f"{DELIMITER}\n{dump_metadata(document.metadata())}{DELIMITER}\n\n{document.body}"


def content_hash(document: Document) -> str:
    """
    Hash metadata and body, excluding the volatile hash fields of the sync group.

    Recording a hash in the document therefore does not change the hash.
    """
    metadata = copy.deepcopy(document.metadata())
    sync = metadata['properties'].get('sync')
    if isinstance(sync, dict):
        for name in VOLATILE_SYNC_FIELDS:
            sync[name] = None

    payload = json.dumps(metadata, ensure_ascii=False, default=str) + document.body
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def update_sync(document: Document, **updates: Any) -> Document:
    """Return a copy of the document with its sync group updated."""
    unknown = set(updates) - set(SYNC_FIELDS)
    if unknown:
        raise ValueError(f"unknown sync fields: {', '.join(sorted(unknown))}")

    properties = copy.deepcopy(document.properties)
    _normalize_sync(properties)
    properties['sync'].update(updates)
    return Document(
        properties=properties,
        mapping=copy.deepcopy(document.mapping),
        body=document.body,
        extra=copy.deepcopy(document.extra),
    )


def read_document(path: Path) -> Document:
    p = Path(path)
    return parse(p.read_text(encoding='utf-8'), str(p))


def write_document(path: Path, document: Document) -> None:
    """Atomically write a document (temp file + rename)."""
    p = Path(path)
    temp_file = p.with_suffix(p.suffix + '.tmp')
    try:
        temp_file.write_text(serialize(document), encoding='utf-8')
        temp_file.replace(p)
    except OSError:
        temp_file.unlink(missing_ok=True)
        raise
