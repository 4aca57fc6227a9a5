#!/usr/bin/env python3
"""
Push local mirror documents back to Jira.

The write payload is built from the document itself:
- mapped properties, via flatten + lower (read-only fields never written)
- summary and description from the markdown body
- the epic link of a child, derived from the epic document in its directory
After a successful write the document's sync group is refreshed.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from popsync.config_loader import MirrorSettings
from popsync.errors import FilesystemConflict, MalformedDocument, PopsyncError
from popsync.field_mapper import flatten, lower
from popsync.frontmatter import Document, content_hash, read_document, update_sync, write_document
from popsync.issue_types import IssueType
from popsync.logger import get_logger
from popsync.reconciler import ISSUE_FILE_PATTERN, find_issue_file
from popsync.renderer import NO_DESCRIPTION, split_body, utc_now
from popsync.tracker import TrackerClient


# Set at creation time; Jira rejects them on edit
CREATE_ONLY_FIELDS = ('project', 'issuetype')

DEFAULT_EPIC_LINK_FIELD = 'customfield_10000'

_CUSTOM_FIELD_PATH = re.compile(r"^fields\.(customfield_\d+)$")


@dataclass
class UpdateSummary:
    """Outcome of an update, possibly including children."""

    updated: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return bool(self.failures)


class IssueUpdater:
    """Writes mirror documents to the tracker."""

    def __init__(self, settings: MirrorSettings, tracker: TrackerClient, dry_run: bool = False):
        self.settings = settings
        self.tracker = tracker
        self.dry_run = dry_run
        self.logger = get_logger()
        self.epic_link_field = next(
            (m.group(1) for m in map(_CUSTOM_FIELD_PATH.match, settings.parent_link_fields) if m),
            DEFAULT_EPIC_LINK_FIELD,
        )

    def find_document(self, key: str) -> Path:
        """
        Locate the mirror document for a key.

        Raises:
            FilesystemConflict: No document for the key exists in the mirror
        """
        path = find_issue_file(self.settings.mirror_root, key)
        if path is None:
            raise FilesystemConflict(f"Issue {key} not found in {self.settings.mirror_root}")
        return path

    @staticmethod
    def epic_key_for(path: Path) -> Optional[str]:
        """Key of the epic document sharing the directory, if any."""
        for sibling in sorted(path.parent.glob('epic-*.md')):
            match = ISSUE_FILE_PATTERN.match(sibling.name)
            if match and not sibling.is_symlink():
                return match.group(2)
        return None

    def property_fields(self, properties: Dict[str, Any], document: Document) -> Dict[str, Any]:
        """Wire fields for a property bag under the document's mapping table, create-only fields removed."""
        flat = flatten(
            properties,
            document.mapping_table(),
            self.settings.readonly_fields,
            self.settings.grouping_field,
        )
        wire = lower(flat)
        for name in CREATE_ONLY_FIELDS:
            wire.pop(name, None)
        return wire

    def build_wire_fields(self, path: Path, document: Document) -> Dict[str, Any]:
        """
        Jira field object for a document.

        Raises:
            MappingError: The document's mapping table is malformed
        """
        wire = self.property_fields(document.properties, document)

        summary, description = split_body(document.body)
        if summary:
            wire['summary'] = summary
        if description and description != NO_DESCRIPTION:
            wire['description'] = description

        issue_type = IssueType.from_name(document.issue_type)
        if issue_type is not None and not issue_type.is_grouping:
            epic_key = self.epic_key_for(path)
            if epic_key:
                wire[self.epic_link_field] = epic_key
            else:
                self.logger.warning(f"No epic document next to {path}, epic link not updated")

        return wire

    def _load(self, key: str) -> Tuple[Path, Document]:
        path = self.find_document(key)
        document = read_document(path)
        if document.key != key:
            raise MalformedDocument(f"document key {document.key!r} does not match {key}", str(path))
        return path, document

    def _record_sync(self, path: Path, document: Document) -> None:
        synced = update_sync(document, last_sync=utc_now())
        synced = update_sync(synced, local_hash=content_hash(synced))
        write_document(path, synced)

    async def update_issue(self, key: str) -> Dict[str, Any]:
        """
        Push one document to Jira.

        Returns:
            The wire fields sent (or that would be sent in dry-run mode)

        Raises:
            FilesystemConflict: Document not found
            MalformedDocument: Document cannot be parsed
            RemoteWriteFailure: Jira rejected the update
        """
        start = time.time()
        path, document = await asyncio.to_thread(self._load, key)
        wire_fields = self.build_wire_fields(path, document)

        if self.dry_run:
            self.logger.info(f"Would update {key}", context={'fields': sorted(wire_fields)})
            return wire_fields

        await self.tracker.update_entity(key, wire_fields)
        await asyncio.to_thread(self._record_sync, path, document)

        self.logger.log_sync_operation(
            'update_issue', 'success',
            duration=time.time() - start,
            context={'key': key, 'fields': sorted(wire_fields)},
        )
        return wire_fields

    def child_keys(self, epic_key: str) -> List[str]:
        """Keys of child documents sharing the epic's directory."""
        epic_path = self.find_document(epic_key)
        if not epic_path.name.startswith(f"{IssueType.EPIC.prefix}-"):
            self.logger.warning(f"{epic_key} is not an epic, it has no children to update")
            return []

        keys = []
        for path in sorted(epic_path.parent.glob('*.md')):
            match = ISSUE_FILE_PATTERN.match(path.name)
            if not match or path.is_symlink() or match.group(2) == epic_key:
                continue
            issue_type = IssueType.from_name(match.group(1))
            if issue_type is not None and not issue_type.is_grouping:
                keys.append(match.group(2))
        return keys

    async def update_with_children(self, key: str) -> UpdateSummary:
        """
        Update an issue, then every child document in its epic directory.

        A failure on the issue itself propagates. Child failures are collected
        and the remaining children are still updated.
        """
        children = await asyncio.to_thread(self.child_keys, key)
        self.logger.info(f"Found {len(children)} child issues for {key}")

        summary = UpdateSummary()
        await self.update_issue(key)
        summary.updated.append(key)

        for child in children:
            try:
                await self.update_issue(child)
                summary.updated.append(child)
            except PopsyncError as e:
                self.logger.warning(f"Failed to update child issue {child}: {e}")
                summary.failures[child] = str(e)

        return summary
