#!/usr/bin/env python3
"""
Raw snapshot cache of fetched Jira records.

Layout (under the mirror's _data directory):

    {component}/epic-{slug}/{type}-{key}.json

Each file is a faithful copy of the record returned by the tracker. The
reconciler reads this tree as its only source of truth for a run.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from popsync.config_loader import MirrorSettings
from popsync.errors import PopsyncError, StructuralMismatch, TrackerError
from popsync.issue_types import IssueType
from popsync.logger import get_logger
from popsync.renderer import Entity, epic_directory_name
from popsync.slug import slugify
from popsync.tracker import TrackerClient


SNAPSHOT_PATTERN = re.compile(r"^(.+)-([A-Z][A-Z0-9_]*-\d+)\.json$")

Structure = Dict[str, Dict[str, List[Dict[str, Any]]]]


@dataclass
class FetchResult:
    """Outcome of fetching one component into the cache."""

    component: str
    epics_fetched: int = 0
    issues_saved: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class SnapshotCache:
    """Reads and writes the raw snapshot tree."""

    def __init__(self, settings: MirrorSettings):
        self.settings = settings
        self.root = settings.data_dir
        self.logger = get_logger()

    def path_for(self, entity: Entity, component: str, epic_dir: str) -> Path:
        prefix = entity.issue_type.prefix if entity.issue_type else (slugify(entity.type_name) or 'unknown')
        return self.root / component / epic_dir / f"{prefix}-{entity.key}.json"

    def save(self, record: Dict[str, Any], component: str, epic_dir: str) -> Path:
        """
        Write a record to its cache location, replacing copies stored elsewhere.

        Args:
            record: Raw record as returned by the tracker
            component: Component directory the record was fetched under
            epic_dir: Epic directory name (epic-{slug})

        Returns:
            Path of the written snapshot
        """
        entity = Entity.from_snapshot(record, self.settings.parent_link_fields)
        path = self.path_for(entity, component, epic_dir)

        # One snapshot per key: an epic rename moves its records
        for stale in self._locate(entity.key):
            if stale != path:
                stale.unlink()
                self.logger.debug(f"Dropped stale snapshot {stale}")

        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix('.json.tmp')
        try:
            temp_file.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding='utf-8')
            temp_file.replace(path)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise

        self.logger.debug(f"Saved snapshot {path}")
        return path

    def _locate(self, key: str) -> List[Path]:
        if not self.root.is_dir():
            return []
        matches = []
        for path in sorted(self.root.glob(f"*/*/*-{key}.json")):
            match = SNAPSHOT_PATTERN.match(path.name)
            if match and match.group(2) == key and not path.is_symlink():
                matches.append(path)
        return matches

    def load_structure(self) -> Structure:
        """
        Load every cached record grouped as component -> epic dir -> records.

        Unreadable files are skipped with a warning. Empty groups are omitted.
        """
        structure, _ = self.scan_structure()
        return structure

    def scan_structure(self) -> Tuple[Structure, List[Tuple[Path, Exception]]]:
        """
        Like load_structure, but also return the (path, error) of every unreadable snapshot.

        A group whose snapshots are all unreadable is absent from the structure
        and only visible through the second element.
        """
        structure: Structure = {}
        unreadable: List[Tuple[Path, Exception]] = []
        if not self.root.is_dir():
            self.logger.warning(f"Snapshot cache not found: {self.root}")
            return structure, unreadable

        for component_dir in sorted(self.root.iterdir()):
            if not component_dir.is_dir() or component_dir.is_symlink():
                continue

            groups: Dict[str, List[Dict[str, Any]]] = {}
            for epic_dir in sorted(component_dir.iterdir()):
                if not epic_dir.is_dir() or epic_dir.is_symlink():
                    continue

                records = []
                for path in sorted(epic_dir.glob('*.json')):
                    try:
                        record = json.loads(path.read_text(encoding='utf-8'))
                        if not isinstance(record, dict):
                            raise ValueError('snapshot is not a JSON object')
                    except (OSError, ValueError) as e:
                        self.logger.warning(f"Failed to read snapshot {path}: {e}")
                        unreadable.append((path, e))
                        continue
                    records.append(record)

                if records:
                    groups[epic_dir.name] = records

            if groups:
                structure[component_dir.name] = groups

        return structure, unreadable

    def find(self, key: str) -> Optional[Tuple[Path, Dict[str, Any]]]:
        """Cached snapshot for a key as (path, record), or None."""
        for path in self._locate(key):
            try:
                return path, json.loads(path.read_text(encoding='utf-8'))
            except (OSError, ValueError) as e:
                self.logger.warning(f"Failed to read snapshot {path}: {e}")
        return None

    async def fetch_component(self, tracker: TrackerClient, component: str) -> FetchResult:
        """
        Fetch every epic of a component and its children into the cache.

        A failing epic is recorded in the result; the others are still fetched.
        """
        result = FetchResult(component=component)
        self.logger.info(f"Fetching epics for component: {component}")

        try:
            epics = await tracker.fetch_entities_by_component_and_type(component, IssueType.EPIC.value)
        except TrackerError as e:
            result.errors.append(f"Failed to fetch epics for component {component}: {e}")
            self.logger.error(f"Failed to fetch epics for component {component}", e)
            return result

        result.epics_fetched = len(epics)
        if not epics:
            self.logger.warning(f"No epics found for component: {component}")
            return result

        for record in epics:
            key = record.get('key', '?')
            try:
                epic = Entity.from_snapshot(record, self.settings.parent_link_fields)
                epic_dir = epic_directory_name(epic)
                await asyncio.to_thread(self.save, record, component, epic_dir)
                result.issues_saved += 1

                children = await tracker.fetch_children(epic.key)
                for child in children:
                    await asyncio.to_thread(self.save, child, component, epic_dir)
                    result.issues_saved += 1

                self.logger.info(f"Completed epic {epic.key}: {len(children)} children saved")
            except (PopsyncError, OSError) as e:
                result.errors.append(f"Failed to fetch epic {key}: {e}")
                self.logger.error(f"Failed to fetch epic {key}", e)

        self.logger.info(
            f"Completed fetching for component {component}: "
            f"{result.epics_fetched} epics, {result.issues_saved} issues"
        )
        return result

    async def fetch_issue(self, tracker: TrackerClient, key: str) -> Path:
        """
        Fetch a single issue into the cache, placed under its epic.

        Raises:
            TrackerError: Issue not found or the tracker failed
            StructuralMismatch: A child issue has no epic link
        """
        record = await tracker.fetch_entity(key)
        if record is None:
            raise TrackerError(f"Issue {key} not found in Jira")

        entity = Entity.from_snapshot(record, self.settings.parent_link_fields)
        if entity.issue_type is not None and entity.issue_type.is_grouping:
            component = entity.component or self.settings.unassigned_component
            return await asyncio.to_thread(self.save, record, component, epic_directory_name(entity))

        if not entity.parent_key:
            raise StructuralMismatch(f"{key} has no epic link; it cannot be placed in the cache")

        cached = self.find(entity.parent_key)
        if cached is not None:
            epic_path = cached[0]
            component, epic_dir = epic_path.parent.parent.name, epic_path.parent.name
        else:
            parent_record = await tracker.fetch_entity(entity.parent_key)
            if parent_record is None:
                raise TrackerError(f"Epic {entity.parent_key} of {key} not found in Jira")
            parent = Entity.from_snapshot(parent_record, self.settings.parent_link_fields)
            component = parent.component or self.settings.unassigned_component
            epic_dir = epic_directory_name(parent)
            await asyncio.to_thread(self.save, parent_record, component, epic_dir)

        return await asyncio.to_thread(self.save, record, component, epic_dir)
