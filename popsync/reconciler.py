#!/usr/bin/env python3
"""
Directory reconciler: aligns the markdown mirror with the Jira hierarchy.

The snapshot cache is the only source of truth for a run. For every epic
group (an epic plus its fetched children) the reconciler:
- derives the canonical directory {component}/epic-{slug}/
- drops children whose epic link or component disagrees with the epic
- removes duplicates and stale copies of the group's files elsewhere in the mirror
- renders and writes each document, skipping files whose content is unchanged
Afterwards, epic and component directories that no longer correspond to
any cached epic are removed, unless they still hold a file with a valid key.

Running twice against the same cache leaves the second report empty.
"""

import asyncio
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from popsync.config_loader import MirrorSettings
from popsync.errors import (
    FilesystemConflict,
    MalformedDocument,
    PopsyncError,
    StructuralMismatch,
    TrackerError,
)
from popsync.field_mapper import lower
from popsync.frontmatter import parse, serialize, write_document
from popsync.logger import get_logger
from popsync.renderer import Entity, epic_directory_name, render_document
from popsync.snapshot_cache import SNAPSHOT_PATTERN, SnapshotCache, Structure
from popsync.templates import TemplateStore
from popsync.tracker import TrackerClient


ISSUE_FILE_PATTERN = re.compile(r"^(epic|story|task|bug|spike)-([A-Z][A-Z0-9_]*-\d+)\.md$")

IGNORED_NAME_PARTS = ('README', 'CHANGELOG')

ValidDirectories = Dict[str, Set[str]]


def scan_issue_files(root: Path) -> List[Tuple[Path, str]]:
    """
    (path, key) of every issue document under the mirror root.

    Symbolic links are never followed and control directories (leading '_'
    or '.') are skipped, so the walk always terminates.
    """
    found: List[Tuple[Path, str]] = []
    if not Path(root).is_dir():
        return found

    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(('_', '.')))
        for name in sorted(filenames):
            match = ISSUE_FILE_PATTERN.match(name)
            path = Path(dirpath) / name
            if match and not path.is_symlink():
                found.append((path, match.group(2)))
    return found


def find_issue_file(root: Path, key: str) -> Optional[Path]:
    """The mirror document for a key, or None."""
    for path, found_key in scan_issue_files(root):
        if found_key == key:
            return path
    return None


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation run. Not persisted."""

    dry_run: bool = False
    entities_processed: int = 0
    files_generated: List[str] = field(default_factory=list)
    files_unchanged: int = 0
    files_relocated: List[str] = field(default_factory=list)
    files_deleted: List[str] = field(default_factory=list)
    directories_deleted: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        """True when any entity or group failed outright; warnings do not count."""
        return bool(self.errors)

    @property
    def changed(self) -> bool:
        return bool(
            self.files_generated or self.files_relocated
            or self.files_deleted or self.directories_deleted
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dry_run': self.dry_run,
            'entities_processed': self.entities_processed,
            'files_generated': len(self.files_generated),
            'files_unchanged': self.files_unchanged,
            'files_relocated': len(self.files_relocated),
            'files_deleted': len(self.files_deleted),
            'directories_deleted': len(self.directories_deleted),
            'warnings': len(self.warnings),
            'errors': len(self.errors),
        }


@dataclass
class EpicGroup:
    """An epic and its cached children, with the epic's canonical location."""

    source: str
    epic: Entity
    children: List[Entity]
    component: str
    directory: str

    @property
    def cache_location(self) -> Tuple[str, str]:
        component, _, epic_dir = self.source.partition('/')
        return component, epic_dir


class DirectoryReconciler:
    """Reconciles the mirror tree against the snapshot cache."""

    def __init__(
        self,
        settings: MirrorSettings,
        tracker: TrackerClient,
        cache: SnapshotCache,
        templates: TemplateStore,
        dry_run: bool = False,
    ):
        self.settings = settings
        self.tracker = tracker
        self.cache = cache
        self.templates = templates
        self.dry_run = dry_run
        self.logger = get_logger()

    # ---------- run ----------

    async def reconcile(
        self,
        component: Optional[str] = None,
        epic_key: Optional[str] = None,
    ) -> ReconciliationReport:
        """
        Reconcile the mirror, optionally limited to one cached component or epic.

        Orphan cleanup always considers the whole mirror; the valid sets are
        built from the whole cache regardless of the filters.
        """
        start = time.time()
        report = ReconciliationReport(dry_run=self.dry_run)

        structure, unreadable = await asyncio.to_thread(self.cache.scan_structure)
        groups = self._build_groups(structure, report)
        valid_dirs, valid_keys = self.valid_sets(groups)
        self._protect_unresolved(structure, groups, unreadable, valid_dirs, valid_keys, report)

        for group in groups:
            if component and group.cache_location[0] != component:
                continue
            if epic_key and group.epic.key != epic_key:
                continue
            await self.process_epic_group(group, valid_keys, report)

        await asyncio.to_thread(self.cleanup_orphaned_directories, valid_dirs, valid_keys, report)

        self.logger.log_sync_operation(
            'process_issues',
            'failure' if report.failed else 'success',
            duration=time.time() - start,
            context=report.to_dict(),
        )
        return report

    def _build_groups(self, structure: Structure, report: ReconciliationReport) -> List[EpicGroup]:
        groups = []
        for cache_component, epic_dirs in structure.items():
            for cache_dir, records in epic_dirs.items():
                source = f"{cache_component}/{cache_dir}"
                try:
                    groups.append(self._build_group(source, records, report))
                except StructuralMismatch as e:
                    self._fail(report, f"Failed to process epic group {source}", e)
        return groups

    def _build_group(
        self,
        source: str,
        records: List[Dict[str, Any]],
        report: ReconciliationReport,
    ) -> EpicGroup:
        entities = []
        for record in records:
            try:
                entity = Entity.from_snapshot(record, self.settings.parent_link_fields)
            except StructuralMismatch as e:
                self._warn(report, f"Skipping cached record in {source}: {e}")
                continue
            if entity.issue_type is None:
                self._warn(report, f"Skipping {entity.key} in {source}: unsupported issue type '{entity.type_name}'")
                continue
            entities.append(entity)

        epics = [e for e in entities if e.issue_type.is_grouping]
        if not epics:
            raise StructuralMismatch(f"no epic found in epic group {source}")

        # A nested epic carrying an epic link is a member, not the group owner
        epic = next((e for e in epics if not e.parent_key), epics[0])
        children = [e for e in entities if e is not epic]

        return EpicGroup(
            source=source,
            epic=epic,
            children=children,
            component=self._correct_component(epic, report),
            directory=epic_directory_name(epic),
        )

    def _correct_component(self, epic: Entity, report: ReconciliationReport) -> str:
        if epic.component:
            return epic.component
        self._warn(
            report,
            f"Epic {epic.key} has no component specified, using '{self.settings.unassigned_component}'"
        )
        return self.settings.unassigned_component

    @staticmethod
    def valid_sets(groups: List[EpicGroup]) -> Tuple[ValidDirectories, Set[str]]:
        """Valid (component -> epic dirs) and valid keys, derived from the cache only."""
        valid_dirs: ValidDirectories = {}
        valid_keys: Set[str] = set()
        for group in groups:
            valid_dirs.setdefault(group.component, set()).add(group.directory)
            valid_keys.add(group.epic.key)
            for child in group.children:
                if child.parent_key == group.epic.key:
                    valid_keys.add(child.key)
        return valid_dirs, valid_keys

    def _protect_unresolved(
        self,
        structure: Structure,
        groups: List[EpicGroup],
        unreadable: List[Tuple[Path, Exception]],
        valid_dirs: ValidDirectories,
        valid_keys: Set[str],
        report: ReconciliationReport,
    ) -> None:
        """
        Keep the mirror locations of cache groups that could not be built or read.

        Their cache directory is treated as a valid epic directory and every
        key they mention as a valid key, so nothing of theirs is deleted
        until the cache is readable again. Unreadable snapshots are errors.
        """
        built = {group.source for group in groups}
        locations: Set[Tuple[str, str]] = set()

        for cache_component, epic_dirs in structure.items():
            for cache_dir, records in epic_dirs.items():
                if f"{cache_component}/{cache_dir}" in built:
                    continue
                locations.add((cache_component, cache_dir))
                valid_keys.update(str(record['key']) for record in records if record.get('key'))

        for path, error in unreadable:
            self._fail(report, f"Unreadable snapshot {path}", error)
            locations.add((path.parent.parent.name, path.parent.name))
            match = SNAPSHOT_PATTERN.match(path.name)
            if match:
                valid_keys.add(match.group(2))

        for component, directory in sorted(locations):
            valid_dirs.setdefault(component, set()).add(directory)
            self.logger.debug(f"Protecting {component}/{directory} from cleanup")

    # ---------- epic groups ----------

    async def process_epic_group(
        self,
        group: EpicGroup,
        valid_keys: Set[str],
        report: ReconciliationReport,
    ) -> None:
        """Validate, clean up and materialize one epic group. Failures land in the report."""
        target = self.settings.mirror_root / group.component / group.directory
        self.logger.info(f"Processing epic {group.epic.key} -> {group.component}/{group.directory}")

        try:
            children = await self.validate_children(group, report)
            await asyncio.to_thread(self._ensure_directory, target)

            members = [group.epic] + children
            await asyncio.to_thread(self._remove_misplaced, members, target, valid_keys, report)
        except (PopsyncError, OSError) as e:
            self._fail(report, f"Failed to process epic group {group.source}", e)
            return

        for entity in members:
            try:
                await asyncio.to_thread(self._materialize, entity, target, report)
                report.entities_processed += 1
            except (PopsyncError, OSError) as e:
                self._fail(report, f"Failed to write {entity.key}", e)

        removed = len(group.children) - len(children)
        if removed:
            self.logger.debug(f"Filtered out {removed} misplaced issues from epic {group.epic.key}")

    async def validate_children(self, group: EpicGroup, report: ReconciliationReport) -> List[Entity]:
        """
        Children that belong in the epic's directory.

        A child of the grouping type whose only problem is a component
        mismatch gets one remote repair and one re-validation. Every other
        mismatch excludes the child with a warning.
        """
        valid = []
        for child in group.children:
            problems = self._mismatches(child, group)

            if problems and set(problems) == {'component'} and child.issue_type.is_grouping:
                repaired = await self._repair_component(child, group, report)
                if repaired is not None:
                    child = repaired
                    problems = self._mismatches(child, group)

            if problems:
                self._warn(
                    report,
                    f"Excluding {child.type_name} {child.key} from {group.component}/{group.directory}: "
                    + '; '.join(problems.values()),
                    context={'epic': group.epic.key},
                )
                continue

            valid.append(child)
        return valid

    def _mismatches(self, child: Entity, group: EpicGroup) -> Dict[str, str]:
        problems = {}
        if child.parent_key != group.epic.key:
            problems['parent'] = f"epic link mismatch: expected {group.epic.key}, got {child.parent_key or 'none'}"
        if child.issue_type.is_grouping and group.component not in child.components:
            problems['component'] = (
                f"component mismatch: expected {group.component}, got [{', '.join(child.components)}]"
            )
        return problems

    async def _repair_component(
        self,
        child: Entity,
        group: EpicGroup,
        report: ReconciliationReport,
    ) -> Optional[Entity]:
        if self.dry_run:
            self._warn(report, f"Would set component of {child.key} to {group.component} (dry run)")
            return None

        self.logger.info(f"Attempting to fix component mismatch for {child.type_name} {child.key}")
        wire_fields = lower({'fields.components[].name': [group.component]})
        try:
            await self.tracker.update_entity(child.key, wire_fields)
            record = await self.tracker.fetch_entity(child.key)
        except TrackerError as e:
            self._warn(report, f"Failed to fix component mismatch for {child.key}: {e}")
            return None

        if record is None:
            self._warn(report, f"Failed to re-fetch {child.key} after component update")
            return None

        component, epic_dir = group.cache_location
        await asyncio.to_thread(self.cache.save, record, component, epic_dir)
        self.logger.info(f"Updated {child.key} to component {group.component}, re-validating")
        return Entity.from_snapshot(record, self.settings.parent_link_fields)

    # ---------- filesystem (runs in a worker thread) ----------

    def _ensure_directory(self, target: Path) -> None:
        if target.is_symlink() or (target.exists() and not target.is_dir()):
            raise FilesystemConflict(f"{target} exists but is not a directory")
        if target.is_dir():
            return
        if not self.settings.create_directories:
            raise FilesystemConflict(
                f"Missing directory {target} (sync.create_directories is disabled)"
            )
        if not self.dry_run:
            target.mkdir(parents=True, exist_ok=True)
            self.logger.debug(f"Created directory {target}")

    def _remove_misplaced(
        self,
        members: List[Entity],
        target: Path,
        valid_keys: Set[str],
        report: ReconciliationReport,
    ) -> None:
        valid_names = {entity.file_name for entity in members}
        member_keys = {entity.key for entity in members}

        relocations: List[Path] = []
        deletions: List[Path] = []
        for path, key in scan_issue_files(self.settings.mirror_root):
            if path.name in valid_names:
                if path.parent != target:
                    relocations.append(path)
            elif key in member_keys:
                # Same key under another type prefix
                deletions.append(path)
            elif path.parent == target and key not in valid_keys:
                deletions.append(path)

        for path in relocations:
            self._delete_file(path)
            report.files_relocated.append(str(path))
            self.logger.log_file_change('relocated', path, self.dry_run, reason=f"belongs in {target}")

        for path in deletions:
            self._delete_file(path)
            report.files_deleted.append(str(path))
            self.logger.log_file_change('removed', path, self.dry_run, reason='stale')

    def _delete_file(self, path: Path) -> None:
        if not self.dry_run:
            path.unlink(missing_ok=True)

    def _materialize(self, entity: Entity, target: Path, report: ReconciliationReport) -> None:
        path = target / entity.file_name
        if path.is_symlink() or (path.exists() and not path.is_file()):
            self._warn(report, f"{path} is occupied by something other than a file, leaving it untouched")
            return

        mapping = self.templates.mapping_for(entity.issue_type)

        current_text = None
        synced_at = None
        if path.is_file():
            current_text = path.read_text(encoding='utf-8')
            try:
                synced_at = parse(current_text, str(path)).sync.get('last_sync')
            except MalformedDocument as e:
                self._warn(report, f"Replacing unreadable document: {e}")

        document = render_document(entity, mapping, synced_at=synced_at)
        if current_text is not None and serialize(document) == current_text:
            report.files_unchanged += 1
            return

        if synced_at is not None:
            document = render_document(entity, mapping)

        if not self.dry_run:
            write_document(path, document)
        report.files_generated.append(str(path))
        self.logger.log_file_change('wrote', path, self.dry_run)

    def cleanup_orphaned_directories(
        self,
        valid_dirs: ValidDirectories,
        valid_keys: Set[str],
        report: ReconciliationReport,
    ) -> None:
        """
        Remove epic directories no cached epic maps to, then emptied component directories.

        Deletions are collected during the walk and executed afterwards.
        """
        root = self.settings.mirror_root
        if not root.is_dir():
            return

        # Dry runs leave scheduled files on disk
        scheduled = {Path(p) for p in report.files_relocated + report.files_deleted}

        doomed: List[Path] = []
        for component_dir in sorted(root.iterdir()):
            if component_dir.name.startswith(('_', '.')):
                continue
            if component_dir.is_symlink() or not component_dir.is_dir():
                continue

            expected = valid_dirs.get(component_dir.name, set())
            removed: Set[str] = set()
            for epic_dir in sorted(component_dir.iterdir()):
                if epic_dir.is_symlink() or not epic_dir.is_dir() or not epic_dir.name.startswith('epic-'):
                    continue
                if epic_dir.name in expected:
                    continue
                if self._holds_valid_files(epic_dir, valid_keys, scheduled):
                    self._warn(
                        report,
                        f"Epic directory {epic_dir} contains files with valid keys "
                        "but doesn't match the expected structure"
                    )
                    continue
                doomed.append(epic_dir)
                removed.add(epic_dir.name)

            remaining = [
                name for name in os.listdir(component_dir)
                if name not in removed and self._is_meaningful(name)
                and component_dir / name not in scheduled
            ]
            if not remaining and component_dir.name not in valid_dirs:
                doomed.append(component_dir)

        for path in doomed:
            if not self.dry_run and path.exists():
                shutil.rmtree(path)
            report.directories_deleted.append(str(path))
            self.logger.log_file_change('pruned', path, self.dry_run, reason='orphaned directory')

    @staticmethod
    def _holds_valid_files(directory: Path, valid_keys: Set[str], ignored: Set[Path]) -> bool:
        for dirpath, _, filenames in os.walk(directory, followlinks=False):
            for name in filenames:
                match = ISSUE_FILE_PATTERN.match(name)
                if match and match.group(2) in valid_keys and Path(dirpath) / name not in ignored:
                    return True
        return False

    @staticmethod
    def _is_meaningful(name: str) -> bool:
        if name.startswith(('.', '_')):
            return False
        return not any(part in name for part in IGNORED_NAME_PARTS)

    # ---------- reporting ----------

    def _warn(
        self,
        report: ReconciliationReport,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.logger.warning(message, context)
        report.warnings.append(message)

    def _fail(self, report: ReconciliationReport, message: str, error: Exception) -> None:
        self.logger.error(message, error)
        report.errors.append(f"{message}: {error}")
