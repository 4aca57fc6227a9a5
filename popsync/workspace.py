#!/usr/bin/env python3
"""
Workspace lifecycle: issues reworked outside the target increment.

The workspace is a sibling of the target increment (increments/_workspace/).
- refine: fetch an issue, tag it with the rework label in Jira and write its
  document into the workspace, tagged locally with the workspace label
- promote: swap the workspace labels of a workspace document for a
  promotion label, push the change, then fetch and reconcile the issue
  into the target increment

Issues labelled with the workspace label are excluded from component
fetches, so the two trees never mirror the same issue at once.
"""

import asyncio
import copy
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from popsync.config_loader import MirrorSettings
from popsync.errors import ConfigError, StructuralMismatch, TrackerError, WorkspaceError
from popsync.frontmatter import Document, read_document, write_document
from popsync.logger import get_logger
from popsync.reconciler import DirectoryReconciler, ReconciliationReport, find_issue_file
from popsync.renderer import Entity, epic_directory_name, render_document
from popsync.snapshot_cache import SnapshotCache
from popsync.templates import TemplateStore
from popsync.tracker import TrackerClient
from popsync.updater import IssueUpdater


SCOPE_FILE = Path('.config') / 'scope.yaml'


@dataclass
class RefineResult:
    """Outcome of moving an issue into the workspace."""

    key: str
    path: Path
    created: bool
    label_added: bool = False


@dataclass
class PromotionResult:
    """Outcome of promoting a workspace issue."""

    key: str
    label: str
    wire_fields: Dict[str, Any]
    target_path: Optional[Path] = None
    report: Optional[ReconciliationReport] = None


def load_promotion_labels(settings: MirrorSettings) -> List[str]:
    """
    Promotion targets: workspace.promotion_labels, else the workspace scope.yaml.

    scope.yaml lists label groups; the first group with a 'promotion' list wins:

        labels:
          - promotion: [FY26Q1, FY26Q2]

    Raises:
        ConfigError: No promotion labels are configured, or scope.yaml is unreadable
    """
    if settings.promotion_labels:
        return list(settings.promotion_labels)

    scope_path = settings.workspace_dir / SCOPE_FILE
    if not scope_path.is_file():
        raise ConfigError(
            f"No promotion labels configured: set workspace.promotion_labels or create {scope_path}"
        )

    try:
        scope = yaml.safe_load(scope_path.read_text(encoding='utf-8')) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {scope_path}\nError: {e}")

    groups = scope.get('labels') if isinstance(scope, dict) else None
    for group in groups or []:
        if isinstance(group, dict) and group.get('promotion'):
            return [str(label) for label in group['promotion']]

    raise ConfigError(f"No promotion labels found in {scope_path}")


class WorkspaceManager:
    """Refines issues into the workspace and promotes them back out."""

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

    @property
    def root(self) -> Path:
        return self.settings.workspace_dir

    def find_document(self, key: str) -> Optional[Path]:
        return find_issue_file(self.root, key)

    # ---------- refine ----------

    async def refine(self, key: str) -> RefineResult:
        """
        Bring an issue into the workspace for rework.

        An issue already in the workspace is left as it is.

        Raises:
            TrackerError: Issue not found, or Jira rejected the label update
            StructuralMismatch: Issue type is not mirrored
        """
        existing = await asyncio.to_thread(self.find_document, key)
        if existing is not None:
            self.logger.info(f"{key} is already in the workspace: {existing}")
            return RefineResult(key=key, path=existing, created=False)

        record = await self.tracker.fetch_entity(key)
        if record is None:
            raise TrackerError(f"Issue {key} not found in Jira")

        labels = list(record.get('fields', {}).get('labels') or [])
        label_added = self.settings.rework_label not in labels
        if label_added:
            labels.append(self.settings.rework_label)
            if not self.dry_run:
                await self.tracker.update_entity(key, {'labels': labels})
            self.logger.info(f"Added {self.settings.rework_label} label to {key}")

        local = copy.deepcopy(record)
        local_labels = list(labels)
        if self.settings.workspace_label not in local_labels:
            local_labels.append(self.settings.workspace_label)
        local.setdefault('fields', {})['labels'] = local_labels

        entity = Entity.from_snapshot(local, self.settings.parent_link_fields)
        if entity.issue_type is None:
            raise StructuralMismatch(f"{key} has unsupported issue type '{entity.type_name}'")

        directory = await asyncio.to_thread(self._directory_for, entity)
        path = directory / entity.file_name
        document = render_document(entity, self.templates.mapping_for(entity.issue_type))
        if not self.dry_run:
            await asyncio.to_thread(self._write, path, document)

        self.logger.log_file_change('wrote', path, self.dry_run, reason=f"{key} moved to workspace")
        return RefineResult(key=key, path=path, created=True, label_added=label_added)

    def _directory_for(self, entity: Entity) -> Path:
        """Epics get their own directory; children join their epic's, else the component's."""
        component = entity.component or self.settings.unassigned_component
        if entity.issue_type.is_grouping:
            return self.root / component / epic_directory_name(entity)

        if entity.parent_key:
            epic_path = self.find_document(entity.parent_key)
            if epic_path is not None:
                return epic_path.parent
        return self.root / component

    @staticmethod
    def _write(path: Path, document: Document) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_document(path, document)

    # ---------- promote ----------

    def _load(self, key: str) -> Tuple[Path, Document]:
        path = self.find_document(key)
        if path is None:
            raise WorkspaceError(f"Issue {key} not found in workspace {self.root}")
        document = read_document(path)
        if document.key != key:
            raise WorkspaceError(f"{path}: document key {document.key!r} does not match {key}")
        return path, document

    def promoted_labels(self, labels: List[str], target: str) -> List[str]:
        """Labels with the workspace labels dropped and the promotion label appended once."""
        dropped = (self.settings.workspace_label, self.settings.rework_label)
        result = [label for label in labels if label not in dropped]
        if target not in result:
            result.append(target)
        return result

    async def promote(self, key: str, target: str) -> PromotionResult:
        """
        Promote a workspace issue into the target increment.

        Raises:
            WorkspaceError: Not a workspace issue, or not found in the workspace
            ConfigError: Unknown promotion target
            RemoteWriteFailure: Jira rejected the label update
        """
        start = time.time()
        path, document = await asyncio.to_thread(self._load, key)

        labels = list(document.properties.get('labels') or [])
        if self.settings.workspace_label not in labels:
            raise WorkspaceError(
                f"{key} does not have the '{self.settings.workspace_label}' label; "
                "only workspace issues can be promoted"
            )

        allowed = await asyncio.to_thread(load_promotion_labels, self.settings)
        if target not in allowed:
            raise ConfigError(f"Invalid promotion target: {target}. Available targets: {', '.join(allowed)}")

        properties = dict(document.properties)
        properties['labels'] = self.promoted_labels(labels, target)
        updater = IssueUpdater(self.settings, self.tracker, dry_run=self.dry_run)
        wire_fields = updater.property_fields(properties, document)

        result = PromotionResult(key=key, label=target, wire_fields=wire_fields)
        if self.dry_run:
            self.logger.info(f"Would promote {key} to {target}", context={'fields': sorted(wire_fields)})
            return result

        await self.tracker.update_entity(key, wire_fields)
        self.logger.info(f"Promoted {key} to {target}, fetching it into the increment")

        await self.cache.fetch_issue(self.tracker, key)
        cached = await asyncio.to_thread(self.cache.find, key)
        if cached is None:
            raise WorkspaceError(f"{key} was promoted but is missing from the snapshot cache")
        entity = Entity.from_snapshot(cached[1], self.settings.parent_link_fields)
        epic_key = entity.key if entity.issue_type and entity.issue_type.is_grouping else entity.parent_key

        reconciler = DirectoryReconciler(self.settings, self.tracker, self.cache, self.templates)
        result.report = await reconciler.reconcile(epic_key=epic_key)
        result.target_path = await asyncio.to_thread(find_issue_file, self.settings.mirror_root, key)

        if result.target_path is not None:
            await asyncio.to_thread(path.unlink)
            self.logger.log_file_change('removed', path, reason=f"{key} promoted to {target}")
        else:
            self.logger.warning(f"{key} was not materialized in {self.settings.mirror_root}, workspace copy kept")

        self.logger.log_sync_operation(
            'promote_issue',
            'failure' if result.report.failed else 'success',
            duration=time.time() - start,
            context={'key': key, 'label': target},
        )
        return result
