#!/usr/bin/env python3
"""
Configuration loader and validator for the Jira ↔ planning mirror.

Loads popsync.yaml with validation, environment variable substitution,
and clear error messages for misconfiguration.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Any, List, Mapping, Optional, Tuple
import yaml

from popsync.errors import ConfigError
from popsync.field_mapper import DEFAULT_READONLY_FIELDS, GROUPING_FIELD


CONFIG_FILE_NAME = 'popsync.yaml'

DEFAULT_PARENT_LINK_FIELDS: Tuple[str, ...] = (
    'fields.customfield_10000',  # Epic Link used by our JQL
    'fields.customfield_10014',  # Jira Cloud
    'fields.customfield_10008',  # Jira Server/DC
    'fields.parent.key',
)


@dataclass(frozen=True)
class MirrorSettings:
    """Immutable settings handed to the reconciler, updater and validator."""

    project_key: str
    mirror_root: Path
    templates_dir: Path
    base_url: str = ''
    create_directories: bool = True
    unassigned_component: str = 'unassigned'
    readonly_fields: Tuple[str, ...] = DEFAULT_READONLY_FIELDS
    grouping_field: str = GROUPING_FIELD
    parent_link_fields: Tuple[str, ...] = DEFAULT_PARENT_LINK_FIELDS
    instruction_marker: str = '<INSTRUCTION:'
    scope_components: Tuple[str, ...] = ()
    workspace_root: Optional[Path] = None
    workspace_label: str = 'workspace'
    rework_label: str = 're-workspace'
    promotion_labels: Tuple[str, ...] = ()
    validation: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def data_dir(self) -> Path:
        """Raw snapshot cache, a control directory inside the mirror."""
        return self.mirror_root / '_data'

    @property
    def workspace_dir(self) -> Path:
        """Drafts and reworked issues, a sibling of the target increment."""
        if self.workspace_root is not None:
            return self.workspace_root
        return self.mirror_root.parent / '_workspace'


class SyncConfig:
    """Mirror configuration loaded from popsync.yaml."""

    REQUIRED_FIELDS = {
        'jira': ['project'],
        'paths': ['increments', 'target'],
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to popsync.yaml (default: $POPSYNC_CONFIG, then the
                nearest popsync.yaml above the working directory)
        """
        if config_path is None and os.getenv('POPSYNC_CONFIG'):
            config_path = Path(os.environ['POPSYNC_CONFIG'])

        if config_path is None:
            current_dir = Path.cwd()
            while True:
                if (current_dir / CONFIG_FILE_NAME).exists():
                    config_path = current_dir / CONFIG_FILE_NAME
                    break
                if current_dir == current_dir.parent:
                    break
                current_dir = current_dir.parent

            if config_path is None:
                raise ConfigError(
                    f"Could not find {CONFIG_FILE_NAME}. "
                    "Run this command from the planning repository root or set POPSYNC_CONFIG."
                )

        self.config_path = Path(config_path)
        self.config: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        """Load and parse YAML configuration file."""
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self.config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Invalid YAML in configuration file: {self.config_path}\n"
                f"Error: {e}"
            )
        except OSError as e:
            raise ConfigError(
                f"Failed to read configuration file: {self.config_path}\n"
                f"Error: {e}"
            )

        if not isinstance(self.config, dict):
            raise ConfigError(f"Configuration root must be a mapping: {self.config_path}")

        self._substitute_env_vars()
        self._resolve_paths()
        self._validate()

    def _substitute_env_vars(self) -> None:
        """Apply JIRA_* environment overrides."""
        jira = self.config.setdefault('jira', {})
        if not isinstance(jira, dict):
            return

        if os.getenv('JIRA_BASE_URL'):
            jira['base_url'] = os.environ['JIRA_BASE_URL']
        if os.getenv('JIRA_PROJECT'):
            jira['project'] = os.environ['JIRA_PROJECT']

    def _resolve_paths(self) -> None:
        """Resolve relative paths against the config file's directory."""
        paths = self.config.get('paths')
        if not isinstance(paths, dict):
            return

        config_dir = self.config_path.parent.resolve()
        paths.setdefault('templates', 'templates/planning')
        for name in ('increments', 'templates', 'workspace'):
            value = paths.get(name)
            if isinstance(value, str) and value.strip():
                paths[name] = str((config_dir / value).resolve())

    def _validate(self) -> None:
        """Validate configuration has all required fields and valid values."""
        errors = []

        for section, fields in self.REQUIRED_FIELDS.items():
            section_data = self.config.get(section)
            if section_data is None:
                errors.append(f"Missing required section: '{section}'")
                continue
            if not isinstance(section_data, dict):
                errors.append(f"Section '{section}' must be a mapping")
                continue
            for name in fields:
                value = section_data.get(name)
                if value is None or (isinstance(value, str) and not value.strip()):
                    errors.append(f"Missing required field: '{section}.{name}'")

        project = self.get('jira.project')
        if isinstance(project, str) and project and not project.isupper():
            errors.append(
                f"jira.project must be an uppercase project key (got: '{project}')\n"
                f"  → Example: 'POP', 'GVT'"
            )

        sync = self.config.get('sync', {})
        if not isinstance(sync, dict):
            errors.append("Section 'sync' must be a mapping")
        else:
            if 'create_directories' in sync and not isinstance(sync['create_directories'], bool):
                errors.append("sync.create_directories must be true or false")
            for list_field in ('readonly_fields', 'parent_link_fields'):
                value = sync.get(list_field)
                if value is not None and not (
                    isinstance(value, list) and all(isinstance(v, str) for v in value)
                ):
                    errors.append(f"sync.{list_field} must be a list of strings")

        components = self.get('scope.components')
        if components is not None and not isinstance(components, list):
            errors.append("scope.components must be a list")

        workspace = self.config.get('workspace', {})
        if not isinstance(workspace, dict):
            errors.append("Section 'workspace' must be a mapping")
        else:
            labels = workspace.get('promotion_labels')
            if labels is not None and not (
                isinstance(labels, list) and all(isinstance(v, str) and v.strip() for v in labels)
            ):
                errors.append("workspace.promotion_labels must be a list of label names")
            for label_field in ('label', 'rework_label'):
                value = workspace.get(label_field)
                if value is not None and not (isinstance(value, str) and value.strip()):
                    errors.append(f"workspace.{label_field} must be a non-empty string")

        validation = self.config.get('validation', {})
        if not isinstance(validation, dict):
            errors.append("Section 'validation' must be a mapping")
        else:
            for type_name, rules in validation.items():
                if not isinstance(rules, dict):
                    errors.append(f"validation.{type_name} must be a mapping")
                    continue
                if 'required_sections' in rules and not isinstance(rules['required_sections'], list):
                    errors.append(f"validation.{type_name}.required_sections must be a list")
                min_length = rules.get('min_length')
                if min_length is not None and (not isinstance(min_length, int) or min_length < 0):
                    errors.append(f"validation.{type_name}.min_length must be a non-negative integer")

        if errors:
            error_msg = "Configuration validation failed:\n\n" + "\n".join(f"  • {e}" for e in errors)
            raise ConfigError(error_msg)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key.

        Args:
            key: Dot-notation key (e.g., 'jira.project', 'paths.target')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value: Any = self.config

        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

            if value is None:
                return default

        return value

    def __getitem__(self, key: str) -> Any:
        """Get configuration section by key."""
        return self.config[key]

    def settings(self) -> MirrorSettings:
        """Build the immutable settings value used by the engine."""
        sync = self.config.get('sync') or {}
        workspace = self.config.get('workspace') or {}
        components = []
        for entry in self.get('scope.components', []):
            # scope.yaml style entries ({name: ...}) are accepted too
            name = entry.get('name') if isinstance(entry, dict) else entry
            if name:
                components.append(str(name))

        return MirrorSettings(
            project_key=self.get('jira.project'),
            base_url=self.get('jira.base_url', ''),
            mirror_root=Path(self.get('paths.increments')) / str(self.get('paths.target')),
            templates_dir=Path(self.get('paths.templates')),
            create_directories=sync.get('create_directories', True),
            unassigned_component=sync.get('unassigned_component', 'unassigned'),
            readonly_fields=tuple(sync.get('readonly_fields') or DEFAULT_READONLY_FIELDS),
            parent_link_fields=tuple(sync.get('parent_link_fields') or DEFAULT_PARENT_LINK_FIELDS),
            instruction_marker=sync.get('instruction_marker', '<INSTRUCTION:'),
            scope_components=tuple(components),
            workspace_root=Path(self.get('paths.workspace')) if self.get('paths.workspace') else None,
            workspace_label=workspace.get('label', 'workspace'),
            rework_label=workspace.get('rework_label', 're-workspace'),
            promotion_labels=tuple(workspace.get('promotion_labels') or ()),
            validation=MappingProxyType(dict(self.config.get('validation') or {})),
        )

    def check_paths(self) -> Tuple[List[str], List[str]]:
        """
        Check the configured directories on disk.

        Returns:
            (errors, warnings). A missing increments directory is an error
            unless sync.create_directories allows creating it later.
        """
        errors: List[str] = []
        warnings: List[str] = []
        settings = self.settings()

        increments = Path(self.get('paths.increments'))
        if not increments.is_dir():
            if settings.create_directories:
                warnings.append(f"Increments directory does not exist yet: {increments}")
            else:
                errors.append(f"Increments directory does not exist: {increments}")

        if not settings.templates_dir.is_dir():
            warnings.append(f"Templates directory not found, built-in mappings apply: {settings.templates_dir}")

        if settings.workspace_dir.exists() and not settings.workspace_dir.is_dir():
            errors.append(f"Workspace path is not a directory: {settings.workspace_dir}")

        if not settings.scope_components:
            warnings.append("scope.components is empty; fetch-issues needs --component")

        return errors, warnings

    def __repr__(self) -> str:
        return f"SyncConfig(path={self.config_path}, project={self.get('jira.project')})"


def load_config(config_path: Optional[Path] = None) -> SyncConfig:
    """
    Load and validate mirror configuration.

    Raises:
        ConfigError: If configuration is invalid or missing
    """
    return SyncConfig(config_path)

