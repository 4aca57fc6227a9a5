"""
Planning templates: the source of each document's mapping table.

A template is a markdown file `{templates_dir}/{type}.md` whose frontmatter
carries `properties` and `mapping`. Documents copy the mapping verbatim.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict

from popsync.field_mapper import MappingTable
from popsync.frontmatter import read_document
from popsync.issue_types import IssueType
from popsync.logger import get_logger


_COMMON_MAPPING = {
    'key': 'key',
    'type': 'fields.issuetype.name',
    'project': 'fields.project.key',
    'status': 'fields.status.name',
    'assignee': 'fields.assignee.displayName',
    'labels': 'fields.labels[]',
    'workstream': 'fields.customfield_12401.value',
    'initiative': 'fields.customfield_12400.value',
}

DEFAULT_MAPPINGS: Dict[IssueType, Dict[str, str]] = {
    IssueType.EPIC: {
        **_COMMON_MAPPING,
        'components': 'fields.components[].name',
    },
}
for _child in IssueType.child_types():
    DEFAULT_MAPPINGS[_child] = {
        **_COMMON_MAPPING,
        'components': 'fields.components[].name',
        'points': 'fields.customfield_10006',
        'epic_link': 'fields.customfield_10000',
    }


class TemplateStore:
    """Loads and caches mapping tables per issue type."""

    def __init__(self, templates_dir: Path):
        self.templates_dir = Path(templates_dir)
        self.logger = get_logger()
        self._cache: Dict[IssueType, Dict[str, Any]] = {}

    def template_path(self, issue_type: IssueType) -> Path:
        return self.templates_dir / f"{issue_type.prefix}.md"

    def mapping_for(self, issue_type: IssueType) -> Dict[str, Any]:
        """
        Mapping table for an issue type, as written in its template.

        Raises:
            MalformedDocument: Template exists but has no usable frontmatter
            MappingError: Template mapping is malformed
        """
        if issue_type not in self._cache:
            path = self.template_path(issue_type)
            if path.is_file():
                mapping = read_document(path).mapping
                self.logger.debug(f"Loaded template mapping from {path}")
            else:
                mapping = copy.deepcopy(DEFAULT_MAPPINGS[issue_type])
                self.logger.debug(
                    f"No template for {issue_type.value}, using built-in mapping",
                    context={'path': str(path)}
                )
            # Fail early on a malformed template rather than per document
            MappingTable(mapping)
            self._cache[issue_type] = mapping

        return copy.deepcopy(self._cache[issue_type])
