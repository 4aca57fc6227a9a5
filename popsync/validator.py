#!/usr/bin/env python3
"""
Content validation for mirrored issue documents.

Checks the markdown body against a per-type section schema:
- Required section headers (### ...) and their nested sub-sections (#### ...)
- Leftover template instruction markers
- Story narrative ("As a ... I want to ... so that ...")
- Minimum description length and checkbox markup (warnings only)

Schemas come from the 'validation' section of popsync.yaml, falling back
to the built-in defaults below. Validation never modifies a document.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from popsync.config_loader import MirrorSettings
from popsync.errors import MalformedDocument
from popsync.frontmatter import read_document
from popsync.issue_types import IssueType
from popsync.renderer import split_body


DEFAULT_INSTRUCTION_MARKER = '<INSTRUCTION:'

STORY_SECTION = '### Story'
STORY_CLAUSES = ('As a', 'I want to', 'so that')

_CHECKBOX = re.compile(r"\[[ xX]\]")


class FindingKind(Enum):
    """What a validation finding is about."""

    MISSING_SECTION = 'missing_section'
    UNFILLED_INSTRUCTION = 'unfilled_instruction'
    EMPTY_SECTION = 'empty_section'
    STORY_FORMAT = 'story_format'
    BODY_TOO_SHORT = 'body_too_short'
    CHECKLIST_FORMAT = 'checklist_format'
    MALFORMED_DOCUMENT = 'malformed_document'
    UNSUPPORTED_TYPE = 'unsupported_type'


@dataclass(frozen=True)
class Finding:
    kind: FindingKind
    message: str
    section: Optional[str] = None


@dataclass
class ValidationResult:
    """Errors and warnings for one document."""

    errors: List[Finding] = field(default_factory=list)
    warnings: List[Finding] = field(default_factory=list)
    path: Optional[str] = None
    key: Optional[str] = None
    issue_type: Optional[str] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, kind: FindingKind, message: str, section: Optional[str] = None) -> None:
        self.errors.append(Finding(kind, message, section))

    def warning(self, kind: FindingKind, message: str, section: Optional[str] = None) -> None:
        self.warnings.append(Finding(kind, message, section))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'key': self.key,
            'type': self.issue_type,
            'valid': self.valid,
            'errors': [f.message for f in self.errors],
            'warnings': [f.message for f in self.warnings],
        }


@dataclass(frozen=True)
class SectionRule:
    header: str
    sub_sections: Tuple[str, ...] = ()
    checklist: bool = False
    narrative: bool = False


@dataclass(frozen=True)
class SectionSchema:
    """Ordered required sections and length threshold for one issue type."""

    sections: Tuple[SectionRule, ...] = ()
    min_length: int = 0

    @classmethod
    def from_config(cls, rules: Mapping[str, Any], default: 'SectionSchema') -> 'SectionSchema':
        """
        Build a schema from a validation.<type> config entry.

        Entries in required_sections are either header strings or mappings
        with 'section', optional 'sub_sections', 'checklist' and 'narrative'.
        Omitted keys keep the default schema's values.
        """
        sections = default.sections
        if 'required_sections' in rules:
            parsed = []
            for entry in rules['required_sections'] or []:
                if isinstance(entry, str):
                    parsed.append(SectionRule(header=entry.strip()))
                    continue
                parsed.append(SectionRule(
                    header=str(entry['section']).strip(),
                    sub_sections=tuple(str(s).strip() for s in entry.get('sub_sections') or ()),
                    checklist=bool(entry.get('checklist', False)),
                    narrative=bool(entry.get('narrative', False)),
                ))
            sections = tuple(parsed)

        min_length = rules.get('min_length')
        return cls(
            sections=sections,
            min_length=default.min_length if min_length is None else int(min_length),
        )


def default_schema(issue_type: IssueType) -> SectionSchema:
    """Built-in section schema for each issue type."""
    if issue_type is IssueType.EPIC:
        return SectionSchema(
            sections=(
                SectionRule('### Problem'),
                SectionRule('### Solution'),
                SectionRule('### Technical Scope'),
                SectionRule('### Constraints & Dependencies'),
                SectionRule('### Timeline'),
            ),
            min_length=500,
        )
    if issue_type is IssueType.STORY:
        return SectionSchema(
            sections=(
                SectionRule(STORY_SECTION, narrative=True),
                SectionRule('### Technical Details'),
                SectionRule('### Acceptance Criteria', checklist=True),
                SectionRule('### Dependencies'),
                SectionRule('### Definition of Done'),
            ),
        )
    if issue_type is IssueType.TASK:
        return SectionSchema(
            sections=(
                SectionRule('### Objective'),
                SectionRule('### Technical Approach'),
                SectionRule('### Acceptance Criteria', checklist=True),
                SectionRule('### Dependencies'),
            ),
            min_length=200,
        )
    if issue_type is IssueType.BUG:
        return SectionSchema()
    if issue_type is IssueType.SPIKE:
        return SectionSchema()
    raise ValueError(f"Unhandled issue type: {issue_type!r}")


def _header_level(line: str) -> int:
    stripped = line.lstrip()
    level = len(stripped) - len(stripped.lstrip('#'))
    if level and stripped[level:level + 1] in (' ', ''):
        return level
    return 0


def extract_section(text: str, header: str) -> Optional[str]:
    """
    Content under a header line, up to the next header of the same or higher level.

    Returns None when the header is absent.
    """
    level = _header_level(header)
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if line.strip().lower() != header.strip().lower():
            continue
        content = []
        for following in lines[index + 1:]:
            following_level = _header_level(following)
            if following_level and following_level <= level:
                break
            content.append(following)
        return '\n'.join(content).strip()
    return None


def validate(
    body: str,
    issue_type: IssueType,
    schema: Optional[SectionSchema] = None,
    instruction_marker: str = DEFAULT_INSTRUCTION_MARKER,
) -> ValidationResult:
    """
    Validate a document body.

    Args:
        body: Markdown body (## Summary / ## Description)
        issue_type: Issue type selecting the schema
        schema: Section schema (default: built-in schema for the type)
        instruction_marker: Template placeholder text that must not remain

    Returns:
        ValidationResult with errors and warnings
    """
    schema = schema or default_schema(issue_type)
    result = ValidationResult(issue_type=issue_type.value)
    summary, description = split_body(body)

    if not summary:
        result.error(FindingKind.EMPTY_SECTION, 'Summary is empty or missing', '## Summary')
    elif instruction_marker in summary:
        result.error(
            FindingKind.UNFILLED_INSTRUCTION,
            'Summary contains template instructions - needs to be filled out',
            '## Summary',
        )

    if not description:
        result.error(FindingKind.EMPTY_SECTION, 'Description is empty or missing', '## Description')
    elif instruction_marker in description:
        result.error(
            FindingKind.UNFILLED_INSTRUCTION,
            'Description contains template instructions - needs to be filled out',
            '## Description',
        )

    for rule in schema.sections:
        content = extract_section(description, rule.header)
        if content is None:
            result.error(FindingKind.MISSING_SECTION, f"Missing required section: {rule.header}", rule.header)
            continue

        for sub in rule.sub_sections:
            if extract_section(content, sub) is None:
                result.error(
                    FindingKind.MISSING_SECTION,
                    f"Missing required sub-section: {sub} (under {rule.header})",
                    sub,
                )

        # Stories always get the narrative check
        story_narrative = issue_type is IssueType.STORY and rule.header.lower() == STORY_SECTION.lower()
        if rule.narrative or story_narrative:
            lowered = content.lower()
            missing = [clause for clause in STORY_CLAUSES if clause.lower() not in lowered]
            if missing:
                result.error(
                    FindingKind.STORY_FORMAT,
                    f'{rule.header} section should follow "As a... I want to... so that..." format '
                    f"(missing: {', '.join(missing)})",
                    rule.header,
                )

        if rule.checklist and not _CHECKBOX.search(content):
            result.warning(
                FindingKind.CHECKLIST_FORMAT,
                f"{rule.header} should use checkbox format [ ]",
                rule.header,
            )

    if description and len(description) < schema.min_length:
        result.warning(
            FindingKind.BODY_TOO_SHORT,
            f"Description seems too short for a {issue_type.prefix} "
            f"({len(description)} < {schema.min_length} characters)",
            '## Description',
        )

    return result


class IssueValidator:
    """Validates mirror documents using the configured schemas."""

    def __init__(self, settings: Optional[MirrorSettings] = None):
        self.validation: Mapping[str, Any] = settings.validation if settings else {}
        self.instruction_marker = settings.instruction_marker if settings else DEFAULT_INSTRUCTION_MARKER
        self._schemas: Dict[IssueType, SectionSchema] = {}

    def schema_for(self, issue_type: IssueType) -> SectionSchema:
        if issue_type not in self._schemas:
            default = default_schema(issue_type)
            rules = self.validation.get(issue_type.prefix)
            self._schemas[issue_type] = SectionSchema.from_config(rules, default) if rules else default
        return self._schemas[issue_type]

    def validate_body(self, body: str, issue_type: IssueType) -> ValidationResult:
        return validate(body, issue_type, self.schema_for(issue_type), self.instruction_marker)

    def validate_file(self, path: Path) -> ValidationResult:
        """
        Validate one document on disk.

        A malformed document or an unsupported type is reported as an error
        finding; it never raises.
        """
        try:
            document = read_document(path)
        except (MalformedDocument, OSError) as e:
            result = ValidationResult(path=str(path))
            result.error(FindingKind.MALFORMED_DOCUMENT, f"Failed to parse file: {e}")
            return result

        issue_type = IssueType.from_name(document.issue_type)
        if issue_type is None:
            result = ValidationResult(path=str(path), key=document.key, issue_type=document.issue_type)
            result.error(FindingKind.UNSUPPORTED_TYPE, f"Unsupported issue type: {document.issue_type!r}")
            return result

        result = self.validate_body(document.body, issue_type)
        result.path = str(path)
        result.key = document.key
        return result


def validate_file(path: Path, settings: Optional[MirrorSettings] = None) -> ValidationResult:
    """Validate one document with the configured (or built-in) schemas."""
    return IssueValidator(settings).validate_file(path)


if __name__ == '__main__':
    import sys

    results = [validate_file(Path(arg)).to_dict() for arg in sys.argv[1:]]
    print(json.dumps(results, indent=2))
    sys.exit(0 if all(r['valid'] for r in results) else 1)
