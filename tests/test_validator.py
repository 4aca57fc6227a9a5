import dataclasses
import textwrap
from types import MappingProxyType

import pytest

from popsync.issue_types import IssueType
from popsync.validator import (
    FindingKind,
    IssueValidator,
    SectionSchema,
    default_schema,
    extract_section,
    validate,
    validate_file,
)


def story_body(acceptance='- [ ] Users can log in\n', narrative=None):
    narrative = narrative or 'As a platform engineer I want to log in so that I can manage racks.'
    sections = [
        ('### Story', narrative),
        ('### Technical Details', 'OAuth via the corporate IdP.'),
        ('### Acceptance Criteria', acceptance),
        ('### Dependencies', 'None.'),
        ('### Definition of Done', 'Deployed to production.'),
    ]
    description = '\n\n'.join(f"{header}\n\n{content}" for header, content in sections if content is not None)
    return f"## Summary\n\nLogin page\n\n## Description\n\n{description}\n"


def kinds(findings):
    return [finding.kind for finding in findings]


def test_complete_story_is_valid():
    result = validate(story_body(), IssueType.STORY)

    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_story_missing_acceptance_criteria():
    result = validate(story_body(acceptance=None), IssueType.STORY)

    assert kinds(result.errors) == [FindingKind.MISSING_SECTION]
    assert result.errors[0].section == '### Acceptance Criteria'
    assert FindingKind.CHECKLIST_FORMAT not in kinds(result.warnings)


def test_acceptance_criteria_without_checkboxes_warns():
    result = validate(story_body(acceptance='- Users can log in'), IssueType.STORY)

    assert result.valid
    assert kinds(result.warnings) == [FindingKind.CHECKLIST_FORMAT]


def test_story_narrative_format():
    result = validate(story_body(narrative='Users need to log in.'), IssueType.STORY)

    assert kinds(result.errors) == [FindingKind.STORY_FORMAT]
    assert 'As a' in result.errors[0].message


def test_story_narrative_is_case_insensitive():
    narrative = 'as a user, i WANT TO log in, SO THAT my work is saved'
    assert validate(story_body(narrative=narrative), IssueType.STORY).valid


def test_unfilled_instruction_marker():
    body = story_body().replace('OAuth via the corporate IdP.', '<INSTRUCTION: describe the approach>')
    result = validate(body, IssueType.STORY)

    assert kinds(result.errors) == [FindingKind.UNFILLED_INSTRUCTION]


def test_custom_instruction_marker():
    body = story_body().replace('None.', 'TODO(fill-me)')
    result = validate(body, IssueType.STORY, instruction_marker='TODO(fill-me)')
    assert kinds(result.errors) == [FindingKind.UNFILLED_INSTRUCTION]


def test_empty_summary_and_description():
    result = validate('## Summary\n\n## Description\n\n', IssueType.BUG)

    assert kinds(result.errors) == [FindingKind.EMPTY_SECTION, FindingKind.EMPTY_SECTION]


def test_short_task_description_warns():
    body = textwrap.dedent("""\
        ## Summary

        Rotate certificates

        ## Description

        ### Objective
        Rotate.

        ### Technical Approach
        Script it.

        ### Acceptance Criteria
        - [x] Done

        ### Dependencies
        None.
    """)
    result = validate(body, IssueType.TASK)

    assert result.valid
    assert kinds(result.warnings) == [FindingKind.BODY_TOO_SHORT]


def test_epic_requires_its_sections():
    result = validate(story_body(), IssueType.EPIC)

    assert [f.section for f in result.errors] == [rule.header for rule in default_schema(IssueType.EPIC).sections]


@pytest.mark.parametrize('issue_type', list(IssueType))
def test_every_type_has_a_schema(issue_type):
    assert isinstance(default_schema(issue_type), SectionSchema)


def test_extract_section_stops_at_same_level_header():
    text = '### A\none\n#### A.1\nnested\n### B\ntwo\n## Top\nthree'

    assert extract_section(text, '### A') == 'one\n#### A.1\nnested'
    assert extract_section(text, '### b') == 'two'
    assert extract_section(text, '### C') is None


def test_configured_schema_with_sub_sections(settings):
    validation = MappingProxyType({
        'story': {
            'required_sections': [
                {'section': '### Story', 'narrative': True},
                {'section': '### Acceptance Criteria', 'checklist': True, 'sub_sections': ['#### Functional']},
            ],
            'min_length': 10,
        },
    })
    validator = IssueValidator(dataclasses.replace(settings, validation=validation))

    result = validator.validate_body(story_body(), IssueType.STORY)

    assert kinds(result.errors) == [FindingKind.MISSING_SECTION]
    assert result.errors[0].section == '#### Functional'
    assert validator.schema_for(IssueType.STORY).min_length == 10


def test_configured_story_schema_keeps_narrative_check(settings):
    validation = MappingProxyType({
        'story': {
            'required_sections': [
                {'section': '### Story'},
                {'section': '### Acceptance Criteria', 'checklist': True},
            ],
        },
    })
    result = IssueValidator(dataclasses.replace(settings, validation=validation)).validate_body(
        '## Summary\n\nS\n\n## Description\n\n### Story\n\nanything at all\n\n'
        '### Acceptance Criteria\n\n- [ ] works\n',
        IssueType.STORY,
    )

    assert kinds(result.errors) == [FindingKind.STORY_FORMAT]
    assert result.errors[0].section == '### Story'


def test_narrative_check_is_story_only(settings):
    validation = MappingProxyType({'task': {'required_sections': ['### Story'], 'min_length': 0}})
    result = IssueValidator(dataclasses.replace(settings, validation=validation)).validate_body(
        '## Summary\n\nS\n\n## Description\n\n### Story\n\nanything\n', IssueType.TASK,
    )

    assert result.valid


# ---------- files ----------

def write_story(path, body):
    path.write_text(
        '---\nproperties:\n  key: POP-2\n  type: Story\nmapping:\n  key: key\n---\n\n' + body,
        encoding='utf-8',
    )
    return path


def test_validate_file(tmp_path):
    path = write_story(tmp_path / 'story-POP-2.md', story_body(acceptance=None))
    original = path.read_text(encoding='utf-8')

    result = validate_file(path)

    assert not result.valid
    assert result.key == 'POP-2'
    assert result.issue_type == 'Story'
    assert result.path == str(path)
    assert path.read_text(encoding='utf-8') == original
    assert result.to_dict()['errors'] == ['Missing required section: ### Acceptance Criteria']


def test_validate_malformed_file(tmp_path):
    path = tmp_path / 'story-POP-2.md'
    path.write_text('no frontmatter\n', encoding='utf-8')

    result = validate_file(path)

    assert kinds(result.errors) == [FindingKind.MALFORMED_DOCUMENT]


def test_validate_unsupported_type(tmp_path):
    path = tmp_path / 'story-POP-2.md'
    path.write_text('---\nproperties:\n  key: POP-2\n  type: Initiative\nmapping: {}\n---\n\nbody\n', encoding='utf-8')

    result = validate_file(path)

    assert kinds(result.errors) == [FindingKind.UNSUPPORTED_TYPE]
