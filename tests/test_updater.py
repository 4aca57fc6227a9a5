import asyncio

import pytest

from popsync.errors import FilesystemConflict, MalformedDocument, RemoteWriteFailure
from popsync.frontmatter import content_hash, read_document, serialize, write_document
from popsync.renderer import Entity, render_document
from popsync.updater import IssueUpdater


SYNCED_AT = '2026-01-05T08:00:00+00:00'


@pytest.fixture
def epic_dir(settings, templates, make_issue):
    directory = settings.mirror_root / 'core' / 'epic-platform'
    directory.mkdir(parents=True)
    records = [
        make_issue('POP-1', 'Epic', 'Platform', components=['core'], description='Platform work'),
        make_issue(
            'POP-2', 'Story', 'Login page', parent='POP-1', description='Users log in',
            labels=['IaC'], customfield_10006=3, customfield_12401={'value': 'IaC'},
        ),
        make_issue('POP-3', 'Task', 'Cert rotation', parent='POP-1'),
    ]
    for record in records:
        entity = Entity.from_snapshot(record)
        mapping = templates.mapping_for(entity.issue_type)
        write_document(directory / entity.file_name, render_document(entity, mapping, synced_at=SYNCED_AT))
    return directory


@pytest.fixture
def updater(settings, tracker):
    return IssueUpdater(settings, tracker)


def test_update_story(updater, tracker, epic_dir):
    wire = asyncio.run(updater.update_issue('POP-2'))

    expected = {
        'labels': ['IaC'],
        'customfield_12401': {'value': 'IaC'},
        'customfield_10006': 3,
        'customfield_10000': 'POP-1',
        'summary': 'Login page',
        'description': 'Users log in',
    }
    assert wire == expected
    assert tracker.updates == [('POP-2', expected)]


def test_update_never_sends_readonly_or_create_only_fields(updater, tracker, epic_dir):
    wire = asyncio.run(updater.update_issue('POP-2'))

    for name in ('status', 'assignee', 'project', 'issuetype', 'components'):
        assert name not in wire


def test_update_epic_sends_components(updater, tracker, epic_dir):
    wire = asyncio.run(updater.update_issue('POP-1'))

    assert wire['components'] == [{'name': 'core'}]
    assert wire['summary'] == 'Platform'
    assert 'customfield_10000' not in wire


def test_placeholder_description_is_not_sent(updater, epic_dir):
    wire = asyncio.run(updater.update_issue('POP-3'))

    assert 'description' not in wire
    assert wire['customfield_10000'] == 'POP-1'


def test_local_edits_are_pushed(updater, tracker, epic_dir):
    path = epic_dir / 'story-POP-2.md'
    path.write_text(
        path.read_text(encoding='utf-8').replace('Users log in', 'Users log in with SSO'),
        encoding='utf-8',
    )

    asyncio.run(updater.update_issue('POP-2'))

    assert tracker.updates[0][1]['description'] == 'Users log in with SSO'


def test_update_records_sync(updater, epic_dir):
    asyncio.run(updater.update_issue('POP-2'))

    document = read_document(epic_dir / 'story-POP-2.md')
    assert document.sync['last_sync'] != SYNCED_AT
    assert document.sync['local_hash'] == content_hash(document)


def test_rejected_update_leaves_document_untouched(updater, tracker, epic_dir):
    path = epic_dir / 'story-POP-2.md'
    before = path.read_text(encoding='utf-8')
    tracker.fail_updates.add('POP-2')

    with pytest.raises(RemoteWriteFailure):
        asyncio.run(updater.update_issue('POP-2'))

    assert path.read_text(encoding='utf-8') == before


def test_missing_document(updater, epic_dir):
    with pytest.raises(FilesystemConflict):
        asyncio.run(updater.update_issue('POP-404'))


def test_document_key_must_match_file(updater, epic_dir):
    document = read_document(epic_dir / 'story-POP-2.md')
    (epic_dir / 'story-POP-5.md').write_text(serialize(document), encoding='utf-8')

    with pytest.raises(MalformedDocument):
        asyncio.run(updater.update_issue('POP-5'))


def test_dry_run(settings, tracker, epic_dir):
    path = epic_dir / 'story-POP-2.md'
    before = path.read_text(encoding='utf-8')
    updater = IssueUpdater(settings, tracker, dry_run=True)

    wire = asyncio.run(updater.update_issue('POP-2'))

    assert wire['summary'] == 'Login page'
    assert tracker.updates == []
    assert path.read_text(encoding='utf-8') == before


def test_update_with_children(updater, tracker, epic_dir):
    summary = asyncio.run(updater.update_with_children('POP-1'))

    assert not summary.failed
    assert summary.updated == ['POP-1', 'POP-2', 'POP-3']
    assert [key for key, _ in tracker.updates] == ['POP-1', 'POP-2', 'POP-3']


def test_child_failures_are_collected(updater, tracker, epic_dir):
    tracker.fail_updates.add('POP-2')

    summary = asyncio.run(updater.update_with_children('POP-1'))

    assert summary.failed
    assert summary.updated == ['POP-1', 'POP-3']
    assert 'POP-2' in summary.failures
    assert read_document(epic_dir / 'story-POP-2.md').sync['last_sync'] == SYNCED_AT


def test_epic_failure_propagates(updater, tracker, epic_dir):
    tracker.fail_updates.add('POP-1')

    with pytest.raises(RemoteWriteFailure):
        asyncio.run(updater.update_with_children('POP-1'))

    assert tracker.updates == []


def test_child_keys_of_non_epic(updater, epic_dir):
    assert updater.child_keys('POP-2') == []
    assert updater.child_keys('POP-1') == ['POP-2', 'POP-3']
