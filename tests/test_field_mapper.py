import pytest

from popsync.errors import MappingError
from popsync.field_mapper import (
    DEFAULT_READONLY_FIELDS,
    MappingTable,
    ValueKind,
    classify,
    extract,
    flatten,
    lookup,
    lower,
)


# ---------- mapping table ----------

def test_mapping_table_preserves_order():
    table = MappingTable({'b': 'fields.b', 'a': 'fields.a', 'c': 'key'})
    assert list(table) == ['b', 'a', 'c']
    assert table['a'] == 'fields.a'
    assert 'c' in table and 'z' not in table


@pytest.mark.parametrize('entries', [
    {'points': ''},
    {'points': None},
    {'points': 5},
    {'points': 'fields..customfield_10006'},
    {'components': 'fields.components[]x.name'},
    {'labels': 'fields.labels[0]'},
    {1: 'fields.summary'},
    {'': 'fields.summary'},
])
def test_mapping_table_rejects_malformed_entries(entries):
    with pytest.raises(MappingError):
        MappingTable(entries)


def test_mapping_table_requires_a_mapping():
    with pytest.raises(MappingError):
        MappingTable(['fields.summary'])


def test_mapping_table_accepts_legacy_api_prefix():
    table = MappingTable({'points': 'api.fields.customfield_10006'})
    assert table['points'] == 'api.fields.customfield_10006'


@pytest.mark.parametrize('value, kind', [
    (None, ValueKind.NULL),
    ('x', ValueKind.STRING),
    (3, ValueKind.NUMBER),
    (2.5, ValueKind.NUMBER),
    (True, ValueKind.BOOLEAN),
    (['a'], ValueKind.ARRAY),
    ({'a': 1}, ValueKind.OBJECT),
    (object(), ValueKind.UNKNOWN),
])
def test_classify(value, kind):
    assert classify(value) is kind


# ---------- flatten ----------

def test_flatten_and_lower_custom_fields():
    table = MappingTable({
        'workstream': 'fields.customfield_12401.value',
        'points': 'fields.customfield_10006',
    })
    flat = flatten({'workstream': 'IaC', 'points': 5}, table)
    assert flat == {'fields.customfield_12401.value': 'IaC', 'fields.customfield_10006': 5}
    assert lower(flat) == {'customfield_12401': {'value': 'IaC'}, 'customfield_10006': 5}


def test_flatten_never_emits_readonly_fields():
    properties = {name: f"{name}-value" for name in DEFAULT_READONLY_FIELDS}
    properties['summary'] = 'Kept'
    table = MappingTable({name: f"fields.{name}" for name in properties})

    flat = flatten(properties, table)

    assert flat == {'fields.summary': 'Kept'}


def test_flatten_honours_configured_readonly_fields():
    table = MappingTable({'points': 'fields.customfield_10006', 'summary': 'fields.summary'})
    flat = flatten({'points': 3, 'summary': 'S'}, table, readonly_fields=('points',))
    assert flat == {'fields.summary': 'S'}


def test_flatten_skips_null_values():
    table = MappingTable({'points': 'fields.customfield_10006', 'labels': 'fields.labels[]'})
    assert flatten({'points': None}, table) == {}


def test_flatten_keeps_components_for_epics_only():
    table = MappingTable({'type': 'fields.issuetype.name', 'components': 'fields.components[].name'})

    epic = flatten({'type': 'Epic', 'components': ['idp-infra']}, table)
    story = flatten({'type': 'Story', 'components': ['idp-infra']}, table)

    assert epic == {'fields.issuetype.name': 'Epic', 'fields.components[].name': ['idp-infra']}
    assert story == {'fields.issuetype.name': 'Story'}


def test_flatten_follows_table_order():
    table = MappingTable({'labels': 'fields.labels[]', 'summary': 'fields.summary'})
    flat = flatten({'summary': 'S', 'labels': ['a']}, table)
    assert list(flat) == ['fields.labels[]', 'fields.summary']


# ---------- lower ----------

def test_lower_components_array():
    assert lower({'fields.components[].name': ['idp-infra']}) == {
        'components': [{'name': 'idp-infra'}],
    }


def test_lower_wraps_scalar_in_array_paths():
    assert lower({'fields.components[].name': 'idp-infra'}) == {'components': [{'name': 'idp-infra'}]}
    assert lower({'fields.labels[]': 'IaC'}) == {'labels': ['IaC']}


def test_lower_labels():
    assert lower({'fields.labels[]': ['IaC', 'workspace']}) == {'labels': ['IaC', 'workspace']}


def test_lower_named_fields_by_name():
    assert lower({'fields.issuetype.name': 'Story'}) == {'issuetype': {'name': 'Story'}}
    assert lower({'fields.status': 'Done'}) == {'status': {'name': 'Done'}}


def test_lower_literal_nesting():
    assert lower({'fields.priority.name': 'High'}) == {'priority': {'name': 'High'}}
    assert lower({'fields.parent.key': 'POP-1'}) == {'parent': {'key': 'POP-1'}}


def test_lower_strips_api_prefix_and_non_field_paths():
    wire = lower({'api.fields.customfield_10006': 3, 'key': 'POP-1'})
    assert wire == {'customfield_10006': 3}


def test_lower_merges_shared_prefixes():
    wire = lower({'fields.timetracking.originalEstimate': '1d', 'fields.timetracking.remainingEstimate': '4h'})
    assert wire == {'timetracking': {'originalEstimate': '1d', 'remainingEstimate': '4h'}}


def test_lower_rejects_array_marker_after_first_segment():
    with pytest.raises(MappingError):
        lower({'fields.fixVersions.items[].name': ['1.0']})


# ---------- extract ----------

RECORD = {
    'key': 'POP-12',
    'fields': {
        'summary': 'Provision racks',
        'issuetype': {'name': 'Story'},
        'assignee': None,
        'components': [{'name': 'idp-infra'}, {'name': 'network'}],
        'customfield_10006': 5,
    },
}


def test_extract_reads_nested_paths():
    table = MappingTable({
        'key': 'key',
        'type': 'fields.issuetype.name',
        'summary': 'fields.summary',
        'components': 'fields.components[].name',
        'points': 'fields.customfield_10006',
    })
    assert extract(RECORD, table) == {
        'key': 'POP-12',
        'type': 'Story',
        'summary': 'Provision racks',
        'components': ['idp-infra', 'network'],
        'points': 5,
    }


def test_extract_absent_array_yields_empty_list():
    failures = []
    result = extract(RECORD, MappingTable({'labels': 'fields.labels[]'}), failures)
    assert result == {'labels': []}
    assert failures == []


def test_extract_null_intermediate_is_not_a_failure():
    failures = []
    result = extract(RECORD, MappingTable({'assignee': 'fields.assignee.displayName'}), failures)
    assert result == {'assignee': None}
    assert failures == []


def test_extract_missing_path_records_failure_and_continues():
    table = MappingTable({
        'workstream': 'fields.customfield_12401.value',
        'summary': 'fields.summary',
    })
    failures = []

    result = extract(RECORD, table, failures)

    assert result == {'workstream': None, 'summary': 'Provision racks'}
    assert len(failures) == 1
    assert failures[0].property_name == 'workstream'
    assert failures[0].path == 'fields.customfield_12401.value'


def test_lookup_is_lenient():
    assert lookup(RECORD, 'fields.customfield_10000') is None
    assert lookup(RECORD, 'fields.customfield_10006') == 5


def test_flatten_lower_extract_inverse():
    table = MappingTable({
        'type': 'fields.issuetype.name',
        'summary': 'fields.summary',
        'priority': 'fields.priority.name',
        'team': 'fields.team.name',
    })
    properties = {'type': 'Story', 'summary': 'Hello', 'priority': 'High', 'team': None}

    wire = lower(flatten(properties, table))

    assert wire == {'issuetype': {'name': 'Story'}, 'summary': 'Hello', 'priority': {'name': 'High'}}
    assert extract(wire, table) == properties
