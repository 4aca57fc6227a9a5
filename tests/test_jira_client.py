import asyncio

import pytest
import requests

from popsync.errors import RemoteWriteFailure, TrackerError
from popsync.jira_client import JiraClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('no JSON body')
        return self._payload


class FakeSession:
    """Replays queued responses and records each request."""

    def __init__(self, *responses):
        self.headers = {}
        self.auth = None
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(*responses, **kwargs):
    session = FakeSession(*responses)
    client = JiraClient('https://jira.example.com/', 'POP', token='secret', session=session, **kwargs)
    return client, session


def test_requires_base_url():
    with pytest.raises(TrackerError, match='base URL'):
        JiraClient('', 'POP', token='secret')


def test_requires_token():
    with pytest.raises(TrackerError, match='authentication'):
        JiraClient('https://jira.example.com', 'POP', session=FakeSession())


def test_token_from_environment(monkeypatch):
    monkeypatch.setenv('JIRA_PERSONAL_TOKEN', 'from-env')
    session = FakeSession()
    JiraClient('https://jira.example.com', 'POP', session=session)
    assert session.headers['Authorization'] == 'Bearer from-env'


def test_bearer_and_basic_auth():
    _, session = make_client()
    assert session.headers['Authorization'] == 'Bearer secret'
    assert session.auth is None

    _, session = make_client(email='dev@example.com')
    assert session.auth == ('dev@example.com', 'secret')
    assert 'Authorization' not in session.headers


def test_fetch_entity():
    client, session = make_client(FakeResponse(payload={'key': 'POP-1', 'fields': {}}))

    record = asyncio.run(client.fetch_entity('POP-1'))

    assert record['key'] == 'POP-1'
    method, url, _ = session.calls[0]
    assert (method, url) == ('GET', 'https://jira.example.com/rest/api/2/issue/POP-1')


def test_fetch_entity_not_found():
    client, _ = make_client(FakeResponse(status_code=404, payload={'errorMessages': ['Issue does not exist']}))
    assert asyncio.run(client.fetch_entity('POP-404')) is None


def test_fetch_entity_server_error():
    client, _ = make_client(FakeResponse(status_code=500, text='boom'))
    with pytest.raises(TrackerError, match='HTTP 500: boom'):
        asyncio.run(client.fetch_entity('POP-1'))


def test_network_error_becomes_tracker_error():
    client, _ = make_client(requests.ConnectionError('refused'))
    with pytest.raises(TrackerError, match='refused'):
        asyncio.run(client.fetch_entity('POP-1'))


def test_search_paginates():
    client, session = make_client(
        FakeResponse(payload={'issues': [{'key': 'POP-1'}, {'key': 'POP-2'}], 'total': 3}),
        FakeResponse(payload={'issues': [{'key': 'POP-3'}], 'total': 3}),
    )

    records = asyncio.run(client.fetch_entities_by_component_and_type('idp-infra', 'Epic'))

    assert [r['key'] for r in records] == ['POP-1', 'POP-2', 'POP-3']
    first, second = session.calls[0][2]['params'], session.calls[1][2]['params']
    assert (first['startAt'], second['startAt']) == (0, 2)
    assert 'component = "idp-infra"' in first['jql']
    assert 'labels NOT IN ("workspace")' in first['jql']


def test_children_fall_back_to_epic_link():
    client, session = make_client(
        FakeResponse(status_code=400, payload={'errorMessages': ['Field parent not supported']}),
        FakeResponse(payload={'issues': [{'key': 'POP-2'}], 'total': 1}),
    )

    children = asyncio.run(client.fetch_children('POP-1'))

    assert [c['key'] for c in children] == ['POP-2']
    assert '"Epic Link" = POP-1' in session.calls[1][2]['params']['jql']


def test_children_none_found():
    empty = {'issues': [], 'total': 0}
    client, _ = make_client(*(FakeResponse(payload=empty) for _ in range(3)))
    assert asyncio.run(client.fetch_children('POP-1')) == []


def test_update_entity():
    client, session = make_client(FakeResponse(status_code=204))

    asyncio.run(client.update_entity('POP-2', {'summary': 'New'}))

    method, url, kwargs = session.calls[0]
    assert (method, url) == ('PUT', 'https://jira.example.com/rest/api/2/issue/POP-2')
    assert kwargs['json'] == {'fields': {'summary': 'New'}}


def test_update_entity_failure():
    client, _ = make_client(FakeResponse(status_code=400, payload={'errors': {'summary': 'too long'}}))

    with pytest.raises(RemoteWriteFailure) as exc_info:
        asyncio.run(client.update_entity('POP-2', {'summary': 'x' * 300}))

    assert exc_info.value.key == 'POP-2'
    assert exc_info.value.status_code == 400
    assert 'summary: too long' in str(exc_info.value)


def test_create_entity_sets_project():
    client, session = make_client(FakeResponse(status_code=201, payload={'key': 'POP-77'}))

    key = asyncio.run(client.create_entity({'summary': 'New story', 'issuetype': {'name': 'Story'}}))

    assert key == 'POP-77'
    assert session.calls[0][2]['json']['fields']['project'] == {'key': 'POP'}
