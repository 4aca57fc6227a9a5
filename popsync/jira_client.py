#!/usr/bin/env python3
"""
Jira REST (v2) client implementing the TrackerClient capability.

Blocking HTTP calls run in a worker thread so callers can await them.
No retry policy: a request either returns or raises.
"""

import asyncio
import os
import time
from typing import Any, Dict, List, Optional

import requests

from popsync.errors import RemoteWriteFailure, TrackerError
from popsync.logger import get_logger


EXCLUDED_LABEL = 'workspace'
PAGE_SIZE = 100


class JiraClient:
    """Thin Jira REST client returning raw issue records."""

    def __init__(
        self,
        base_url: str,
        project_key: str,
        token: Optional[str] = None,
        email: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Jira base URL (e.g. https://jira.example.com)
            project_key: Project all queries are scoped to
            token: Personal access token (default: $JIRA_PERSONAL_TOKEN, then $JIRA_API_TOKEN)
            email: Account email; when set, basic auth is used with the token
            timeout: Request timeout in seconds
        """
        if not base_url:
            raise TrackerError("Jira base URL is not configured (jira.base_url or JIRA_BASE_URL)")

        self.api_url = base_url.rstrip('/') + '/rest/api/2'
        self.project_key = project_key
        self.timeout = timeout
        self.logger = get_logger()

        token = token or os.getenv('JIRA_PERSONAL_TOKEN') or os.getenv('JIRA_API_TOKEN')
        email = email or os.getenv('JIRA_EMAIL')
        if not token:
            raise TrackerError(
                "Jira authentication not configured.\n\n"
                "Set JIRA_PERSONAL_TOKEN (bearer), or JIRA_EMAIL and JIRA_API_TOKEN (basic)."
            )

        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json', 'Content-Type': 'application/json'})
        if email:
            self.session.auth = (email, token)
        else:
            self.session.headers['Authorization'] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self.api_url + path
        start = time.time()
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TrackerError(f"Jira request failed: {method} {path}: {e}")

        self.logger.log_http_request(method, url, response.status_code, time.time() - start)
        return response

    @staticmethod
    def _error_text(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text.strip()
        messages = list(data.get('errorMessages') or [])
        messages.extend(f"{k}: {v}" for k, v in (data.get('errors') or {}).items())
        return '; '.join(messages) or response.text.strip()

    def _get_issue(self, key: str) -> Optional[Dict[str, Any]]:
        response = self._request('GET', f'/issue/{key}', params={'expand': 'renderedFields'})
        if response.status_code == 404:
            return None
        if not response.ok:
            raise TrackerError(f"Failed to fetch {key}: HTTP {response.status_code}: {self._error_text(response)}")
        return response.json()

    def _search(self, jql: str) -> List[Dict[str, Any]]:
        issues: List[Dict[str, Any]] = []
        start_at = 0
        while True:
            response = self._request('GET', '/search', params={
                'jql': jql,
                'startAt': start_at,
                'maxResults': PAGE_SIZE,
                'fields': '*all',
            })
            if not response.ok:
                raise TrackerError(f"Search failed ({jql}): HTTP {response.status_code}: {self._error_text(response)}")
            data = response.json()
            page = data.get('issues') or []
            issues.extend(page)
            start_at += len(page)
            if not page or start_at >= int(data.get('total', 0)):
                return issues

    def _children(self, parent_key: str) -> List[Dict[str, Any]]:
        # Parent field first, then the epic link variants
        clauses = [f'parent = {parent_key}', f'"Epic Link" = {parent_key}', f'cf[10000] = {parent_key}']
        for clause in clauses:
            jql = f'project = {self.project_key} AND {clause} AND labels NOT IN ("{EXCLUDED_LABEL}")'
            try:
                issues = self._search(jql)
            except TrackerError as e:
                self.logger.debug(f"Child lookup via '{clause}' failed", context={'error': str(e)})
                continue
            if issues:
                self.logger.info(f"Found {len(issues)} children for {parent_key}", context={'clause': clause})
                return issues

        self.logger.warning(f"No children found for {parent_key} using any known parent field")
        return []

    def _by_component_and_type(self, component: str, issue_type: str) -> List[Dict[str, Any]]:
        jql = (
            f'project = {self.project_key} AND component = "{component}" '
            f'AND issuetype = "{issue_type}" AND labels NOT IN ("{EXCLUDED_LABEL}")'
        )
        return self._search(jql)

    def _update(self, key: str, wire_fields: Dict[str, Any]) -> None:
        response = self._request('PUT', f'/issue/{key}', json={'fields': wire_fields})
        if not response.ok:
            raise RemoteWriteFailure(
                f"Failed to update {key}: HTTP {response.status_code}: {self._error_text(response)}",
                key=key,
                status_code=response.status_code,
            )

    def _create(self, wire_fields: Dict[str, Any]) -> str:
        fields = dict(wire_fields)
        fields.setdefault('project', {'key': self.project_key})
        response = self._request('POST', '/issue', json={'fields': fields})
        if not response.ok:
            raise RemoteWriteFailure(
                f"Failed to create issue: HTTP {response.status_code}: {self._error_text(response)}",
                status_code=response.status_code,
            )
        return response.json()['key']

    async def fetch_entity(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_issue, key)

    async def fetch_children(self, parent_key: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._children, parent_key)

    async def fetch_entities_by_component_and_type(self, component: str, issue_type: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._by_component_and_type, component, issue_type)

    async def update_entity(self, key: str, wire_fields: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._update, key, wire_fields)

    async def create_entity(self, wire_fields: Dict[str, Any]) -> str:
        return await asyncio.to_thread(self._create, wire_fields)
