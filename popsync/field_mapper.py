#!/usr/bin/env python3
"""
Field mapping between local property bags and Jira's wire schema.

A mapping table is declared in each planning template's frontmatter:

    mapping:
      workstream: fields.customfield_12401.value
      points: fields.customfield_10006
      components: fields.components[].name
      labels: fields.labels[]

Three operations work off that table:
- flatten: property bag -> {wire_path: value}, dropping values that must not be written
- lower: {wire_path: value} -> nested Jira field object, as the REST API expects it
- extract: fetched Jira record -> property bag (the read direction)
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from popsync.errors import MappingError, MappingResolutionFailure
from popsync.issue_types import IssueType
from popsync.logger import get_logger


DEFAULT_READONLY_FIELDS: Tuple[str, ...] = (
    'status', 'assignee', 'reporter', 'created', 'updated', 'resolution',
)

GROUPING_FIELD = 'components'

_SEGMENT = re.compile(r"^[A-Za-z0-9_]+(\[\])?$")


class ValueKind(Enum):
    """Kinds of values a property bag can hold."""

    NULL = 'null'
    STRING = 'string'
    NUMBER = 'number'
    BOOLEAN = 'boolean'
    ARRAY = 'array'
    OBJECT = 'object'
    UNKNOWN = 'unknown'


def classify(value: Any) -> ValueKind:
    if value is None:
        return ValueKind.NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple, set, frozenset)):
        return ValueKind.ARRAY
    if isinstance(value, Mapping):
        return ValueKind.OBJECT
    return ValueKind.UNKNOWN


def _as_list(value: Any) -> List[Any]:
    kind = classify(value)
    if kind is ValueKind.ARRAY:
        return list(value)
    if kind is ValueKind.NULL:
        return []
    return [value]


def split_path(path: str) -> List[str]:
    """Split a wire path into segments, dropping the legacy 'api.' prefix."""
    segments = path.split('.')
    if segments and segments[0] == 'api':
        segments = segments[1:]
    return segments


class MappingTable:
    """Ordered, duplicate-free map of property name -> wire path."""

    def __init__(self, entries: Mapping[str, str]):
        if not isinstance(entries, Mapping):
            raise MappingError(f"mapping must be a table of property -> path, got {type(entries).__name__}")

        self._entries: Dict[str, str] = {}
        for name, path in entries.items():
            if not isinstance(name, str) or not name:
                raise MappingError(f"invalid property name in mapping: {name!r}")
            if name in self._entries:
                raise MappingError(f"duplicate property in mapping: {name}")
            self._entries[name] = self._check_path(name, path)

    @staticmethod
    def _check_path(name: str, path: Any) -> str:
        if not isinstance(path, str) or not path.strip():
            raise MappingError(f"mapping for '{name}' must be a non-empty path string")
        segments = split_path(path.strip())
        if not segments:
            raise MappingError(f"mapping for '{name}' has no path segments: {path!r}")
        for segment in segments:
            if not _SEGMENT.match(segment):
                raise MappingError(f"mapping for '{name}' has malformed segment {segment!r} in {path!r}")
        return path.strip()

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(self._entries.items())

    def to_dict(self) -> Dict[str, str]:
        return dict(self._entries)

    def __getitem__(self, name: str) -> str:
        return self._entries[name]

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MappingTable):
            return list(self._entries.items()) == list(other._entries.items())
        return NotImplemented

    def __repr__(self) -> str:
        return f"MappingTable({self._entries!r})"


# ---------- local -> wire ----------

def flatten(
    properties: Mapping[str, Any],
    table: MappingTable,
    readonly_fields: Tuple[str, ...] = DEFAULT_READONLY_FIELDS,
    grouping_field: str = GROUPING_FIELD,
) -> Dict[str, Any]:
    """
    Map a property bag onto wire paths.

    Args:
        properties: Local property bag (as stored under frontmatter 'properties')
        table: Mapping table of the document
        readonly_fields: Properties that may be read but never written back
        grouping_field: Attribute only carried by the grouping type (Epic)

    Returns:
        Ordered dict of wire path -> value, in mapping table order
    """
    logger = get_logger()
    issue_type = IssueType.from_name(properties.get('type'))
    result: Dict[str, Any] = {}

    for name, path in table.items():
        value = properties.get(name)
        if classify(value) is ValueKind.NULL:
            continue

        if name in readonly_fields:
            logger.debug(f"Skipping read-only field: {name}")
            continue

        if name == grouping_field and (issue_type is None or not issue_type.is_grouping):
            logger.debug(
                f"Skipping {name} for non-grouping issue type",
                context={'type': properties.get('type')}
            )
            continue

        result[path] = value

    return result


def lower(flat: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Convert {wire_path: value} into Jira's nested field structure.

    Examples:
        fields.customfield_12401.value -> {customfield_12401: {value: "IaC"}}
        fields.customfield_10006 -> {customfield_10006: 5}
        fields.components[].name -> {components: [{name: "idp-infra"}]}
        fields.labels[] -> {labels: ["IaC", "workspace"]}
        fields.issuetype.name -> {issuetype: {name: "Story"}}

    The top-level 'fields' wrapper is stripped from the result.
    """
    wire: Dict[str, Any] = {}
    for path, value in flat.items():
        _assign(wire, path, value)

    fields = wire.get('fields')
    if isinstance(fields, dict):
        dropped = [key for key in wire if key != 'fields']
        if dropped:
            get_logger().debug("Dropping non-field wire paths", context={'paths': dropped})
        return fields
    return wire


def _assign(wire: Dict[str, Any], path: str, value: Any) -> None:
    segments = split_path(path)
    if segments[0] == 'fields' and len(segments) > 1:
        container = wire.setdefault('fields', {})
        segments = segments[1:]
    else:
        container = wire

    if not isinstance(container, dict):
        raise MappingError(f"conflicting wire paths at 'fields' for {path}")

    head = segments[0]
    name = head[:-2] if head.endswith('[]') else head

    # Fixed shapes, by field name regardless of the path text
    if name == 'labels':
        container['labels'] = _as_list(value)
        return
    if name == 'issuetype':
        container['issuetype'] = value if isinstance(value, Mapping) else {'name': value}
        return
    if name == 'status':
        container['status'] = value if isinstance(value, Mapping) else {'name': value}
        return

    if name.startswith('customfield_'):
        if len(segments) > 1 and segments[-1] == 'value' and not head.endswith('[]'):
            container[name] = {'value': value}
            return
        if len(segments) == 1 and not head.endswith('[]'):
            container[name] = value
            return

    if head.endswith('[]'):
        rest = segments[1:]
        container[name] = [
            item if isinstance(item, Mapping) or not rest else _nest(rest, item)
            for item in _as_list(value)
        ]
        return

    _set_nested(container, segments, value, path)


def _nest(segments: List[str], value: Any) -> Dict[str, Any]:
    node: Any = value
    for segment in reversed(segments):
        node = {segment: node}
    return node


def _set_nested(container: Dict[str, Any], segments: List[str], value: Any, path: str) -> None:
    current = container
    for segment in segments[:-1]:
        if segment.endswith('[]'):
            raise MappingError(f"array marker must be on the first field segment: {path}")
        nxt = current.setdefault(segment, {})
        if not isinstance(nxt, dict):
            raise MappingError(f"conflicting wire paths at '{segment}' for {path}")
        current = nxt
    current[segments[-1]] = value


# ---------- wire -> local ----------

class _Missing(Exception):
    def __init__(self, segment: str):
        self.segment = segment
        super().__init__(segment)


def extract(
    record: Mapping[str, Any],
    table: MappingTable,
    failures: Optional[List[MappingResolutionFailure]] = None,
) -> Dict[str, Any]:
    """
    Read a property bag out of a fetched Jira record.

    Unresolvable paths produce None for that property and a warning; they
    never abort extraction of the remaining properties.

    Args:
        record: Raw Jira record ({key, fields: {...}}) or a bare field object
        table: Mapping table
        failures: Optional list collecting MappingResolutionFailure entries

    Returns:
        Property bag in mapping table order
    """
    logger = get_logger()
    result: Dict[str, Any] = {}

    for name, path in table.items():
        segments = split_path(path)
        root: Any = record
        if segments[0] == 'fields' and isinstance(record, Mapping) and 'fields' not in record:
            # Already a field object, e.g. the output of lower()
            segments = segments[1:]

        try:
            result[name] = _resolve(root, segments)
        except _Missing as missing:
            failure = MappingResolutionFailure(name, path, f"missing '{missing.segment}'")
            logger.warning(str(failure), context={'property': name, 'path': path})
            if failures is not None:
                failures.append(failure)
            result[name] = None

    return result


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """Resolve a single optional wire path; None when absent, without warning."""
    segments = split_path(path)
    if segments[0] == 'fields' and isinstance(record, Mapping) and 'fields' not in record:
        segments = segments[1:]
    return _resolve_lenient(record, segments)


def _resolve(current: Any, segments: List[str]) -> Any:
    for index, segment in enumerate(segments):
        if current is None:
            return None
        if not isinstance(current, Mapping):
            raise _Missing(segment)

        if segment.endswith('[]'):
            items = current.get(segment[:-2])
            if not isinstance(items, list):
                return []
            rest = segments[index + 1:]
            return [_resolve_lenient(item, rest) for item in items]

        if segment not in current:
            raise _Missing(segment)
        current = current[segment]

    return current


def _resolve_lenient(item: Any, segments: List[str]) -> Any:
    if not segments:
        return item
    try:
        return _resolve(item, segments)
    except _Missing:
        return None
