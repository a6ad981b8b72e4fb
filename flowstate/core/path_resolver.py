"""Resolution of data paths such as ``serp-1.data.processed.items[*].url``.

A path is a dot-separated list of segments. The first segment names a node in
the output store; the rest walk into that node's response envelope. A segment
may carry bracket suffixes: ``[N]`` indexes into an array and ``[*]`` expands
over it, projecting the remaining path onto every element.
"""

import json
import re
from typing import Any, Dict, List, Literal, Mapping, NamedTuple, Optional
from pydantic import BaseModel, Field

from .exceptions import IndexOutOfRangeError, PathNotFoundError, UnknownTransformError
from .logging import get_logger

logger = get_logger(__name__)

DISPLAY_MAX_DEPTH = 4
DISPLAY_MAX_INDEXED_ITEMS = 5

_SEGMENT_RE = re.compile(r'^(?P<key>[^\[\]]*)(?P<brackets>(?:\[(?:\*|\d+)\])*)$')
_BRACKET_RE = re.compile(r'\[(\*|\d+)\]')

_MISSING = object()


class PathToken(NamedTuple):
    """One step of a parsed path."""
    kind: str  # "key", "index" or "wildcard"
    value: Any
    segment: str


def parse_path(path: str) -> List[PathToken]:
    """Split a path into key, index and wildcard tokens.

    Raises:
        PathNotFoundError: If the path is empty or a segment is malformed
    """
    if not path or not path.strip():
        raise PathNotFoundError("Path cannot be empty", path=path)

    tokens: List[PathToken] = []
    for segment in path.strip().split('.'):
        match = _SEGMENT_RE.match(segment)
        if not match or (not match.group('key') and not match.group('brackets')):
            raise PathNotFoundError(f"Malformed path segment '{segment}' in '{path}'", path=path, segment=segment)

        if match.group('key'):
            tokens.append(PathToken("key", match.group('key'), segment))
        for bracket in _BRACKET_RE.findall(match.group('brackets')):
            if bracket == '*':
                tokens.append(PathToken("wildcard", None, segment))
            else:
                tokens.append(PathToken("index", int(bracket), segment))
    return tokens


def _as_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _walk(value: Any, tokens: List[PathToken], path: str) -> Any:
    for position, token in enumerate(tokens):
        value = _as_plain(value)

        if token.kind == "key":
            if not isinstance(value, Mapping) or token.value not in value:
                raise PathNotFoundError(
                    f"Key '{token.value}' not found while resolving '{path}'",
                    path=path, segment=token.segment
                )
            value = value[token.value]

        elif token.kind == "index":
            if not isinstance(value, list):
                raise PathNotFoundError(
                    f"Segment '{token.segment}' does not refer to an array in '{path}'",
                    path=path, segment=token.segment
                )
            if token.value >= len(value):
                raise IndexOutOfRangeError(
                    f"Index {token.value} out of range (length {len(value)}) in '{path}'",
                    path=path, segment=token.segment
                )
            value = value[token.value]

        else:
            if not isinstance(value, list):
                raise PathNotFoundError(
                    f"Segment '{token.segment}' does not refer to an array in '{path}'",
                    path=path, segment=token.segment
                )
            remaining = tokens[position + 1:]
            projected = []
            for element in value:
                try:
                    item = _walk(element, remaining, path)
                except (PathNotFoundError, IndexOutOfRangeError):
                    # Elements lacking the remaining path are left out of the projection
                    continue
                if item is not None:
                    projected.append(item)
            return projected

    return value


def resolve(path: str, store: Mapping[str, Any], fallback: Any = _MISSING) -> Any:
    """Resolve ``path`` against a store of node outputs keyed by node id.

    Args:
        path: Data path whose first segment is a node id
        store: Mapping of node id to that node's response envelope
        fallback: Value returned instead of raising when the path is missing

    Returns:
        The addressed value. Leaves are returned unchanged; wildcard segments
        produce a list with one entry per array element.

    Raises:
        PathNotFoundError: If a key is absent or a segment is not an array
        IndexOutOfRangeError: If a fixed index is past the end of the array
    """
    try:
        return _walk(store, parse_path(path), path)
    except (PathNotFoundError, IndexOutOfRangeError):
        if fallback is not _MISSING:
            logger.debug(f"Path '{path}' unresolved, using fallback")
            return fallback
        raise


def display_item(item: Any) -> str:
    """Short human-readable form of one list entry."""
    if isinstance(item, dict):
        for key in ("title", "name", "url", "domain", "keyword"):
            if item.get(key):
                return str(item[key])
        return json.dumps(item, default=str)
    return "" if item is None else str(item)


def _extract_urls(value: Any) -> List[str]:
    items = value if isinstance(value, list) else [value]
    urls = []
    for item in items:
        if isinstance(item, dict):
            url = item.get("url") or item.get("link")
            if url:
                urls.append(str(url))
        elif isinstance(item, str) and item.startswith(("http://", "https://")):
            urls.append(item)
    return urls


TRANSFORMS = {
    "array_to_string": lambda value: ", ".join(display_item(item) for item in value) if isinstance(value, list) else display_item(value),
    "extract_urls": _extract_urls,
    "first_item": lambda value: (value[0] if value else None) if isinstance(value, list) else value,
    "count": lambda value: len(value) if isinstance(value, (list, dict)) else (0 if value is None else 1),
    "join_with_comma": lambda value: ",".join(display_item(item) for item in value) if isinstance(value, list) else display_item(value),
}


def apply_transform(value: Any, transform: str) -> Any:
    """Apply a named data-mapping transform.

    Raises:
        UnknownTransformError: If no transform has that name
    """
    try:
        func = TRANSFORMS[transform]
    except KeyError:
        raise UnknownTransformError(f"Unknown transform '{transform}'", segment=transform)
    return func(value)


class DataMapping(BaseModel):
    """Binding of a node input to a path inside another node's output."""
    source_node_id: str = Field(..., description="Node whose output is read")
    json_path: str = Field(..., description="Path inside the node's envelope, e.g. data.processed.items[*].url")
    transform: Optional[Literal["array_to_string", "extract_urls", "first_item", "count", "join_with_comma"]] = None
    fallback: Optional[Any] = Field(None, description="Value used when the path does not resolve")

    @property
    def full_path(self) -> str:
        return f"{self.source_node_id}.{self.json_path}" if self.json_path else self.source_node_id


def resolve_mapping(mapping: DataMapping, store: Mapping[str, Any]) -> Any:
    """Resolve a data mapping and apply its transform."""
    if mapping.fallback is not None:
        value = resolve(mapping.full_path, store, fallback=mapping.fallback)
    else:
        value = resolve(mapping.full_path, store)
    if mapping.transform:
        value = apply_transform(value, mapping.transform)
    return value


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def describe_structure(
    data: Any,
    prefix: str = "",
    max_depth: int = DISPLAY_MAX_DEPTH,
    _depth: int = 0
) -> List[Dict[str, Any]]:
    """List the addressable paths of ``data`` for the available-data browser.

    Nesting deeper than ``max_depth`` is collapsed into a single entry so that
    pathological or very deep payloads stay cheap to render. Arrays are listed
    with their ``[*]`` projection and the first few indexed entries; arrays and
    collapsed objects are previewed as JSON strings.
    """
    data = _as_plain(data)
    entries: List[Dict[str, Any]] = []

    if isinstance(data, dict):
        if _depth >= max_depth:
            return [{"path": prefix, "type": "object", "preview": json.dumps(data, default=str)}]
        for key, value in data.items():
            child = f"{prefix}.{key}" if prefix else str(key)
            entries.extend(describe_structure(value, child, max_depth, _depth + 1))
        return entries

    if isinstance(data, list):
        entries.append({"path": prefix, "type": "array", "preview": json.dumps(data, default=str), "length": len(data)})
        if _depth >= max_depth or not data:
            return entries
        if isinstance(data[0], (dict, list)):
            entries.extend(describe_structure(data[0], f"{prefix}[*]", max_depth, _depth + 1))
        for index, item in enumerate(data[:DISPLAY_MAX_INDEXED_ITEMS]):
            entries.extend(describe_structure(item, f"{prefix}[{index}]", max_depth, _depth + 1))
        return entries

    return [{"path": prefix, "type": _type_name(data), "preview": data}]

