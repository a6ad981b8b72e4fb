"""Substitution of ``{{path|format}}`` tokens in node configuration values."""

import json
import re
from typing import Any, List, Mapping, Optional

from .exceptions import DataMappingError, UnknownTransformError
from .logging import get_logger
from .path_resolver import TRANSFORMS, apply_transform, display_item, resolve

logger = get_logger(__name__)

TOKEN_RE = re.compile(r'\{\{\s*([^{}|]+?)\s*(?:\|\s*([^{}]+?)\s*)?\}\}')
_RANGE_RE = re.compile(r'^range:(\d+)-(\d+)$')

FORMATS = ("list", "json", "count", "first", "last", "range:A-B")


def find_references(text: str) -> List[str]:
    """Return the paths referenced by the tokens in ``text``."""
    if not isinstance(text, str):
        return []
    return [match.group(1) for match in TOKEN_RE.finditer(text)]


def contains_template(value: Any) -> bool:
    return isinstance(value, str) and TOKEN_RE.search(value) is not None


def to_text(value: Any) -> str:
    """Render a resolved value for embedding in surrounding text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ", ".join(display_item(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)


def apply_format(value: Any, fmt: str) -> Any:
    """Apply an interpolation format (or a data-mapping transform) to a value.

    Raises:
        UnknownTransformError: If ``fmt`` is neither a format nor a transform
    """
    name = fmt.strip()
    lowered = name.lower()

    if lowered == "list":
        return to_text(value)
    if lowered == "json":
        return json.dumps(value, indent=2, default=str)
    if lowered == "count":
        return str(len(value)) if isinstance(value, list) else "1"
    if lowered == "first":
        return to_text(value[0] if isinstance(value, list) and value else value)
    if lowered == "last":
        return to_text(value[-1] if isinstance(value, list) and value else value)

    range_match = _RANGE_RE.match(lowered)
    if range_match:
        start, end = int(range_match.group(1)), int(range_match.group(2))
        if not isinstance(value, list):
            return to_text(value)
        return to_text(value[start:end + 1])

    if name in TRANSFORMS:
        return apply_transform(value, name)

    raise UnknownTransformError(f"Unknown format '{fmt}'", segment=fmt)


def _evaluate(path: str, fmt: Optional[str], store: Mapping[str, Any]) -> Any:
    value = resolve(path, store)
    if fmt:
        value = apply_format(value, fmt)
    return value


def interpolate(text: str, store: Mapping[str, Any], strict: bool = False) -> Any:
    """Replace every token in ``text`` with its resolved value.

    A string consisting of exactly one token evaluates to the raw resolved
    value (a list stays a list, a number stays a number). Otherwise each token
    is rendered as text in place.

    Args:
        text: Value possibly containing ``{{path}}`` or ``{{path|format}}`` tokens
        store: Node outputs keyed by node id
        strict: Raise on unresolved tokens instead of leaving them untouched

    Raises:
        DataMappingError: In strict mode, when a token cannot be resolved
    """
    if not isinstance(text, str) or "{{" not in text:
        return text

    whole = TOKEN_RE.fullmatch(text.strip())
    if whole:
        try:
            return _evaluate(whole.group(1), whole.group(2), store)
        except DataMappingError:
            if strict:
                raise
            logger.debug(f"Leaving unresolved token {text.strip()}")
            return text

    def substitute(match: re.Match) -> str:
        try:
            return to_text(_evaluate(match.group(1), match.group(2), store))
        except DataMappingError:
            if strict:
                raise
            logger.debug(f"Leaving unresolved token {match.group(0)}")
            return match.group(0)

    return TOKEN_RE.sub(substitute, text)


def interpolate_value(value: Any, store: Mapping[str, Any], strict: bool = False) -> Any:
    """Interpolate strings nested anywhere inside dicts and lists."""
    if isinstance(value, str):
        return interpolate(value, store, strict)
    if isinstance(value, dict):
        return {key: interpolate_value(item, store, strict) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_value(item, store, strict) for item in value]
    return value
