"""Typed lookups over generic JSON documents."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

_ABSENT = object()


@dataclass(frozen=True, slots=True)
class FieldLookup:
    """Result of looking up a field: either present with a value, or absent.

    ``None`` is a legitimate JSON value (``null``), so presence is carried
    separately instead of being inferred from the value.
    """

    path: str
    present: bool
    value: Any = None

    @classmethod
    def absent(cls, path: str) -> "FieldLookup":
        return cls(path=path, present=False)


def split_path(path: str) -> List[str]:
    """Split a dotted property path into its non-empty segments."""

    return [segment for segment in path.split(".") if segment]


def lookup_field(document: Any, path: str) -> FieldLookup:
    """Resolve a dotted ``path`` against nested JSON objects.

    Examples:
        >>> lookup_field({"FPS": 30}, "FPS")
        FieldLookup(path='FPS', present=True, value=30)
        >>> lookup_field({"camera": {"FPS": 30}}, "camera.FPS").value
        30
        >>> lookup_field({"other": 1}, "FPS").present
        False
    """

    segments = split_path(path)
    if not segments:
        return FieldLookup.absent(path)

    current: Any = document
    for segment in segments:
        if not isinstance(current, Mapping):
            return FieldLookup.absent(path)
        current = current.get(segment, _ABSENT)
        if current is _ABSENT:
            return FieldLookup.absent(path)

    return FieldLookup(path=path, present=True, value=current)


def nest_value(path: str, value: Any) -> Dict[str, Any]:
    """Build the nested object whose dotted ``path`` resolves to ``value``.

    >>> nest_value("camera.FPS", 30)
    {'camera': {'FPS': 30}}
    """

    segments = split_path(path)
    if not segments:
        raise ValueError("Property path must contain at least one segment")

    document: Dict[str, Any] = {segments[-1]: value}
    for segment in reversed(segments[:-1]):
        document = {segment: document}
    return document
