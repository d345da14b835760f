"""Helpers for reading JSON-lines output from agent CLIs."""

import json
from collections.abc import Iterator
from typing import Any


def iter_json_lines(output: str) -> Iterator[dict[str, Any]]:
    """Yield each line that parses as a JSON object; other lines are ignored."""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict):
            yield obj


def lookup(obj: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts, None when any hop is missing."""
    for key in path.split("."):
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def first_value(obj: dict[str, Any], paths: list[str]) -> str | None:
    """First truthy string among ``paths``."""
    for path in paths:
        value = lookup(obj, path)
        if value and isinstance(value, str):
            return value
    return None


def find_session_id(output: str, paths: list[str]) -> str | None:
    for obj in iter_json_lines(output):
        session_id = first_value(obj, paths)
        if session_id:
            return session_id
    return None
