"""
Best-effort resolution of a local repository checkout for an alert.

Order: explicit service map, then ``<repo_root>/<candidate>/.git`` probing,
then guessing a repo name from the monitor name.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

logger = logging.getLogger(__name__)

NAME_SUFFIX_PATTERN = re.compile(
    r"\b([a-z][a-z0-9-]*(?:core|api|worker|service|dashboard|web|agent))\b", re.IGNORECASE
)
NAME_STOP_WORDS = {"prd", "prod", "stg", "dev", "test", "p1", "p2", "p3", "p4", "p5"}


def parse_service_repo_map(value: str | dict[str, Any] | None) -> dict[str, str]:
    """Normalize a service -> path mapping (JSON string or dict) with lowercased keys."""
    if not value:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("SERVICE_REPO_MAP is not valid JSON; ignoring it.")
            return {}
    if not isinstance(value, dict):
        return {}
    return {str(key).lower(): path for key, path in value.items() if isinstance(path, str)}


def _is_git_checkout(path: str) -> bool:
    return os.path.exists(os.path.join(path, ".git"))


def find_repo_path(
    service: str | None,
    repo_hint: str | None,
    source_repo: str | None,
    repo_root: str,
    repo_map: dict[str, str],
) -> str | None:
    candidates = [c for c in (service, source_repo, repo_hint) if c]
    for candidate in candidates:
        mapped = repo_map.get(candidate.lower())
        if mapped and os.path.exists(mapped):
            return mapped
    for candidate in candidates:
        direct = os.path.join(repo_root, candidate)
        if _is_git_checkout(direct):
            return direct
        lower = os.path.join(repo_root, candidate.lower())
        if _is_git_checkout(lower):
            return lower
    return None


def extract_repo_name_from_monitor_name(monitor_name: str | None) -> str | None:
    if not monitor_name:
        return None
    match = NAME_SUFFIX_PATTERN.search(monitor_name)
    if match:
        return match.group(1).lower()
    words = [
        word
        for word in re.split(r"[\s\-\[\]]+", monitor_name.lower())
        if len(word) > 2 and word not in NAME_STOP_WORDS
    ]
    return words[0] if words else None


def guess_github_repo_path(repo_name: str | None, repo_root: str, default_org: str = "") -> str | None:
    if not repo_name:
        return None
    candidates = [os.path.join(repo_root, repo_name)]
    if default_org:
        candidates += [
            os.path.join(repo_root, f"{default_org}-{repo_name}"),
            os.path.join(repo_root, default_org, repo_name),
        ]
    candidates += [
        os.path.join(repo_root, repo_name.lower()),
        os.path.join(repo_root, repo_name.replace("-", "")),
    ]
    for candidate in candidates:
        if _is_git_checkout(candidate):
            return candidate
    return None


def resolve_repo_path(
    *,
    service: str | None,
    repo_hint: str | None,
    source_repo: str | None,
    monitor_name: str | None,
    repo_root: str,
    repo_map: dict[str, str],
    default_org: str = "",
) -> str | None:
    repo_path = find_repo_path(service, repo_hint, source_repo, repo_root, repo_map)
    if repo_path or not monitor_name:
        return repo_path
    guessed = extract_repo_name_from_monitor_name(monitor_name)
    return guess_github_repo_path(guessed, repo_root, default_org) if guessed else None
