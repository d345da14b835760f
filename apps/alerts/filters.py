"""
Alert filtering and field extraction helpers for monitoring payloads.

All helpers are pure functions over strings and tag lists so they can be
shared by alert discovery and the reprocess-last-error lookup.
"""

from __future__ import annotations

import re
from typing import Any

DEFAULT_ALERT_STATES = ["alert", "warn", "no_data"]

ENV_TOKENS = {"prd", "prod", "production", "stg", "stage", "staging", "dev", "test", "qa"}


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def parse_alert_states(value: str | None = None) -> list[str]:
    """Parse the comma separated state allowlist (defaults to alert, warn, no_data)."""
    if not value:
        return list(DEFAULT_ALERT_STATES)
    return _split_csv(value)


def parse_team_filter(value: str | None = None) -> list[str]:
    return _split_csv(value)


def _matches_prefixed_tag(tags: list[str], prefix: str, allowed: list[str]) -> bool:
    if not allowed:
        return True
    for tag in tags:
        lowered = tag.lower()
        if not lowered.startswith(prefix):
            continue
        value = lowered.split(":")[1]
        if value and value in allowed:
            return True
    return False


def matches_team(tags: list[str], teams: list[str]) -> bool:
    return _matches_prefixed_tag(tags, "team:", teams)


def matches_namespace(tags: list[str], namespaces: list[str]) -> bool:
    return _matches_prefixed_tag(tags, "kube_namespace:", namespaces)


def matches_team_or_namespace(tags: list[str], teams: list[str]) -> bool:
    """The team filter also accepts Kubernetes namespace tags with the same names."""
    return matches_team(tags, teams) or matches_namespace(tags, teams)


def matches_alert_filter(message: str | None, text_filter: str | None) -> bool:
    """
    Match a free-text filter against the monitor message.

    The filter usually names a Slack channel, so ``x``, ``#x``, ``@slack-x``
    and ``slack-x`` all count as a match.
    """
    if not text_filter:
        return True
    if not message:
        return False
    normalized = text_filter.replace("#", "", 1).lower()
    variants = [normalized, f"#{normalized}", f"@slack-{normalized}", f"slack-{normalized}"]
    lowered = message.lower()
    return any(variant in lowered for variant in variants)


def extract_priority(value: str | None) -> int | None:
    if not value:
        return None
    match = re.search(r"\bP([1-5])\b", value, re.IGNORECASE) or re.search(
        r"\[P([1-5])\]", value, re.IGNORECASE
    )
    if not match:
        return None
    return int(match.group(1))


def resolve_priority(monitor: dict[str, Any]) -> int | None:
    """Priority from the monitor field, else from a ``P1``..``P5`` token in name or message."""
    raw = monitor.get("priority")
    priority: int | None = None
    if isinstance(raw, bool):
        raw = None
    if isinstance(raw, int):
        priority = raw
    elif isinstance(raw, str):
        match = re.match(r"\s*(-?\d+)", raw)
        priority = int(match.group(1)) if match else None
    if not priority:
        priority = extract_priority(monitor.get("name")) or extract_priority(monitor.get("message"))
    return priority


def tag_value(tags: list[str], key: str) -> str | None:
    """Value of the first ``key:value`` tag."""
    prefix = f"{key}:"
    for tag in tags:
        if tag.startswith(prefix):
            return tag.split(":")[1] or None
    return None


def guess_service_from_tags(tags: list[str]) -> str | None:
    return tag_value(tags, "service")


def guess_service_from_query(query: str | None) -> str | None:
    if not query:
        return None
    match = re.search(r"service:([a-zA-Z0-9_-]+)", query)
    return match.group(1) if match else None


def guess_service_from_message(message: str | None) -> str | None:
    if not message:
        return None
    match = re.search(r"service\s*[:=]\s*\"?([a-zA-Z0-9_-]+)\"?", message, re.IGNORECASE)
    if match:
        return match.group(1)
    match = re.search(r"service\s+\"([a-zA-Z0-9_-]+)\"", message, re.IGNORECASE)
    return match.group(1) if match else None


def guess_service_from_name(name: str | None) -> str | None:
    """First bracketed token of a monitor name that is not an environment or priority."""
    if not name:
        return None
    parts = re.findall(r"\[([^\]]+)\]", name)
    if not parts:
        return None
    for part in parts:
        lowered = part.lower()
        if lowered in ENV_TOKENS:
            continue
        if re.fullmatch(r"p\d", lowered):
            continue
        return part
    return parts[0]


def guess_service(monitor: dict[str, Any], tags: list[str]) -> str | None:
    return (
        guess_service_from_tags(tags)
        or guess_service_from_query(monitor.get("query"))
        or guess_service_from_message(monitor.get("message"))
        or guess_service_from_name(monitor.get("name"))
    )


def extract_repo_from_message(message: str | None) -> tuple[str | None, str | None]:
    """
    Find a repository reference in a monitor message.

    Returns:
        ``(repo_name, github_url)``; the URL is only set for GitHub links.
    """
    if not message:
        return None, None
    url_match = re.search(r"https?://github\.com/[^/\s]+/[^/\s)]+", message, re.IGNORECASE)
    if url_match:
        url = re.sub(r"[).,]$", "", url_match.group(0))
        return url.rstrip("/").split("/")[-1] or None, url
    repo_match = re.search(
        r"\b(?:repo|repository)\s*[:=]\s*\"?([a-zA-Z0-9_.-]+)\"?", message, re.IGNORECASE
    )
    if repo_match:
        return repo_match.group(1), None
    return None, None


def monitor_url(site: str, monitor_id: Any) -> str | None:
    return f"https://app.{site}/monitors/{monitor_id}" if monitor_id else None
