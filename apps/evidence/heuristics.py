"""
Declarative heuristic rules.

Rules live in a YAML file (``HEURISTICS_PATH``) that is re-read on every
evaluation, so edits take effect without a restart::

    version: 1
    defaults:
      repoPatterns:
        - name: replicas
          rg: "(minReplicas|maxReplicas|replicas)\\s*:\\s*\\d+"
    services:
      checkout-api:
        knownPatterns: [<rule>, ...]
    global: [<rule>, ...]

A rule is a trigger (monitor name substrings plus a repository search) and
a recommendation. When the trigger matches and the search hits, the rule
produces a FixSuggestion. Some rules also register a diff builder.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import yaml
from django.conf import settings

from apps.evidence.commands import RepoFileHit, parse_rg_matches, run_command
from apps.evidence.dtos import FixSuggestion

logger = logging.getLogger(__name__)

DEFAULT_GLOB = "**/*.{yaml,yml}"
RULE_CONFIDENCE = 0.7


@dataclass
class RepoSearch:
    rg: str
    glob: str = DEFAULT_GLOB


@dataclass
class HeuristicRule:
    id: str
    description: str
    summary: str
    monitor_name_contains: list[str] = field(default_factory=list)
    repo_search: RepoSearch | None = None
    default_min_replicas: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HeuristicRule:
        trigger = data.get("trigger") or {}
        recommendation = data.get("recommendation") or {}
        search = trigger.get("repoSearch")
        return cls(
            id=str(data.get("id", "")),
            description=data.get("description", ""),
            summary=recommendation.get("summary", ""),
            monitor_name_contains=[str(t) for t in trigger.get("monitorNameContains") or []],
            repo_search=(
                RepoSearch(rg=search["rg"], glob=search.get("glob") or DEFAULT_GLOB)
                if isinstance(search, dict) and search.get("rg")
                else None
            ),
            default_min_replicas=recommendation.get("defaultMinReplicas"),
        )

    def matches(self, monitor_name: str) -> bool:
        name = (monitor_name or "").lower()
        return any(token.lower() in name for token in self.monitor_name_contains)


@dataclass
class HeuristicConfig:
    version: int = 1
    repo_patterns: list[dict[str, Any]] = field(default_factory=list)
    scan_commits: int | None = None
    services: dict[str, list[HeuristicRule]] = field(default_factory=dict)
    global_rules: list[HeuristicRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HeuristicConfig:
        defaults = data.get("defaults") or {}
        services = {
            str(name).strip().lower(): [
                HeuristicRule.from_dict(rule) for rule in (entry or {}).get("knownPatterns") or []
            ]
            for name, entry in (data.get("services") or {}).items()
        }
        return cls(
            version=int(data.get("version", 1)),
            repo_patterns=[p for p in defaults.get("repoPatterns") or [] if isinstance(p, dict) and p.get("rg")],
            scan_commits=defaults.get("scanCommits"),
            services=services,
            global_rules=[HeuristicRule.from_dict(rule) for rule in data.get("global") or []],
        )

    def rules_for(self, service: str | None) -> list[HeuristicRule]:
        """Service rules first, then global rules."""
        key = (service or "").strip().lower()
        return [*self.services.get(key, []), *self.global_rules]


def heuristics_path() -> str:
    return str(getattr(settings, "HEURISTICS_PATH", ""))


def load_heuristics(path: str | None = None) -> HeuristicConfig | None:
    """Read and parse the rule file; None when it does not exist."""
    path = path or heuristics_path()
    if not path or not os.path.exists(path):
        return None
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Heuristics file {path} must contain a mapping")
    return HeuristicConfig.from_dict(data)


def min_replicas_diff(rule: HeuristicRule, target: RepoFileHit) -> str | None:
    if rule.default_min_replicas is None:
        return None
    indent = target.text[: len(target.text) - len(target.text.lstrip())]
    return "\n".join(
        [
            f"--- a/{target.path}",
            f"+++ b/{target.path}",
            "@@",
            f"-{target.text}",
            f"+{indent}minReplicas: {rule.default_min_replicas}",
        ]
    )


DIFF_BUILDERS: dict[str, Callable[[HeuristicRule, RepoFileHit], str | None]] = {
    "pdb-minreplicas-zero": min_replicas_diff,
}


def rg_search(search: RepoSearch, repo_path: str) -> list[RepoFileHit]:
    result = run_command("rg", ["-n", "--glob", search.glob, search.rg, repo_path])
    return parse_rg_matches(result.stdout, repo_path, strip=False)


class HeuristicEvaluator:
    """Turns matching rules into fix suggestions."""

    def __init__(
        self,
        config: HeuristicConfig | None,
        search: Callable[[RepoSearch, str], list[RepoFileHit]] = rg_search,
    ):
        self.config = config
        self.search = search

    def evaluate(self, service: str | None, monitor_name: str, repo_path: str | None) -> list[FixSuggestion]:
        if self.config is None or not repo_path:
            return []
        suggestions = []
        for rule in self.config.rules_for(service):
            if not rule.repo_search or not rule.matches(monitor_name):
                continue
            hits = self.search(rule.repo_search, repo_path)
            if not hits:
                continue
            builder = DIFF_BUILDERS.get(rule.id)
            diff = builder(rule, hits[0]) if builder else None
            logger.debug("Heuristic %s matched %d locations", rule.id, len(hits))
            suggestions.append(
                FixSuggestion(
                    title=rule.description,
                    summary=rule.summary,
                    confidence=RULE_CONFIDENCE,
                    files=[RepoFileHit(path=h.path, line=h.line, text=h.text.strip()) for h in hits[:3]],
                    diff=diff,
                )
            )
        return suggestions
