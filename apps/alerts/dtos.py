"""
Value objects for alerts flowing from the monitoring source into triage.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any


@dataclass
class AlertContext:
    """
    One monitoring alert, as handed to evidence gathering and providers.

    Built fresh per fetch. Only the enrichment fields are attached later,
    via ``with_enrichment`` which returns a copy.
    """

    monitor_id: str | None = None
    monitor_name: str | None = None
    monitor_state: str | None = None
    priority: int | None = None
    monitor_url: str | None = None
    monitor_message: str | None = None
    monitor_query: str | None = None
    monitor_tags: list[str] = field(default_factory=list)
    overall_state_modified: str | None = None
    service: str | None = None
    environment: str | None = None
    source_repo: str | None = None
    repo_hint: str | None = None
    repo_url: str | None = None
    repo_path: str | None = None
    github_enrichment: Any = None
    confluence_enrichment: Any = None

    @property
    def modified_at(self) -> datetime | None:
        if not self.overall_state_modified:
            return None
        try:
            return datetime.fromisoformat(self.overall_state_modified.replace("Z", "+00:00"))
        except ValueError:
            return None

    def with_enrichment(self, github: Any = None, confluence: Any = None) -> AlertContext:
        return replace(self, github_enrichment=github, confluence_enrichment=confluence)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json_dict(self) -> dict[str, Any]:
        """camelCase payload written to alert.json and embedded in the prompt."""
        data = {
            "monitorId": self.monitor_id,
            "monitorName": self.monitor_name,
            "monitorState": self.monitor_state,
            "priority": self.priority,
            "monitorUrl": self.monitor_url,
            "monitorMessage": self.monitor_message,
            "monitorQuery": self.monitor_query,
            "monitorTags": self.monitor_tags,
            "overallStateModified": self.overall_state_modified,
            "service": self.service,
            "environment": self.environment,
            "sourceRepo": self.source_repo,
            "repoHint": self.repo_hint,
            "repoUrl": self.repo_url,
            "repoPath": self.repo_path,
            "githubEnrichment": self.github_enrichment,
            "confluenceEnrichment": self.confluence_enrichment,
        }
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertContext:
        known = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in known})
