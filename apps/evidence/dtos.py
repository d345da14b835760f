"""
Data Transfer Objects for evidence gathering.

The bundle is persisted on the triage run and written to evidence.json, so
``to_dict`` uses the camelCase keys the report consumers read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from apps.evidence.commands import RepoFileHit

TOP_FINDINGS = 5


class EvidenceStatus(Enum):
    """Outcome of one evidence step."""

    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class EvidenceStep:
    id: str
    title: str
    status: EvidenceStatus
    started_at: str
    finished_at: str | None = None
    summary: str | None = None
    artifacts: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "startedAt": self.started_at,
        }
        if self.finished_at:
            data["finishedAt"] = self.finished_at
        if self.summary is not None:
            data["summary"] = self.summary
        if self.artifacts:
            data["artifacts"] = list(self.artifacts)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvidenceStep:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            status=EvidenceStatus(data.get("status", "skipped")),
            started_at=data.get("startedAt", ""),
            finished_at=data.get("finishedAt"),
            summary=data.get("summary"),
            artifacts=data.get("artifacts"),
        )


@dataclass
class FixSuggestion:
    title: str
    summary: str
    confidence: float
    files: list[RepoFileHit] = field(default_factory=list)
    diff: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "title": self.title,
            "summary": self.summary,
            "confidence": self.confidence,
            "files": [hit.to_dict() for hit in self.files],
        }
        if self.diff:
            data["diff"] = self.diff
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FixSuggestion:
        return cls(
            title=data.get("title", ""),
            summary=data.get("summary", ""),
            confidence=float(data.get("confidence", 0.0)),
            files=[RepoFileHit(**hit) for hit in data.get("files") or []],
            diff=data.get("diff"),
        )


@dataclass
class SimilarIncident:
    id: str
    created_at: str
    summary: str
    confidence: float
    service: str | None = None
    monitor_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "summary": self.summary,
            "confidence": self.confidence,
        }
        if self.service:
            data["service"] = self.service
        if self.monitor_name:
            data["monitorName"] = self.monitor_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimilarIncident:
        return cls(
            id=str(data.get("id", "")),
            created_at=data.get("createdAt", ""),
            summary=data.get("summary", ""),
            confidence=float(data.get("confidence", 0.0)),
            service=data.get("service"),
            monitor_name=data.get("monitorName"),
        )


@dataclass
class EvidenceBundle:
    """Everything gathered for one triage run."""

    steps: list[EvidenceStep] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)
    repo_files: list[RepoFileHit] = field(default_factory=list)
    fix_suggestions: list[FixSuggestion] = field(default_factory=list)
    similar_incidents: list[SimilarIncident] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(step.status == EvidenceStatus.ERROR for step in self.steps)

    @property
    def top_repo_findings(self) -> list[RepoFileHit]:
        """First findings in collection (step execution) order."""
        return self.repo_files[:TOP_FINDINGS]

    def evidence_map(self) -> dict[str, Any]:
        return {
            "steps": [
                {
                    "id": step.id,
                    "title": step.title,
                    "status": step.status.value,
                    "summary": step.summary,
                    "artifacts": step.artifacts or [],
                }
                for step in self.steps
            ],
            "topRepoFindings": [hit.to_dict() for hit in self.top_repo_findings],
            "fixSuggestions": [s.to_dict() for s in self.fix_suggestions],
        }

    def timeline(self) -> list[dict[str, Any]]:
        return [step.to_dict() for step in self.steps]

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": self.timeline(),
            "artifacts": dict(self.artifacts),
            "repoFiles": [hit.to_dict() for hit in self.repo_files],
            "fixSuggestions": [s.to_dict() for s in self.fix_suggestions],
            "similarIncidents": [s.to_dict() for s in self.similar_incidents],
            "evidenceMap": self.evidence_map(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EvidenceBundle | None:
        if not data or not isinstance(data, dict):
            return None
        return cls(
            steps=[EvidenceStep.from_dict(s) for s in data.get("steps") or []],
            artifacts=dict(data.get("artifacts") or {}),
            repo_files=[RepoFileHit(**hit) for hit in data.get("repoFiles") or []],
            fix_suggestions=[FixSuggestion.from_dict(s) for s in data.get("fixSuggestions") or []],
            similar_incidents=[
                SimilarIncident.from_dict(s) for s in data.get("similarIncidents") or []
            ],
        )

    @classmethod
    def failure(cls, message: str, at: str) -> EvidenceBundle:
        """Bundle used when evidence gathering as a whole blew up."""
        return cls(
            steps=[
                EvidenceStep(
                    id="evidence-failure",
                    title="Evidence gathering",
                    status=EvidenceStatus.ERROR,
                    started_at=at,
                    finished_at=at,
                    summary=message,
                )
            ]
        )
