"""
Base evidence step and the per-run context shared between steps.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from django.utils import timezone

from apps.alerts.dtos import AlertContext
from apps.evidence.commands import RepoFileHit, error_message, truncate
from apps.evidence.dtos import EvidenceBundle, EvidenceStatus, EvidenceStep

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    base_url: str = ""
    user: str = ""
    token: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.base_url and self.user and self.token)


@dataclass
class EvidenceContext:
    """
    Mutable state threaded through one evidence pass.

    Earlier steps may fill in values later steps read: the clone step sets
    ``repo_path`` and the diff step fills ``recent_config_files``.
    """

    alert: AlertContext
    run_id: str
    repo_root: str
    repo_path: str | None = None
    scan_commits: int = 20
    datadog_site: str = "datadoghq.com"
    datadog_api_key: str = ""
    datadog_app_key: str = ""
    confluence: Credentials = field(default_factory=Credentials)
    jira: Credentials = field(default_factory=Credentials)
    repo_patterns: list[dict[str, Any]] = field(default_factory=list)
    recent_config_files: list[str] = field(default_factory=list)
    max_output: int | None = None

    @property
    def service(self) -> str:
        return (self.alert.service or "").strip().lower()

    @property
    def monitor_name(self) -> str:
        return self.alert.monitor_name or ""


@dataclass
class StepOutcome:
    """
    What a step's ``collect`` hands back.

    Attributes:
        summary: One-line human description.
        artifact_key: Name the captured output is stored under.
        output: Raw captured output (truncated before storage).
        files: Repository hits contributed to the bundle.
        skipped: True when a prerequisite was missing and nothing was attempted.
    """

    summary: str | None = None
    artifact_key: str | None = None
    output: str | None = None
    files: list[RepoFileHit] = field(default_factory=list)
    skipped: bool = False

    @classmethod
    def skip(cls, summary: str) -> "StepOutcome":
        return cls(summary=summary, skipped=True)


class BaseEvidenceStep(ABC):
    """
    Abstract base class for evidence steps.

    Subclasses implement ``collect()``; ``run()`` wraps it so a failing
    step is recorded with status ``error`` and never raises.
    """

    step_id: str = "base"
    title: str = "Base evidence step"

    @abstractmethod
    def collect(self, ctx: EvidenceContext) -> StepOutcome:
        """Probe one evidence source."""
        ...

    def run(self, ctx: EvidenceContext, bundle: EvidenceBundle) -> EvidenceStep:
        step = EvidenceStep(
            id=self.step_id,
            title=self.title,
            status=EvidenceStatus.SKIPPED,
            started_at=timezone.now().isoformat(),
        )
        bundle.steps.append(step)
        start = time.perf_counter()
        logger.info("[%s] Evidence step starting: %s - %s", ctx.run_id, self.step_id, self.title)

        try:
            outcome = self.collect(ctx)
        except Exception as exc:
            step.status = EvidenceStatus.ERROR
            step.summary = error_message(exc)
            step.finished_at = timezone.now().isoformat()
            logger.warning(
                "[%s] Evidence step failed: %s after %.1fs - %s",
                ctx.run_id,
                self.step_id,
                time.perf_counter() - start,
                step.summary,
            )
            return step

        if outcome.output and outcome.artifact_key:
            bundle.artifacts[outcome.artifact_key] = truncate(outcome.output, ctx.max_output)
        if outcome.files:
            bundle.repo_files.extend(outcome.files)
        step.status = EvidenceStatus.SKIPPED if outcome.skipped else EvidenceStatus.OK
        step.summary = outcome.summary
        step.artifacts = [outcome.artifact_key] if outcome.artifact_key else None
        step.finished_at = timezone.now().isoformat()
        logger.info(
            "[%s] Evidence step completed: %s in %.1fs - %s",
            ctx.run_id,
            self.step_id,
            time.perf_counter() - start,
            step.summary or step.status.value,
        )
        return step
