"""
Triage run orchestration.

For one alert: gather evidence (unless reusing a previous bundle), persist
it, write the run input files, invoke the configured provider and persist
the final report or failure.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from apps.alerts.dtos import AlertContext
from apps.alerts.models import AlertEvent
from apps.evidence.commands import error_message
from apps.evidence.dtos import EvidenceBundle, SimilarIncident
from apps.evidence.orchestrator import EvidenceOrchestrator
from apps.intelligence.providers import (
    BaseTriageProvider,
    ProviderResult,
    ProviderRunRequest,
    configured_provider_name,
    get_provider,
)
from apps.orchestration.models import RunStatus, TriageRun
from apps.orchestration.prompt import build_prompt
from apps.orchestration.signals import SignalTags, StageTimer, emit_run_completed, emit_run_failed

logger = logging.getLogger(__name__)

SECTION_LIMIT = 8000
PROVIDER_PROMPT = "Use the attached prompt.txt and alert.json files."
SIMILAR_LIMIT = 5
SUMMARY_CHARS = 200


@dataclass
class RunInputs:
    prompt: str
    working_dir: str
    run_dir: str
    attachments: list[str] = field(default_factory=list)


def extract_summary(report: str) -> str:
    """First line after an "Alert Summary" heading, else the first plain prose line."""
    lines = [line.strip() for line in (report or "").splitlines()]
    non_empty = [line for line in lines if line]
    if not non_empty:
        return "No summary available."
    for index, line in enumerate(non_empty):
        if "alert summary" in line.lower() and index + 1 < len(non_empty):
            return non_empty[index + 1][:SUMMARY_CHARS]
    prose = [line for line in non_empty if not line.startswith(("#", "{", "["))]
    return (prose[0] if prose else non_empty[0])[:SUMMARY_CHARS]


def similarity_confidence(alert: AlertContext, service: str | None, monitor_name: str | None) -> float:
    same_service = bool(alert.service and service and alert.service == service)
    same_monitor = bool(alert.monitor_name and monitor_name and alert.monitor_name == monitor_name)
    if same_service and same_monitor:
        return 0.9
    if same_monitor:
        return 0.8
    if same_service:
        return 0.7
    return 0.4


def find_similar_incidents(alert: AlertContext) -> list[SimilarIncident]:
    """Most recent completed runs for the same service or monitor name."""
    query = Q()
    if alert.service:
        query |= Q(alert__service=alert.service)
    if alert.monitor_name:
        query |= Q(alert__monitor_name=alert.monitor_name)
    runs = TriageRun.objects.filter(status=RunStatus.COMPLETE).select_related("alert")
    if query:
        runs = runs.filter(query)
    return [
        SimilarIncident(
            id=run.run_id,
            created_at=run.created_at.isoformat(),
            summary=extract_summary(run.report_markdown),
            confidence=similarity_confidence(alert, run.alert.service, run.alert.monitor_name),
            service=run.alert.service or None,
            monitor_name=run.alert.monitor_name or None,
        )
        for run in runs.order_by("-created_at")[:SIMILAR_LIMIT]
    ]


def create_run(alert_event: AlertEvent, parent: TriageRun | None = None) -> TriageRun:
    return TriageRun.objects.create(
        alert=alert_event,
        parent_run=parent,
        status=RunStatus.RUNNING,
        provider=configured_provider_name(),
    )


class TriageRunOrchestrator:
    """
    Drives a single TriageRun from ``running`` to ``complete`` or ``failed``.

    Usage:
        orchestrator = TriageRunOrchestrator()
        orchestrator.run_triage(run, alert)
    """

    def __init__(
        self,
        provider: BaseTriageProvider | None = None,
        evidence_orchestrator: EvidenceOrchestrator | None = None,
        runs_dir: str | None = None,
        repo_root: str | None = None,
        skills_context_path: str | None = None,
        api_public_url: str | None = None,
    ):
        self._provider = provider
        self.evidence_orchestrator = evidence_orchestrator or EvidenceOrchestrator()
        self.runs_dir = str(runs_dir or getattr(settings, "RUNS_DIR", os.path.join(os.getcwd(), "data", "runs")))
        self.repo_root = str(repo_root or getattr(settings, "REPO_ROOT", os.getcwd()))
        self.skills_context_path = (
            skills_context_path
            if skills_context_path is not None
            else getattr(settings, "SKILLS_CONTEXT_PATH", "")
        )
        self.api_public_url = (api_public_url or getattr(settings, "API_PUBLIC_URL", "")).rstrip("/")

    def provider_for(self, run: TriageRun) -> BaseTriageProvider:
        if self._provider is not None:
            return self._provider
        return get_provider(run.provider or configured_provider_name())

    def gather_evidence(self, run: TriageRun, alert: AlertContext) -> EvidenceBundle:
        """Evidence for the run; a single error-step bundle if gathering itself blew up."""
        start = time.perf_counter()
        try:
            bundle = self.evidence_orchestrator.gather(
                alert,
                run_id=run.run_id,
                repo_root=self.repo_root,
                repo_path=alert.repo_path,
                find_similar=lambda: find_similar_incidents(alert),
            )
        except Exception as exc:
            logger.warning(
                "[%s] Evidence gathering failed after %.1fs: %s",
                run.run_id,
                time.perf_counter() - start,
                error_message(exc),
            )
            return EvidenceBundle.failure(error_message(exc), at=timezone.now().isoformat())
        logger.info(
            "[%s] Evidence gathering completed in %.1fs (%d steps)",
            run.run_id,
            time.perf_counter() - start,
            len(bundle.steps),
        )
        return bundle

    def run_triage(
        self,
        run: TriageRun,
        alert: AlertContext,
        previous_report: str = "",
        evidence: EvidenceBundle | None = None,
        gather_evidence: bool = True,
    ) -> TriageRun:
        """Execute the run to completion; failures are recorded on the run, never raised."""
        start = time.perf_counter()
        tags = SignalTags(
            stage="run",
            run_id=run.run_id,
            service=alert.service or "unknown",
            provider=run.provider,
        )
        logger.info("[%s] Starting triage run with provider %s", run.run_id, run.provider)
        try:
            if gather_evidence and evidence is None:
                with StageTimer(SignalTags(stage="evidence", run_id=run.run_id, service=tags.service)):
                    evidence = self.gather_evidence(run, alert)
            elif evidence is not None:
                logger.info("[%s] Using pre-gathered evidence", run.run_id)
            else:
                logger.info("[%s] Skipping evidence gathering", run.run_id)

            if evidence is not None:
                run.store_evidence(evidence.to_dict())

            with StageTimer(SignalTags(stage="provider", run_id=run.run_id, provider=run.provider)):
                self.execute_provider_run(run, alert, previous_report=previous_report, evidence=evidence)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception("[%s] Triage failed after %.1fs", run.run_id, duration_ms / 1000)
            if self.fail_run(run, exc):
                emit_run_failed(tags, type(exc).__name__, error_message(exc), duration_ms)
            return run

        duration_ms = (time.perf_counter() - start) * 1000
        if run.status != RunStatus.COMPLETE:
            logger.warning(
                "[%s] Run was already %s before the provider finished; result discarded",
                run.run_id,
                run.status,
            )
            return run
        logger.info("[%s] Triage completed in %.1fs", run.run_id, duration_ms / 1000)
        emit_run_completed(tags, duration_ms)
        return run

    def _read_skills_context(self) -> str | None:
        path = self.skills_context_path
        if not path or not os.path.exists(path):
            return None
        with open(path, encoding="utf-8") as f:
            return f.read()

    def build_run_inputs(
        self,
        alert: AlertContext,
        run_id: str,
        previous_report: str = "",
        evidence: EvidenceBundle | None = None,
    ) -> RunInputs:
        """Write alert.json, prompt.txt and friends into ``RUNS_DIR/<run_id>/``."""
        run_dir = os.path.join(self.runs_dir, run_id)
        os.makedirs(run_dir, exist_ok=True)
        alert_json = alert.to_json_dict()

        alert_path = os.path.join(run_dir, "alert.json")
        with open(alert_path, "w", encoding="utf-8") as f:
            json.dump(alert_json, f, indent=2, default=str)
        attachments = [alert_path]

        sections = []
        report_path = None
        if previous_report:
            report_path = os.path.join(run_dir, "previous_report.md")
            with open(report_path, "w", encoding="utf-8") as f:
                f.write(previous_report)
            sections.append(f"PREVIOUS REPORT:\n{previous_report}"[:SECTION_LIMIT])

        evidence_path = None
        if evidence is not None:
            evidence_dict = evidence.to_dict()
            evidence_path = os.path.join(run_dir, "evidence.json")
            with open(evidence_path, "w", encoding="utf-8") as f:
                json.dump(evidence_dict, f, indent=2, default=str)
            sections.append(
                "EVIDENCE TIMELINE (steps + timestamps):\n"
                + json.dumps(evidence_dict["steps"], indent=2)[:SECTION_LIMIT]
            )
            sections.append("EVIDENCE ARTIFACT KEYS:\n" + ", ".join(evidence.artifacts.keys()))
            if evidence.fix_suggestions:
                sections.append(
                    "DRAFT FIX SUGGESTIONS (not applied):\n"
                    + json.dumps(evidence_dict["fixSuggestions"], indent=2)[:SECTION_LIMIT]
                )
            sections.append(
                "EVIDENCE MAP (ids + summaries):\n"
                + json.dumps(evidence_dict["evidenceMap"], indent=2)[:SECTION_LIMIT]
            )

        skills_context = self._read_skills_context()
        prompt_path = os.path.join(run_dir, "prompt.txt")
        with open(prompt_path, "w", encoding="utf-8") as f:
            f.write(build_prompt(alert_json, skills_context, sections))
        attachments.append(prompt_path)

        if report_path:
            attachments.append(report_path)
        if evidence_path:
            attachments.append(evidence_path)
        if skills_context is not None:
            attachments.append(self.skills_context_path)

        return RunInputs(
            prompt=PROVIDER_PROMPT,
            working_dir=self.repo_root,
            run_dir=run_dir,
            attachments=attachments,
        )

    def fallback_session_url(self, run: TriageRun, result: ProviderResult) -> str | None:
        if result.session_url:
            return result.session_url
        if not result.session_id or not self.api_public_url:
            return None
        if run.provider == "codex":
            return f"{self.api_public_url}/triage/open-codex/{run.run_id}"
        if run.provider == "opencode":
            return f"{self.api_public_url}/triage/opencode/{run.run_id}"
        return None

    def execute_provider_run(
        self,
        run: TriageRun,
        alert: AlertContext,
        previous_report: str = "",
        evidence: EvidenceBundle | None = None,
    ) -> ProviderResult:
        inputs = self.build_run_inputs(alert, run.run_id, previous_report, evidence)
        provider = self.provider_for(run)
        logger.info(
            "[%s] Invoking provider %s (prompt: %d chars, attachments: %d)",
            run.run_id,
            provider.name,
            len(inputs.prompt),
            len(inputs.attachments),
        )
        result = provider.run(
            ProviderRunRequest(
                run_id=run.run_id,
                prompt=inputs.prompt,
                working_dir=inputs.working_dir,
                alert_context=alert.to_json_dict(),
                attachments=inputs.attachments,
            )
        )
        result.session_url = self.fallback_session_url(run, result)
        run.mark_complete(result.report_markdown, result.session_id or "", result.session_url or "")
        return result

    def fail_run(self, run: TriageRun, error: BaseException | str) -> bool:
        if not run.mark_failed(error_message(error)):
            logger.warning("[%s] Run was already %s; failure not recorded", run.run_id, run.status)
            return False
        logger.error("[%s] Triage failed: %s", run.run_id, run.error)
        return True
