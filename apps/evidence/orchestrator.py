"""
Evidence orchestrator.

Runs the evidence steps for one alert in declared order, then the heuristic
rules, then the similar-incident lookup, and returns an EvidenceBundle.

Steps run sequentially because later steps read what earlier ones left in
the EvidenceContext (the clone step's repo path, the diff step's file list).
"""

import logging
import os
import time
from collections.abc import Callable

import yaml
from django.conf import settings

from apps.alerts.dtos import AlertContext
from apps.alerts.enrichment import confluence_base_url
from apps.evidence.base import BaseEvidenceStep, Credentials, EvidenceContext
from apps.evidence.dtos import EvidenceBundle, SimilarIncident
from apps.evidence.heuristics import HeuristicConfig, HeuristicEvaluator, load_heuristics
from apps.evidence.steps import DEFAULT_STEPS, CloneRepoStep
from apps.orchestration.signals import SignalTags, emit_evidence_step

logger = logging.getLogger(__name__)


class EvidenceOrchestrator:
    """
    Builds the evidence bundle for a triage run.

    Usage:
        orchestrator = EvidenceOrchestrator()
        bundle = orchestrator.gather(alert, run_id="...", find_similar=lambda: [...])
    """

    def __init__(
        self,
        steps: list[BaseEvidenceStep] | None = None,
        clone_step: BaseEvidenceStep | None = None,
        heuristics_path: str | None = None,
        scan_commits: int | None = None,
        max_output: int | None = None,
    ):
        self.steps = steps if steps is not None else [step_class() for step_class in DEFAULT_STEPS]
        self.clone_step = clone_step or CloneRepoStep()
        self.heuristics_path = heuristics_path
        self.scan_commits = scan_commits or int(getattr(settings, "REPO_SCAN_COMMITS", 20))
        self.max_output = max_output

    def _load_heuristics(self, run_id: str) -> HeuristicConfig | None:
        try:
            return load_heuristics(self.heuristics_path)
        except (OSError, ValueError, TypeError, AttributeError, yaml.YAMLError) as e:
            logger.warning("[%s] Heuristics could not be loaded: %s", run_id, e)
            return None

    def build_context(
        self,
        alert: AlertContext,
        run_id: str,
        repo_root: str | None = None,
        repo_path: str | None = None,
        heuristics: HeuristicConfig | None = None,
    ) -> EvidenceContext:
        user = getattr(settings, "ATLASSIAN_USER", "")
        token = getattr(settings, "ATLASSIAN_TOKEN", "")
        return EvidenceContext(
            alert=alert,
            run_id=run_id,
            repo_root=repo_root or str(getattr(settings, "REPO_ROOT", os.getcwd())),
            repo_path=repo_path if repo_path and os.path.exists(repo_path) else None,
            scan_commits=self.scan_commits,
            datadog_site=getattr(settings, "DATADOG_SITE", "datadoghq.com"),
            datadog_api_key=getattr(settings, "DATADOG_API_KEY", ""),
            datadog_app_key=getattr(settings, "DATADOG_APP_KEY", ""),
            confluence=Credentials(confluence_base_url(), user, token),
            jira=Credentials(getattr(settings, "ATLASSIAN_BASE_URL", ""), user, token),
            repo_patterns=list(heuristics.repo_patterns) if heuristics else [],
            max_output=self.max_output,
        )

    def _run_step(self, step: BaseEvidenceStep, ctx: EvidenceContext, bundle: EvidenceBundle) -> None:
        start = time.perf_counter()
        record = step.run(ctx, bundle)
        emit_evidence_step(
            SignalTags(stage="evidence", run_id=ctx.run_id, service=ctx.service or "unknown"),
            step_id=record.id,
            status=record.status.value,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def gather(
        self,
        alert: AlertContext,
        run_id: str,
        repo_root: str | None = None,
        repo_path: str | None = None,
        find_similar: Callable[[], list[SimilarIncident]] | None = None,
    ) -> EvidenceBundle:
        heuristics = self._load_heuristics(run_id)
        ctx = self.build_context(alert, run_id, repo_root, repo_path or alert.repo_path, heuristics)
        bundle = EvidenceBundle()

        if not ctx.repo_path and alert.repo_url:
            self._run_step(self.clone_step, ctx, bundle)
        for step in self.steps:
            self._run_step(step, ctx, bundle)

        bundle.fix_suggestions = HeuristicEvaluator(heuristics).evaluate(
            ctx.service, ctx.monitor_name, ctx.repo_path
        )
        if find_similar is not None:
            bundle.similar_incidents = find_similar()

        logger.info(
            "[%s] Evidence gathered: %d steps, %d repo hits, %d fix suggestions",
            run_id,
            len(bundle.steps),
            len(bundle.repo_files),
            len(bundle.fix_suggestions),
        )
        return bundle
