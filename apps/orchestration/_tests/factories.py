"""Shared builders for orchestration tests."""

from datetime import datetime

from django.utils import timezone

from apps.alerts.dtos import AlertContext
from apps.alerts.models import AlertEvent
from apps.evidence.orchestrator import EvidenceOrchestrator
from apps.intelligence.providers import MockTriageProvider
from apps.orchestration.models import RunStatus, TriageRun
from apps.orchestration.scheduler import SchedulerRuntime, TriageScheduler
from apps.orchestration.services import TriageRunOrchestrator


class FakeDiscovery:
    """Stands in for AlertDiscovery; records how often it was polled."""

    def __init__(self, alerts=None, error=None, last_error_alert=None):
        self.alerts = alerts or []
        self.error = error
        self.last_error_alert = last_error_alert
        self.calls = 0

    def collect_alerts(self, now=None):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.alerts)

    def find_last_error_alert(self, now=None):
        return self.last_error_alert


def make_alert(monitor_id="42", modified: datetime | None = None, **overrides) -> AlertContext:
    data = {
        "monitor_id": monitor_id,
        "monitor_name": "[checkout-api] High error rate",
        "monitor_state": "Alert",
        "priority": 2,
        "service": "checkout-api",
        "environment": "prd",
        "overall_state_modified": (modified or timezone.now()).isoformat(),
    }
    data.update(overrides)
    return AlertContext(**data)


def make_event(monitor_id="42", **overrides) -> AlertEvent:
    data = {
        "monitor_id": monitor_id,
        "monitor_name": "[checkout-api] High error rate",
        "monitor_state": "Alert",
        "service": "checkout-api",
        "overall_state_modified": timezone.now(),
    }
    data.update(overrides)
    return AlertEvent.objects.create(**data)


def make_run(event=None, status=RunStatus.RUNNING, **overrides) -> TriageRun:
    return TriageRun.objects.create(alert=event or make_event(), status=status, provider="mock", **overrides)


def make_run_orchestrator(runs_dir, provider=None, **kwargs) -> TriageRunOrchestrator:
    kwargs.setdefault("evidence_orchestrator", EvidenceOrchestrator(steps=[], heuristics_path="/nonexistent/h.yaml"))
    kwargs.setdefault("repo_root", runs_dir)
    kwargs.setdefault("skills_context_path", "")
    kwargs.setdefault("api_public_url", "http://triage.local")
    return TriageRunOrchestrator(
        provider=provider or MockTriageProvider(session_id="abc"),
        runs_dir=runs_dir,
        **kwargs,
    )


def make_scheduler(runs_dir, discovery=None, provider=None, **kwargs) -> TriageScheduler:
    kwargs.setdefault("runtime", SchedulerRuntime(owner_id="owner-a"))
    kwargs.setdefault("enabled", True)
    kwargs.setdefault("interval_ms", 60_000)
    kwargs.setdefault("lease_ms", 120_000)
    kwargs.setdefault("max_catchup", 5)
    kwargs.setdefault("runonce_timeout_ms", 0)
    kwargs.setdefault("run_timeout_ms", 720_000)
    kwargs.setdefault("stale_threshold_ms", 120_000)
    return TriageScheduler(
        discovery=discovery if discovery is not None else FakeDiscovery(),
        run_orchestrator=make_run_orchestrator(runs_dir, provider),
        **kwargs,
    )
