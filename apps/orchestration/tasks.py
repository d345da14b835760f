"""Celery tasks for triage orchestration.

Beat fires ``scheduler_cron_task`` every minute; the other tasks back the
manual operations (trigger, continue, rerun, reprocess) so HTTP and CLI
callers return immediately.
"""

from __future__ import annotations

from typing import Any

from celery import shared_task


@shared_task(bind=True)
def scheduler_cron_task(self) -> dict[str, Any]:
    """Interval-gated scheduler tick (beat entry point)."""
    from apps.orchestration.scheduler import get_scheduler

    return get_scheduler().handle_cron()


@shared_task(bind=True)
def scheduler_tick_task(self) -> dict[str, Any]:
    """Ungated scheduler tick (manual trigger)."""
    from apps.orchestration.scheduler import get_scheduler

    return get_scheduler().run_scheduler_tick()


@shared_task(bind=True)
def run_triage_task(
    self,
    run_id: str,
    gather_evidence: bool = True,
    previous_report: str = "",
) -> dict[str, Any]:
    """
    Execute an already-created TriageRun.

    Args:
        run_id: Public id of the run (status ``running``).
        gather_evidence: Gather fresh evidence; when False the evidence
            already stored on the run is reused.
        previous_report: Report of the run being continued, if any.

    Returns:
        Run id and final status.
    """
    from apps.evidence.dtos import EvidenceBundle
    from apps.orchestration.models import TriageRun
    from apps.orchestration.services import TriageRunOrchestrator

    run = TriageRun.objects.select_related("alert").filter(run_id=run_id).first()
    if run is None:
        return {"error": "Run not found", "runId": run_id}
    evidence = None if gather_evidence else EvidenceBundle.from_dict(run.evidence)
    TriageRunOrchestrator().run_triage(
        run,
        run.alert.to_context(),
        previous_report=previous_report,
        evidence=evidence,
        gather_evidence=gather_evidence,
    )
    return {"runId": run.run_id, "status": run.status}


@shared_task(bind=True)
def process_alert_task(self, alert: dict[str, Any], allow_reprocess: bool = False) -> dict[str, Any]:
    """Triage one alert outside the scheduler tick (reprocess-last-error)."""
    from apps.alerts.dtos import AlertContext
    from apps.orchestration.scheduler import get_scheduler

    run = get_scheduler().process_alert(AlertContext.from_dict(alert), allow_reprocess=allow_reprocess)
    if run is None:
        return {"processed": False, "monitorId": alert.get("monitor_id")}
    return {"processed": True, "runId": run.run_id, "status": run.status}
