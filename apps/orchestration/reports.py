"""Read-side helpers for triage runs and their input files."""

from __future__ import annotations

import json
import os
from typing import Any

from django.conf import settings

from apps.alerts.models import AlertEvent
from apps.orchestration.models import TriageRun

DEFAULT_LIST_LIMIT = 20


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def serialize_alert(event: AlertEvent) -> dict[str, Any]:
    return {
        "id": event.pk,
        "monitorId": event.monitor_id,
        "monitorName": event.monitor_name,
        "monitorState": event.monitor_state,
        "priority": event.priority,
        "monitorUrl": event.monitor_url,
        "overallStateModified": _iso(event.overall_state_modified),
        "service": event.service or None,
        "environment": event.environment or None,
        "repoPath": event.repo_path or None,
        "createdAt": _iso(event.created_at),
    }


def serialize_run(run: TriageRun, include_evidence: bool = False) -> dict[str, Any]:
    data = {
        "id": run.run_id,
        "status": run.status,
        "provider": run.provider,
        "error": run.error or None,
        "reportMarkdown": run.report_markdown,
        "sessionId": run.session_id or None,
        "sessionUrl": run.session_url or None,
        "parentRunId": run.parent_run.run_id if run.parent_run_id else None,
        "createdAt": _iso(run.created_at),
        "finishedAt": _iso(run.finished_at),
        "evidenceTimeline": run.evidence_timeline,
        "fixSuggestions": run.fix_suggestions,
        "similarIncidents": run.similar_incidents,
        "alert": serialize_alert(run.alert),
    }
    if include_evidence:
        data["evidence"] = run.evidence
    return data


def list_runs(limit: int = DEFAULT_LIST_LIMIT, status: str | None = None):
    queryset = TriageRun.objects.select_related("alert", "parent_run")
    if status:
        queryset = queryset.filter(status=status)
    return list(queryset.order_by("-created_at")[:limit])


def get_run(run_id: str) -> TriageRun | None:
    return TriageRun.objects.select_related("alert", "parent_run").filter(run_id=run_id).first()


def _read(path: str) -> str | None:
    if not os.path.isfile(path):
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except OSError:
        return None


def _read_json(path: str) -> Any:
    text = _read(path)
    if text is None:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def get_run_inputs(run_id: str, runs_dir: str | None = None) -> dict[str, Any]:
    """The files a run handed to its provider."""
    runs_dir = str(runs_dir or getattr(settings, "RUNS_DIR", os.path.join(os.getcwd(), "data", "runs")))
    run_dir = os.path.join(runs_dir, run_id)
    if not os.path.isdir(run_dir):
        return {"error": "Run directory not found."}

    files = [
        {"name": entry.name, "size": entry.stat().st_size}
        for entry in sorted(os.scandir(run_dir), key=lambda e: e.name)
        if entry.is_file()
    ]
    return {
        "runId": run_id,
        "runDir": run_dir,
        "prompt": _read(os.path.join(run_dir, "prompt.txt")),
        "alertContext": _read_json(os.path.join(run_dir, "alert.json")),
        "evidence": _read_json(os.path.join(run_dir, "evidence.json")),
        "previousReport": _read(os.path.join(run_dir, "previous_report.md")),
        "files": files,
    }
