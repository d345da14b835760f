"""
Views for the orchestration app.

Thin JSON endpoints over the triage scheduler and stored reports.
"""

import logging
from typing import Any

from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.orchestration.reports import get_run, get_run_inputs, list_runs, serialize_run
from apps.orchestration.scheduler import get_scheduler

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


class JSONResponseMixin:
    """Mixin for JSON responses."""

    def json_response(self, data: Any, status: int = 200) -> JsonResponse:
        return JsonResponse(data, status=status)

    def error_response(self, message: str, status: int = 400) -> JsonResponse:
        return JsonResponse({"error": message}, status=status)

    def result_response(self, result: dict[str, Any], error_status: int = 404) -> JsonResponse:
        """Scheduler operations report failures as ``{"error": ...}``; 503 when queueing failed."""
        if "error" in result:
            return self.json_response(result, status=503 if result.get("queued") is False else error_status)
        return self.json_response(result)


@method_decorator(csrf_exempt, name="dispatch")
class TriggerRunView(JSONResponseMixin, View):
    """
    POST /triage/run/
        Queue one scheduler tick.
    """

    def post(self, request):
        result = get_scheduler().trigger_run()
        if "error" in result:
            return self.result_response(result)
        return self.json_response(result, status=202 if result.get("queued") else 409)


@method_decorator(csrf_exempt, name="dispatch")
class ContinueRunView(JSONResponseMixin, View):
    """
    POST /triage/continue/<run_id>/
        Continue a run with its evidence and report as context.
    """

    def post(self, request, run_id: str):
        return self.result_response(get_scheduler().continue_run(run_id))


@method_decorator(csrf_exempt, name="dispatch")
class RerunView(JSONResponseMixin, View):
    """
    POST /triage/rerun/<run_id>/
        Re-run triage for the same alert with fresh evidence.
    """

    def post(self, request, run_id: str):
        return self.result_response(get_scheduler().rerun_run(run_id))


@method_decorator(csrf_exempt, name="dispatch")
class ReprocessLastErrorView(JSONResponseMixin, View):
    def post(self, request):
        return self.result_response(get_scheduler().reprocess_last_error())


@method_decorator(csrf_exempt, name="dispatch")
class ClearRunningView(JSONResponseMixin, View):
    def post(self, request):
        return self.json_response(get_scheduler().force_clear_running())


class SuggestBranchView(JSONResponseMixin, View):
    def get(self, request, run_id: str):
        return self.result_response(get_scheduler().suggest_branch(run_id))


@method_decorator(csrf_exempt, name="dispatch")
class OpenCodexView(JSONResponseMixin, View):
    """
    POST /triage/open-codex/<run_id>/
        Return the command that resumes the run's Codex session.
    """

    def post(self, request, run_id: str):
        return self.result_response(get_scheduler().open_codex_session(run_id))

    get = post


class ReportListView(JSONResponseMixin, View):
    """
    GET /reports/
        List recent triage runs, newest first.

    Query params:
        status: Filter by run status
        limit: Max results (default 20)
    """

    def get(self, request):
        try:
            limit = int(request.GET.get("limit", 20))
        except ValueError:
            return self.error_response("limit must be an integer")
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        runs = list_runs(limit=limit, status=request.GET.get("status"))
        return self.json_response({"count": len(runs), "runs": [serialize_run(run) for run in runs]})


class ReportDetailView(JSONResponseMixin, View):
    def get(self, request, run_id: str):
        run = get_run(run_id)
        if run is None:
            return self.error_response(f"Run not found: {run_id}", status=404)
        return self.json_response(serialize_run(run, include_evidence=True))


class ReportInputsView(JSONResponseMixin, View):
    def get(self, request, run_id: str):
        return self.result_response(get_run_inputs(run_id))


class HealthView(JSONResponseMixin, View):
    """GET /health/ - scheduler liveness."""

    def get(self, request):
        return self.json_response(get_scheduler().health_status())
