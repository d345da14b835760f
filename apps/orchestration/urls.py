"""URL configuration for the orchestration app."""

from django.urls import path

from apps.orchestration.views import (
    ClearRunningView,
    ContinueRunView,
    HealthView,
    OpenCodexView,
    ReportDetailView,
    ReportInputsView,
    ReportListView,
    ReprocessLastErrorView,
    RerunView,
    SuggestBranchView,
    TriggerRunView,
)

app_name = "orchestration"

urlpatterns = [
    # Triage actions
    path("triage/run/", TriggerRunView.as_view(), name="triage-run"),
    path("triage/continue/<str:run_id>/", ContinueRunView.as_view(), name="triage-continue"),
    path("triage/rerun/<str:run_id>/", RerunView.as_view(), name="triage-rerun"),
    path(
        "triage/reprocess-last-error/",
        ReprocessLastErrorView.as_view(),
        name="triage-reprocess-last-error",
    ),
    path("triage/clear-running/", ClearRunningView.as_view(), name="triage-clear-running"),
    path(
        "triage/suggest-branch/<str:run_id>/",
        SuggestBranchView.as_view(),
        name="triage-suggest-branch",
    ),
    path("triage/open-codex/<str:run_id>/", OpenCodexView.as_view(), name="triage-open-codex"),
    # Reports
    path("reports/", ReportListView.as_view(), name="report-list"),
    path("reports/<str:run_id>/", ReportDetailView.as_view(), name="report-detail"),
    path("reports/<str:run_id>/inputs/", ReportInputsView.as_view(), name="report-inputs"),
    path("health/", HealthView.as_view(), name="health"),
]
