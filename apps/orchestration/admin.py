"""Admin configuration for orchestration models."""

from django.contrib import admin
from django.utils.html import format_html
from django_object_actions import DjangoObjectActions
from django_object_actions import action as object_action

from apps.orchestration.lease import EPOCH
from apps.orchestration.models import RunStatus, SchedulerLock, SchedulerState, TriageRun
from apps.orchestration.scheduler import get_scheduler
from config.admin import prettify_json

STATUS_COLORS = {
    RunStatus.RUNNING: "#17a2b8",
    RunStatus.COMPLETE: "#28a745",
    RunStatus.FAILED: "#dc3545",
}


@admin.register(TriageRun)
class TriageRunAdmin(DjangoObjectActions, admin.ModelAdmin):
    """Admin for TriageRun model."""

    list_display = [
        "run_id",
        "status_badge",
        "provider",
        "alert",
        "created_at",
        "duration_display",
    ]
    list_filter = ["status", "provider"]
    search_fields = ["run_id", "alert__monitor_name", "alert__service", "session_id"]
    readonly_fields = [
        "run_id",
        "alert",
        "parent_run",
        "status",
        "provider",
        "error",
        "session_id",
        "session_url",
        "created_at",
        "updated_at",
        "finished_at",
        "pretty_evidence_timeline",
        "pretty_fix_suggestions",
        "pretty_similar_incidents",
    ]
    exclude = ["evidence", "evidence_timeline", "fix_suggestions", "similar_incidents"]
    date_hierarchy = "created_at"
    actions = ["mark_failed_selected"]
    change_actions = ["rerun", "continue_run", "mark_failed"]

    def get_queryset(self, request):
        return super().get_queryset(request).select_related("alert", "parent_run")

    @admin.action(description="Mark selected running runs as failed")
    def mark_failed_selected(self, request, queryset):
        count = 0
        for run in queryset.filter(status=RunStatus.RUNNING):
            if run.mark_failed("Manually marked as failed via admin"):
                count += 1
        self.message_user(request, f"{count} triage run(s) marked as failed.")

    @object_action(label="Re-run", description="Triage this alert again with fresh evidence")
    def rerun(self, request, obj):
        result = get_scheduler().rerun_run(obj.run_id)
        if "error" in result:
            self.message_user(request, result["error"], level="error")
        else:
            self.message_user(request, f"Re-run {result['runId']} queued.")

    @object_action(label="Continue", description="Continue from this run's evidence and report")
    def continue_run(self, request, obj):
        result = get_scheduler().continue_run(obj.run_id)
        if "error" in result:
            self.message_user(request, result["error"], level="error")
        else:
            self.message_user(request, f"Continuation {result['runId']} queued.")

    @object_action(label="Mark Failed", description="Mark this run as failed")
    def mark_failed(self, request, obj):
        if obj.status == RunStatus.RUNNING:
            obj.mark_failed("Manually marked as failed via admin")
            self.message_user(request, f"Run '{obj.run_id}' marked as failed.")
        else:
            self.message_user(
                request,
                f"Only running runs can be failed (current: {obj.status}).",
                level="warning",
            )

    @admin.display(description="Status")
    def status_badge(self, obj):
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; '
            'border-radius: 3px; font-size: 11px;">{}</span>',
            STATUS_COLORS.get(obj.status, "#6c757d"),
            obj.status.upper(),
        )

    @admin.display(description="Duration")
    def duration_display(self, obj):
        seconds = obj.duration_seconds
        return f"{seconds:.1f}s" if seconds is not None else "-"

    @admin.display(description="Evidence timeline")
    def pretty_evidence_timeline(self, obj):
        return prettify_json(obj.evidence_timeline)

    @admin.display(description="Fix suggestions")
    def pretty_fix_suggestions(self, obj):
        return prettify_json(obj.fix_suggestions)

    @admin.display(description="Similar incidents")
    def pretty_similar_incidents(self, obj):
        return prettify_json(obj.similar_incidents)


@admin.register(SchedulerLock)
class SchedulerLockAdmin(DjangoObjectActions, admin.ModelAdmin):
    list_display = ["name", "owner_id", "lease_expires_at", "heartbeat_at", "acquired_at"]
    readonly_fields = ["name", "owner_id", "lease_expires_at", "heartbeat_at", "acquired_at", "updated_at"]
    change_actions = ["expire_lease"]

    @object_action(label="Expire lease", description="Let any instance take the lease now")
    def expire_lease(self, request, obj):
        SchedulerLock.objects.filter(pk=obj.pk).update(lease_expires_at=EPOCH)
        self.message_user(request, f"Lease '{obj.name}' expired.")


@admin.register(SchedulerState)
class SchedulerStateAdmin(admin.ModelAdmin):
    list_display = ["name", "last_run_at", "last_success_at", "last_error", "updated_at"]
    readonly_fields = ["name", "last_run_at", "last_success_at", "last_error", "updated_at"]
