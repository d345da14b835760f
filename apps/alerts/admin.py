"""Admin configuration for alerts models."""

from django.contrib import admin
from django.db import models as db_models
from django.utils.html import format_html
from django_json_widget.widgets import JSONEditorWidget

from apps.alerts.models import AlertEvent
from apps.orchestration.models import TriageRun
from config.admin import prettify_json


class TriageRunInline(admin.TabularInline):
    """Inline display of triage runs for an alert event."""

    model = TriageRun
    fk_name = "alert"
    extra = 0
    readonly_fields = ["run_id", "status", "provider", "created_at", "finished_at"]
    fields = ["run_id", "status", "provider", "created_at", "finished_at"]
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(AlertEvent)
class AlertEventAdmin(admin.ModelAdmin):
    """Admin for AlertEvent model."""

    list_display = [
        "monitor_name",
        "state_badge",
        "priority",
        "service",
        "environment",
        "overall_state_modified",
        "created_at",
    ]
    list_filter = ["monitor_state", "priority", "environment"]
    search_fields = ["monitor_id", "monitor_name", "service", "repo_hint"]
    readonly_fields = [
        "monitor_id",
        "overall_state_modified",
        "created_at",
        "monitor_link",
        "pretty_tags",
    ]
    exclude = ["monitor_tags"]
    formfield_overrides = {db_models.JSONField: {"widget": JSONEditorWidget}}
    date_hierarchy = "created_at"
    inlines = [TriageRunInline]

    @admin.display(description="State")
    def state_badge(self, obj):
        colors = {
            "alert": "#dc3545",
            "warn": "#ffc107",
            "no data": "#6c757d",
            "ok": "#28a745",
        }
        color = colors.get((obj.monitor_state or "").lower(), "#6c757d")
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; '
            'border-radius: 3px; font-size: 11px;">{}</span>',
            color,
            (obj.monitor_state or "-").upper(),
        )

    @admin.display(description="Monitor")
    def monitor_link(self, obj):
        if not obj.monitor_url:
            return "-"
        return format_html('<a href="{}" target="_blank">{}</a>', obj.monitor_url, obj.monitor_id)

    @admin.display(description="Tags")
    def pretty_tags(self, obj):
        return prettify_json(obj.monitor_tags)
