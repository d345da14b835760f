"""
Alert event model for monitoring alerts that have been picked up for triage.
"""

from django.db import models


class AlertEvent(models.Model):
    """
    A processed monitoring alert occurrence.

    One row per distinct ``(monitor_id, overall_state_modified)`` pair: an
    alert is only triaged again when its state-modified timestamp changes.
    Immutable after creation apart from the enrichment fields.
    """

    monitor_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Monitor identifier in the monitoring source.",
    )
    monitor_name = models.CharField(max_length=500, blank=True, default="")
    monitor_state = models.CharField(max_length=50, blank=True, default="")
    priority = models.PositiveSmallIntegerField(null=True, blank=True)
    monitor_url = models.URLField(max_length=500, blank=True, default="")
    monitor_message = models.TextField(blank=True, default="")
    monitor_query = models.TextField(blank=True, default="")
    monitor_tags = models.JSONField(default=list, blank=True)
    overall_state_modified = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the monitor last changed state (dedup key with monitor_id).",
    )

    # Resolved context
    service = models.CharField(max_length=255, blank=True, default="", db_index=True)
    environment = models.CharField(max_length=100, blank=True, default="")
    source_repo = models.CharField(max_length=255, blank=True, default="")
    repo_hint = models.CharField(max_length=255, blank=True, default="")
    repo_url = models.CharField(max_length=500, blank=True, default="")
    repo_path = models.CharField(max_length=1000, blank=True, default="")

    # Enrichment (best-effort, may be filled after creation)
    github_enrichment = models.JSONField(null=True, blank=True)
    confluence_enrichment = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["monitor_id", "overall_state_modified"],
                name="unique_alert_occurrence",
            ),
        ]

    def __str__(self):
        return f"{self.monitor_name or self.monitor_id} [{self.monitor_state}]"

    def to_context(self):
        """Rebuild the AlertContext this event was created from."""
        from apps.alerts.dtos import AlertContext

        return AlertContext(
            monitor_id=self.monitor_id,
            monitor_name=self.monitor_name or None,
            monitor_state=self.monitor_state or None,
            priority=self.priority,
            monitor_url=self.monitor_url or None,
            monitor_message=self.monitor_message or None,
            monitor_query=self.monitor_query or None,
            monitor_tags=list(self.monitor_tags or []),
            overall_state_modified=(
                self.overall_state_modified.isoformat() if self.overall_state_modified else None
            ),
            service=self.service or None,
            environment=self.environment or None,
            source_repo=self.source_repo or None,
            repo_hint=self.repo_hint or None,
            repo_url=self.repo_url or None,
            repo_path=self.repo_path or None,
            github_enrichment=self.github_enrichment,
            confluence_enrichment=self.confluence_enrichment,
        )
