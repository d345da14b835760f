"""
Models for triage orchestration.

Provides the scheduler lease row, per-scheduler bookkeeping, and the
persistent record of each triage run.
"""

import uuid

from django.db import IntegrityError, models, transaction
from django.utils import timezone


class SchedulerLock(models.Model):
    """
    Named lease row.

    The holder is ``owner_id`` until ``lease_expires_at``; any instance may
    take over a lease that has expired. Acquisition is a conditional update
    so only one contender can win.
    """

    name = models.CharField(max_length=100, unique=True)
    owner_id = models.CharField(max_length=100, blank=True, default="")
    lease_expires_at = models.DateTimeField(db_index=True)
    heartbeat_at = models.DateTimeField(null=True, blank=True)
    acquired_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} held by {self.owner_id or '-'} until {self.lease_expires_at:%H:%M:%S}"

    def is_held(self, now=None) -> bool:
        return self.lease_expires_at > (now or timezone.now())


class SchedulerState(models.Model):
    """Last run/success/error bookkeeping for a named scheduler."""

    name = models.CharField(max_length=100, unique=True)
    last_run_at = models.DateTimeField(null=True, blank=True)
    last_success_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} (last run {self.last_run_at})"

    @classmethod
    def load(cls, name: str) -> "SchedulerState | None":
        return cls.objects.filter(name=name).first()

    @classmethod
    def update_state(cls, name: str, **fields) -> None:
        """Upsert: update the named row, creating it on first use."""
        if cls.objects.filter(name=name).update(updated_at=timezone.now(), **fields):
            return
        try:
            with transaction.atomic():
                cls.objects.create(name=name, **fields)
        except IntegrityError:
            cls.objects.filter(name=name).update(updated_at=timezone.now(), **fields)


class RunStatus(models.TextChoices):
    """Triage run state machine: running -> complete | failed."""

    RUNNING = "running", "Running"
    COMPLETE = "complete", "Complete"
    FAILED = "failed", "Failed"


def new_run_id() -> str:
    return str(uuid.uuid4())


class TriageRun(models.Model):
    """
    One triage attempt against an alert event.

    Created with status ``running`` and finished exactly once through
    ``mark_complete`` or ``mark_failed``.
    """

    run_id = models.CharField(
        max_length=64,
        unique=True,
        default=new_run_id,
        help_text="Public identifier used in URLs, run directories and logs.",
    )
    alert = models.ForeignKey(
        "alerts.AlertEvent",
        on_delete=models.CASCADE,
        related_name="triage_runs",
    )
    parent_run = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="child_runs",
        help_text="Run this one continues or reruns.",
    )

    status = models.CharField(
        max_length=20,
        choices=RunStatus.choices,
        default=RunStatus.RUNNING,
        db_index=True,
    )
    provider = models.CharField(max_length=50, blank=True, default="")
    error = models.TextField(blank=True, default="")

    report_markdown = models.TextField(blank=True, default="")
    session_id = models.CharField(max_length=255, blank=True, default="")
    session_url = models.CharField(max_length=1000, blank=True, default="")

    evidence = models.JSONField(null=True, blank=True)
    evidence_timeline = models.JSONField(null=True, blank=True)
    fix_suggestions = models.JSONField(null=True, blank=True)
    similar_incidents = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"]),
        ]

    def __str__(self):
        return f"TriageRun {self.run_id} [{self.status}]"

    @property
    def duration_seconds(self) -> float | None:
        if not self.finished_at:
            return None
        return (self.finished_at - self.created_at).total_seconds()

    def _finish(self, **fields) -> bool:
        """Move a running run to a terminal status; False if it already left ``running``."""
        now = timezone.now()
        fields["finished_at"] = now
        changed = TriageRun.objects.filter(pk=self.pk, status=RunStatus.RUNNING).update(
            updated_at=now, **fields
        )
        if changed:
            for name, value in fields.items():
                setattr(self, name, value)
            self.updated_at = now
        else:
            self.refresh_from_db(fields=["status", "error", "finished_at", "updated_at"])
        return bool(changed)

    def mark_complete(self, report_markdown: str, session_id: str = "", session_url: str = "") -> bool:
        return self._finish(
            status=RunStatus.COMPLETE,
            report_markdown=report_markdown,
            session_id=session_id or "",
            session_url=session_url or "",
            error="",
        )

    def mark_failed(self, error: str) -> bool:
        return self._finish(status=RunStatus.FAILED, error=error)

    def store_evidence(self, bundle_dict: dict):
        """Persist the evidence bundle (camelCase dict) on this run."""
        self.evidence = bundle_dict
        self.evidence_timeline = bundle_dict.get("steps") or []
        self.fix_suggestions = bundle_dict.get("fixSuggestions") or []
        self.similar_incidents = bundle_dict.get("similarIncidents") or []
        self.save(
            update_fields=[
                "evidence",
                "evidence_timeline",
                "fix_suggestions",
                "similar_incidents",
                "updated_at",
            ]
        )
