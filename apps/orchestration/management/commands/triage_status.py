"""
Management command to inspect triage runs and scheduler health.

Usage:
    # List recent triage runs
    python manage.py triage_status --limit 10

    # Filter by status
    python manage.py triage_status --status failed

    # Show details for a specific run
    python manage.py triage_status --run-id <run_id>

    # Scheduler health
    python manage.py triage_status --health
"""

import json

from django.core.management.base import BaseCommand

from apps.orchestration.models import RunStatus
from apps.orchestration.reports import get_run, list_runs
from apps.orchestration.scheduler import get_scheduler


class Command(BaseCommand):
    help = "Inspect triage runs: list, filter, show details, and scheduler health."

    def add_arguments(self, parser):
        parser.add_argument(
            "--limit",
            type=int,
            default=10,
            help="Number of triage runs to show (default: 10)",
        )
        parser.add_argument(
            "--status",
            type=str,
            choices=list(RunStatus.values),
            help="Filter by run status",
        )
        parser.add_argument(
            "--run-id",
            type=str,
            help="Show details for a specific triage run",
        )
        parser.add_argument(
            "--health",
            action="store_true",
            help="Show scheduler health instead of runs",
        )

    def handle(self, *args, **options):
        if options.get("health"):
            self.show_health()
        elif options.get("run_id"):
            self.show_run_details(options["run_id"])
        else:
            self.list_runs(options.get("status"), options.get("limit"))

    def show_health(self):
        health = get_scheduler().health_status()
        scheduler = health["scheduler"]
        style = self.style.ERROR if scheduler["stale"] else self.style.SUCCESS
        self.stdout.write(style(f"Scheduler {'STALE' if scheduler['stale'] else 'OK'}"))
        self.stdout.write(f"  Last run: {scheduler['lastRunAt'] or '-'}")
        self.stdout.write(f"  Last success: {scheduler['lastSuccessAt'] or '-'}")
        self.stdout.write(f"  Interval: {scheduler['intervalMs']} ms")
        self.stdout.write(f"  Stale after: {scheduler['staleThresholdMs']} ms")
        if scheduler["lastError"]:
            self.stdout.write(self.style.ERROR(f"  Last error: {scheduler['lastError']}"))

    def list_runs(self, status, limit):
        runs = list_runs(limit=limit, status=status)
        if not runs:
            self.stdout.write(self.style.WARNING("No triage runs found."))
            return

        self.stdout.write(
            f"{'Run ID':<38} {'Status':<10} {'Provider':<10} {'Service':<20} {'Created':<20} {'Duration(s)':<10}"
        )
        self.stdout.write("-" * 112)
        for run in runs:
            duration = run.duration_seconds
            self.stdout.write(
                f"{run.run_id:<38} {run.status:<10} {run.provider:<10} {(run.alert.service or '-')[:20]:<20} "
                f"{run.created_at:%Y-%m-%d %H:%M:%S} {duration if duration is not None else '-':<10}"
            )

    def show_run_details(self, run_id):
        run = get_run(run_id)
        if run is None:
            self.stdout.write(self.style.ERROR(f"Triage run not found: {run_id}"))
            return

        self.stdout.write(self.style.HTTP_INFO(f"Triage Run: {run.run_id}"))
        self.stdout.write(f"  Status: {run.status}")
        self.stdout.write(f"  Provider: {run.provider}")
        self.stdout.write(f"  Alert: {run.alert.monitor_name} ({run.alert.monitor_id})")
        self.stdout.write(f"  Service: {run.alert.service or '-'}")
        if run.parent_run_id:
            self.stdout.write(f"  Parent run: {run.parent_run.run_id}")
        self.stdout.write(f"  Created: {run.created_at:%Y-%m-%d %H:%M:%S}")
        self.stdout.write(f"  Finished: {run.finished_at or '-'}")
        if run.session_id:
            self.stdout.write(f"  Session: {run.session_id} {run.session_url}")
        if run.error:
            self.stdout.write(self.style.ERROR(f"  Error: {run.error}"))
        self.stdout.write("")
        self.stdout.write("Evidence Steps:")
        for step in run.evidence_timeline or []:
            self.stdout.write(f"  - {step.get('id', ''):<16} {step.get('status', ''):<8} {step.get('summary', '')}")
        if run.fix_suggestions:
            self.stdout.write("")
            self.stdout.write("Fix Suggestions:")
            self.stdout.write(json.dumps(run.fix_suggestions, indent=2))
        if run.report_markdown:
            self.stdout.write("")
            self.stdout.write("Report:")
            self.stdout.write(run.report_markdown)
        self.stdout.write("")
