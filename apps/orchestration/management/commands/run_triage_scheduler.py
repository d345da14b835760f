"""
Management command to drive the triage scheduler without Celery beat.

Usage:
    # One lease-guarded tick (ignores interval gating)
    python manage.py run_triage_scheduler --once

    # Loop like beat would: handle_cron every 60 seconds
    python manage.py run_triage_scheduler --loop

    # Loop with a custom sleep
    python manage.py run_triage_scheduler --loop --sleep 30

    # Output the tick result as JSON
    python manage.py run_triage_scheduler --once --json
"""

import json
import time

from django.core.management.base import BaseCommand, CommandError

from apps.orchestration.scheduler import get_scheduler


class Command(BaseCommand):
    help = "Run the triage scheduler: a single tick or a cron-style loop."

    def add_arguments(self, parser):
        mode = parser.add_mutually_exclusive_group()
        mode.add_argument(
            "--once",
            action="store_true",
            help="Run one scheduler tick and exit (default)",
        )
        mode.add_argument(
            "--loop",
            action="store_true",
            help="Call the cron handler repeatedly until interrupted",
        )
        parser.add_argument(
            "--sleep",
            type=float,
            default=60.0,
            help="Seconds between cron calls in --loop mode (default: 60)",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output results as JSON",
        )

    def handle(self, *args, **options):
        scheduler = get_scheduler()
        if options["loop"]:
            if options["sleep"] <= 0:
                raise CommandError("--sleep must be positive")
            self.stdout.write(
                self.style.HTTP_INFO(
                    f"Scheduler loop started (owner {scheduler.runtime.owner_id}, every {options['sleep']:g}s)"
                )
            )
            try:
                while True:
                    self.report(scheduler.handle_cron(), options["json"])
                    time.sleep(options["sleep"])
            except KeyboardInterrupt:
                self.stdout.write(self.style.WARNING("Scheduler loop stopped."))
            return

        self.report(scheduler.run_scheduler_tick(), options["json"])

    def report(self, result, as_json: bool):
        if as_json:
            self.stdout.write(json.dumps(result))
            return
        if result.get("error"):
            self.stdout.write(self.style.ERROR(f"Tick failed: {result['error']}"))
        elif result.get("skipped"):
            self.stdout.write(self.style.WARNING(f"Tick skipped: {result['skipped']}"))
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"Tick complete: {result.get('processed', 0)} alert(s) over {result.get('backlog', 1)} cycle(s)"
                )
            )
