"""
Management command for manual triage operations.

Usage:
    python manage.py triage_action trigger
    python manage.py triage_action continue <run_id>
    python manage.py triage_action rerun <run_id>
    python manage.py triage_action reprocess-last-error
    python manage.py triage_action clear-running
    python manage.py triage_action suggest-branch <run_id>
    python manage.py triage_action open-codex <run_id>
"""

import json

from django.core.management.base import BaseCommand, CommandError

from apps.orchestration.scheduler import get_scheduler

RUN_ACTIONS = {
    "continue": "continue_run",
    "rerun": "rerun_run",
    "suggest-branch": "suggest_branch",
    "open-codex": "open_codex_session",
}
PLAIN_ACTIONS = {
    "trigger": "trigger_run",
    "reprocess-last-error": "reprocess_last_error",
    "clear-running": "force_clear_running",
}


class Command(BaseCommand):
    help = "Trigger, continue, rerun or clear triage runs."

    def add_arguments(self, parser):
        parser.add_argument(
            "action",
            choices=sorted([*RUN_ACTIONS, *PLAIN_ACTIONS]),
            help="Operation to perform",
        )
        parser.add_argument(
            "run_id",
            nargs="?",
            help="Triage run id (continue, rerun, suggest-branch, open-codex)",
        )

    def handle(self, *args, **options):
        action = options["action"]
        scheduler = get_scheduler()

        if action in RUN_ACTIONS:
            if not options.get("run_id"):
                raise CommandError(f"'{action}' requires a run id")
            result = getattr(scheduler, RUN_ACTIONS[action])(options["run_id"])
        else:
            result = getattr(scheduler, PLAIN_ACTIONS[action])()

        if "error" in result:
            raise CommandError(result["error"])
        self.stdout.write(json.dumps(result, indent=2))
        if result.get("command"):
            self.stdout.write(self.style.SUCCESS(result["command"]))
