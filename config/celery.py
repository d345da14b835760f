"""Celery app for the triage service.

Beat fires ``scheduler_cron_task`` every minute; the task itself decides
whether the configured ``TRIAGE_INTERVAL_MS`` has elapsed. Workers also pick
up runs queued from the API, admin and CLI (continue, rerun, reprocess).

    celery -A config worker -B -l info

Broker and result backend come from the ``CELERY_*`` Django settings.
"""

from __future__ import annotations

import os

from celery import Celery

from config.env import load_env

load_env()

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("alert-triage")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
