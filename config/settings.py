"""Django settings for the triage service.

Values come from the process environment (optionally seeded from .env files,
see config/env.py). Every triage component reads its defaults from here with
``getattr(settings, NAME, default)`` so constructor overrides stay optional.
"""

from __future__ import annotations

from pathlib import Path

from config.env import env, env_bool, env_int, env_json, load_env

BASE_DIR = Path(__file__).resolve().parent.parent

load_env(BASE_DIR)

SECRET_KEY = env("DJANGO_SECRET_KEY", "insecure-dev-key-change-me")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h.strip() for h in env("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "django_json_widget",
    "django_object_actions",
    "apps.alerts",
    "apps.evidence",
    "apps.intelligence",
    "apps.orchestration",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": env("DJANGO_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"
STATIC_URL = "static/"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "root": {"handlers": ["console"], "level": env("LOG_LEVEL", "INFO")},
}

# --- Celery ---
CELERY_BROKER_URL = env("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_BEAT_SCHEDULE = {
    "triage-scheduler-cron": {
        "task": "apps.orchestration.tasks.scheduler_cron_task",
        "schedule": 60.0,
    },
}

# --- Scheduler ---
TRIAGE_ENABLED = env_bool("TRIAGE_ENABLED", True)
TRIAGE_INTERVAL_MS = env_int("TRIAGE_INTERVAL_MS", 60_000)
TRIAGE_LEASE_MS = env_int("TRIAGE_LEASE_MS", TRIAGE_INTERVAL_MS * 2)
TRIAGE_MAX_CATCHUP = env_int("TRIAGE_MAX_CATCHUP", 5)
TRIAGE_RUNONCE_TIMEOUT_MS = env_int("TRIAGE_RUNONCE_TIMEOUT_MS", 180_000)
TRIAGE_PROVIDER_TIMEOUT_MS = env_int("TRIAGE_PROVIDER_TIMEOUT_MS", 600_000)
TRIAGE_RUN_TIMEOUT_MS = env_int("TRIAGE_RUN_TIMEOUT_MS", TRIAGE_PROVIDER_TIMEOUT_MS + 120_000)
TRIAGE_STALE_THRESHOLD_MS = env_int("TRIAGE_STALE_THRESHOLD_MS", TRIAGE_INTERVAL_MS * 2)

# --- Providers ---
TRIAGE_PROVIDER = env("TRIAGE_PROVIDER", env("PROVIDER", "opencode")).lower()
CODEX_BIN = env("CODEX_BIN", "codex")
CODEX_MODEL = env("CODEX_MODEL")
CODEX_ALLOW_FALLBACK = env("CODEX_ALLOW_FALLBACK", "true").lower() != "false"
OPENCODE_BIN = env("OPENCODE_BIN", "opencode")
OPENCODE_MODEL = env("OPENCODE_MODEL")
OPENCODE_VARIANT = env("OPENCODE_VARIANT")
OPENCODE_WEB_URL = env("OPENCODE_WEB_URL")
API_PUBLIC_URL = env("API_PUBLIC_URL", "http://localhost:8000")

# --- Evidence ---
EVIDENCE_MAX_OUTPUT = env_int("EVIDENCE_MAX_OUTPUT", 12_000)
EVIDENCE_COMMAND_TIMEOUT = env_int("EVIDENCE_COMMAND_TIMEOUT", 12)
REPO_SCAN_COMMITS = env_int("REPO_SCAN_COMMITS", 20)
REPO_ROOT = env("REPO_ROOT", str(BASE_DIR.parent))
SERVICE_REPO_MAP = env_json("SERVICE_REPO_MAP", {})
RUNS_DIR = env("RUNS_DIR", str(BASE_DIR / "data" / "runs"))
SKILLS_CONTEXT_PATH = env("SKILLS_CONTEXT_PATH")
HEURISTICS_PATH = env("HEURISTICS_PATH", str(BASE_DIR / "apps" / "evidence" / "heuristics.yaml"))

# --- Integrations ---
DATADOG_API_KEY = env("DATADOG_API_KEY")
DATADOG_APP_KEY = env("DATADOG_APP_KEY")
DATADOG_SITE = env("DATADOG_SITE", "datadoghq.com")
DATADOG_TIMEOUT_MS = env_int("DATADOG_TIMEOUT_MS", 20_000)
ALERT_STATES = env("ALERT_STATES")
ALERT_TEXT_FILTER = env("ALERT_TEXT_FILTER")
ALERT_TEAM = env("ALERT_TEAM")
ALERT_MAX_AGE_MINUTES = env_int("ALERT_MAX_AGE_MINUTES", 120)
ATLASSIAN_BASE_URL = env("ATLASSIAN_BASE_URL", env("CONFLUENCE_BASE_URL"))
ATLASSIAN_USER = env("ATLASSIAN_USER", env("CONFLUENCE_USER"))
ATLASSIAN_TOKEN = env("ATLASSIAN_TOKEN", env("CONFLUENCE_TOKEN"))
GITHUB_TOKEN = env("GITHUB_TOKEN")
GITHUB_DEFAULT_ORG = env("GITHUB_DEFAULT_ORG")
ENRICH_GITHUB = env_bool("ENRICH_GITHUB", True)
ENRICH_CONFLUENCE = env_bool("ENRICH_CONFLUENCE", True)

# --- Monitoring signals ---
ORCHESTRATION_METRICS_BACKEND = env("ORCHESTRATION_METRICS_BACKEND", "logging")
STATSD_HOST = env("STATSD_HOST", "localhost")
STATSD_PORT = env_int("STATSD_PORT", 8125)
STATSD_PREFIX = env("STATSD_PREFIX", "triage")
