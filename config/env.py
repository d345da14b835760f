"""Environment loading and typed lookups for the triage service settings.

Datadog keys, provider binaries, Atlassian credentials and scheduler timings
all arrive through the environment. For local runs they can be seeded from
dotenv files at the repository root:

- .env
- .env.dev (only when DJANGO_ENV is dev/development/local)

Variables already present in the process environment always win. Empty
values count as unset, so ``TRIAGE_INTERVAL_MS=`` falls back to the default.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from dotenv import load_dotenv

TRUTHY = {"1", "true", "yes", "on"}


def _should_load_dev_env() -> bool:
    return os.environ.get("DJANGO_ENV", "").lower() in {"dev", "development", "local"}


def load_env(base_dir: Path | None = None) -> None:
    """Seed ``os.environ`` from the dotenv files under ``base_dir``.

    Safe to call more than once; settings and the Celery app both call it.
    """
    if base_dir is None:
        base_dir = Path(__file__).resolve().parent.parent

    load_dotenv(base_dir / ".env", override=False)
    if _should_load_dev_env():
        load_dotenv(base_dir / ".env.dev", override=False)


def env(key: str, default: str = "") -> str:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    return value


def env_int(key: str, default: int) -> int:
    """Integer setting; accepts ``"1.5e5"``-style values, bad input gives ``default``."""
    value = env(key)
    if not value:
        return default
    try:
        return int(float(value))
    except ValueError:
        return default


def env_bool(key: str, default: bool) -> bool:
    value = env(key)
    if not value:
        return default
    return value.lower() in TRUTHY


def env_json(key: str, default):
    """JSON setting such as ``SERVICE_REPO_MAP``; unparseable input gives ``default``."""
    value = env(key)
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default
