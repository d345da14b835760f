"""
Datadog monitor source.

Polls the monitor list API and normalizes monitors into AlertContext objects.
See: https://docs.datadoghq.com/api/latest/monitors/#get-all-monitor-details
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timezone as dt_tz
from typing import Any

from django.conf import settings

from apps.alerts.drivers.base import BaseMonitorSource
from apps.alerts.dtos import AlertContext
from apps.alerts.filters import (
    extract_repo_from_message,
    guess_service,
    monitor_url,
    resolve_priority,
    tag_value,
)
from apps.alerts.http import request_json
from apps.alerts.repos import resolve_repo_path

logger = logging.getLogger(__name__)


class DatadogMonitorSource(BaseMonitorSource):
    """
    Driver for the Datadog monitor API.

    A monitor looks like:
    {
        "id": 123,
        "name": "[checkout-api][prd] High error rate P2",
        "overall_state": "Alert",
        "overall_state_modified": "2024-05-01T10:00:00+00:00",
        "modified": "...",
        "message": "... @slack-oncall ...",
        "query": "logs(\"service:checkout-api status:error\")...",
        "tags": ["service:checkout-api", "team:payments"],
        "priority": 2
    }
    """

    name = "datadog"

    def __init__(
        self,
        api_key: str | None = None,
        app_key: str | None = None,
        site: str | None = None,
        timeout_ms: int | None = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, "DATADOG_API_KEY", "")
        self.app_key = app_key if app_key is not None else getattr(settings, "DATADOG_APP_KEY", "")
        self.site = site or getattr(settings, "DATADOG_SITE", "datadoghq.com")
        self.timeout_ms = (
            timeout_ms if timeout_ms is not None else int(getattr(settings, "DATADOG_TIMEOUT_MS", 20_000))
        )

    def is_configured(self) -> bool:
        return bool(self.api_key and self.app_key)

    @property
    def auth_headers(self) -> dict[str, str]:
        return {"DD-API-KEY": self.api_key, "DD-APPLICATION-KEY": self.app_key}

    def fetch_monitors(self) -> list[dict[str, Any]]:
        data = request_json(
            f"https://api.{self.site}/api/v1/monitor",
            params={"with_downtimes": "true"},
            headers=self.auth_headers,
            timeout=self.timeout_ms / 1000,
        )
        if not isinstance(data, list):
            return []
        return [monitor for monitor in data if isinstance(monitor, dict)]

    def monitor_state(self, monitor: dict[str, Any]) -> str:
        return str(monitor.get("overall_state") or "").lower()

    def modified_at(self, monitor: dict[str, Any]) -> datetime | None:
        return self._parse_timestamp(monitor.get("overall_state_modified") or monitor.get("modified"))

    def build_context(
        self,
        monitor: dict[str, Any],
        modified: datetime,
        *,
        repo_root: str,
        repo_map: dict[str, str],
        default_org: str = "",
    ) -> AlertContext:
        tags = [str(tag) for tag in monitor.get("tags") or []]
        service = guess_service(monitor, tags)
        source_repo = tag_value(tags, "sourceRepo")
        repo_hint, repo_url = extract_repo_from_message(monitor.get("message"))
        repo_path = resolve_repo_path(
            service=service,
            repo_hint=repo_hint,
            source_repo=source_repo,
            monitor_name=monitor.get("name"),
            repo_root=repo_root,
            repo_map=repo_map,
            default_org=default_org,
        )
        monitor_id = monitor.get("id")
        return AlertContext(
            monitor_id=str(monitor_id) if monitor_id is not None else None,
            monitor_name=monitor.get("name"),
            monitor_state=monitor.get("overall_state"),
            priority=resolve_priority(monitor),
            monitor_url=monitor_url(self.site, monitor_id),
            monitor_message=monitor.get("message"),
            monitor_query=monitor.get("query"),
            monitor_tags=tags,
            overall_state_modified=modified.isoformat(),
            service=service,
            environment=tag_value(tags, "environment"),
            source_repo=source_repo,
            repo_hint=repo_hint,
            repo_url=repo_url,
            repo_path=repo_path,
        )

    def _parse_timestamp(self, ts: str | int | float | None) -> datetime | None:
        """Parse timestamp (ISO string or Unix seconds)."""
        if ts is None or ts == "":
            return None
        try:
            if isinstance(ts, (int, float)) and not isinstance(ts, bool):
                return datetime.fromtimestamp(ts, tz=dt_tz.utc)
            if isinstance(ts, str):
                parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=dt_tz.utc)
                return parsed
        except (ValueError, TypeError, OSError):
            logger.debug("Unparseable monitor timestamp: %r", ts)
        return None
