"""
Alert discovery services.

Polls the monitoring source, filters candidate monitors, drops alert
occurrences that were already processed, and records AlertEvent rows for
the ones that get triaged.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.alerts.drivers import BaseMonitorSource, get_source
from apps.alerts.dtos import AlertContext
from apps.alerts.filters import (
    matches_alert_filter,
    matches_team_or_namespace,
    parse_alert_states,
    parse_team_filter,
    resolve_priority,
)
from apps.alerts.http import HttpError
from apps.alerts.models import AlertEvent
from apps.alerts.repos import parse_service_repo_map

logger = logging.getLogger(__name__)

REPROCESS_PRIORITIES = {2, 4}
REPROCESS_MAX_AGE = timedelta(hours=24)


@dataclass
class DiscoveryResult:
    """Outcome of one alert discovery pass."""

    alerts: list[AlertContext] = field(default_factory=list)
    monitors_fetched: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0


class AlertDiscovery:
    """
    Finds new alerts to triage.

    Usage:
        discovery = AlertDiscovery()
        alerts = discovery.collect_alerts()
    """

    def __init__(
        self,
        source: BaseMonitorSource | None = None,
        alert_states: list[str] | None = None,
        text_filter: str | None = None,
        teams: list[str] | None = None,
        max_age_minutes: int | None = None,
        repo_root: str | None = None,
        repo_map: dict[str, str] | None = None,
    ):
        self.source = source or get_source("datadog")
        self.alert_states = (
            alert_states
            if alert_states is not None
            else parse_alert_states(getattr(settings, "ALERT_STATES", ""))
        )
        self.text_filter = (
            text_filter if text_filter is not None else getattr(settings, "ALERT_TEXT_FILTER", "")
        )
        self.teams = teams if teams is not None else parse_team_filter(getattr(settings, "ALERT_TEAM", ""))
        self.max_age_minutes = (
            max_age_minutes
            if max_age_minutes is not None
            else int(getattr(settings, "ALERT_MAX_AGE_MINUTES", 120))
        )
        self.repo_root = repo_root or getattr(settings, "REPO_ROOT", "")
        self.repo_map = (
            repo_map
            if repo_map is not None
            else parse_service_repo_map(getattr(settings, "SERVICE_REPO_MAP", {}))
        )
        self.default_org = getattr(settings, "GITHUB_DEFAULT_ORG", "")

    def _fetch(self, result: DiscoveryResult) -> list[dict]:
        if not self.source.is_configured():
            logger.warning("Missing %s credentials. Skipping alert collection.", self.source.name)
            return []
        try:
            monitors = self.source.fetch_monitors()
        except (HttpError, ValueError) as e:
            logger.error("%s fetch failed: %s", self.source.name, e)
            result.errors.append(str(e))
            return []
        result.monitors_fetched = len(monitors)
        logger.info("%s monitors fetched (%d).", self.source.name, len(monitors))
        return monitors

    def _build(self, monitor: dict, modified: datetime) -> AlertContext:
        return self.source.build_context(
            monitor,
            modified,
            repo_root=self.repo_root,
            repo_map=self.repo_map,
            default_org=self.default_org,
        )

    def discover(self, now: datetime | None = None) -> DiscoveryResult:
        """Fetch monitors and return the new alert occurrences, newest first."""
        now = now or timezone.now()
        result = DiscoveryResult()
        max_age = timedelta(minutes=self.max_age_minutes)

        for monitor in self._fetch(result):
            if self.source.monitor_state(monitor) not in self.alert_states:
                continue
            if not matches_alert_filter(monitor.get("message"), self.text_filter):
                continue
            modified = self.source.modified_at(monitor)
            if modified is None or now - modified > max_age:
                continue
            if AlertEvent.objects.filter(
                monitor_id=str(monitor.get("id")), overall_state_modified=modified
            ).exists():
                result.skipped_duplicates += 1
                continue
            tags = [str(tag) for tag in monitor.get("tags") or []]
            if not matches_team_or_namespace(tags, self.teams):
                continue
            result.alerts.append(self._build(monitor, modified))

        result.alerts.sort(key=_modified_sort_key, reverse=True)
        logger.info(
            "Monitors filtered to %d new alert(s) (%d already processed).",
            len(result.alerts),
            result.skipped_duplicates,
        )
        return result

    def collect_alerts(self, now: datetime | None = None) -> list[AlertContext]:
        return self.discover(now).alerts

    def find_last_error_alert(self, now: datetime | None = None) -> AlertContext | None:
        """
        Newest team-scoped P2/P4 monitor modified within the last 24 hours.

        Requires a team filter so a reprocess never picks another team's alert.
        """
        now = now or timezone.now()
        if not self.teams:
            logger.warning("ALERT_TEAM not configured for reprocess last error.")
            return None

        candidates: list[AlertContext] = []
        for monitor in self._fetch(DiscoveryResult()):
            tags = [str(tag) for tag in monitor.get("tags") or []]
            if not matches_team_or_namespace(tags, self.teams):
                continue
            if resolve_priority(monitor) not in REPROCESS_PRIORITIES:
                continue
            modified = self.source.modified_at(monitor)
            if modified is None or now - modified > REPROCESS_MAX_AGE:
                continue
            candidates.append(self._build(monitor, modified))

        candidates.sort(key=_modified_sort_key, reverse=True)
        return candidates[0] if candidates else None


def _modified_sort_key(alert: AlertContext) -> float:
    modified = alert.modified_at
    return modified.timestamp() if modified else 0.0


def find_alert_event(alert: AlertContext) -> AlertEvent | None:
    if not alert.monitor_id or alert.modified_at is None:
        return None
    return AlertEvent.objects.filter(
        monitor_id=alert.monitor_id, overall_state_modified=alert.modified_at
    ).first()


def record_alert_event(alert: AlertContext) -> tuple[AlertEvent, bool]:
    """
    Persist an alert occurrence.

    Returns:
        ``(event, created)``. When another writer already stored the same
        ``(monitor_id, overall_state_modified)`` pair the existing row is returned.
    """
    try:
        with transaction.atomic():
            event = AlertEvent.objects.create(
                monitor_id=alert.monitor_id or "",
                monitor_name=alert.monitor_name or "",
                monitor_state=alert.monitor_state or "",
                priority=alert.priority,
                monitor_url=alert.monitor_url or "",
                monitor_message=alert.monitor_message or "",
                monitor_query=alert.monitor_query or "",
                monitor_tags=alert.monitor_tags or [],
                overall_state_modified=alert.modified_at,
                service=alert.service or "",
                environment=alert.environment or "",
                source_repo=alert.source_repo or "",
                repo_hint=alert.repo_hint or "",
                repo_url=alert.repo_url or "",
                repo_path=alert.repo_path or "",
                github_enrichment=alert.github_enrichment,
                confluence_enrichment=alert.confluence_enrichment,
            )
        return event, True
    except IntegrityError:
        existing = find_alert_event(alert)
        if existing is None:
            raise
        return existing, False
