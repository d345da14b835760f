"""
Scheduler Core.

One tick = sweep stale runs, take the shared lease, run ``backlog`` discovery
cycles sequentially (each under a timeout), then release. The process-local
``SchedulerRuntime`` flag keeps ticks from overlapping inside one process;
the lease keeps them from overlapping across processes.
"""

from __future__ import annotations

import logging
import math
import os
import re
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any

from django.conf import settings
from django.db import connection
from django.utils import timezone

from apps.alerts.dtos import AlertContext
from apps.alerts.enrichment import enrich_alert
from apps.alerts.services import AlertDiscovery, find_alert_event, record_alert_event
from apps.evidence.commands import error_message
from apps.orchestration.lease import EPOCH, LeaseManager
from apps.orchestration.models import RunStatus, SchedulerLock, SchedulerState, TriageRun
from apps.orchestration.services import TriageRunOrchestrator, create_run
from apps.orchestration.signals import (
    emit_tick_completed,
    emit_tick_failed,
    emit_tick_skipped,
    emit_tick_started,
)

logger = logging.getLogger(__name__)

SCHEDULER_NAME = "default"
LOCK_NAME = "triage-scheduler"
CRON_PERIOD_MS = 60_000
CRON_SLACK_MS = 1_000
BRANCH_SLUG_CHARS = 32
BRANCH_FILE_LIMIT = 5
REPORT_FILE_RE = re.compile(r"(?:^|\s)([\w./-]+\.(?:ya?ml|json|ts|tsx|js|go|py|tf|hcl|md))")


class SchedulerRunTimeout(Exception):
    """A discovery cycle exceeded ``TRIAGE_RUNONCE_TIMEOUT_MS``."""


class SchedulerRuntime:
    """
    Process-local scheduler state.

    Holds this process's lease owner id and the re-entrancy flag; one
    instance is shared by everything in the process (see ``get_scheduler``).
    """

    def __init__(self, owner_id: str | None = None):
        self.owner_id = owner_id or f"{os.getpid()}-{secrets.token_hex(4)}"
        self._guard = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def try_begin(self) -> bool:
        with self._guard:
            if self._running:
                return False
            self._running = True
            return True

    def end(self) -> None:
        with self._guard:
            self._running = False

    force_clear = end


def compute_backlog(gap_ms: float, interval_ms: int, max_catchup: int, has_last_run: bool = True) -> int:
    """
    Number of discovery cycles to run this tick.

    ``min(max_catchup, ceil(gap / interval))`` once a tick was missed,
    otherwise 1. Gap beyond the cap is dropped, not replayed later.
    """
    if not has_last_run or interval_ms <= 0 or gap_ms <= interval_ms:
        return 1
    return max(1, min(max_catchup, math.ceil(gap_ms / interval_ms)))


def branch_slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")[:BRANCH_SLUG_CHARS]


def report_files(report: str, limit: int = BRANCH_FILE_LIMIT) -> list[str]:
    """File paths mentioned in a report, in order of first mention."""
    files: list[str] = []
    for match in REPORT_FILE_RE.finditer(report or ""):
        if match.group(1) not in files:
            files.append(match.group(1))
        if len(files) >= limit:
            break
    return files


class TriageScheduler:
    """
    Polls for alerts and triages them under the shared scheduler lease.

    All public operations return plain dicts and never raise, so they can
    back views, management commands and Celery tasks directly.
    """

    def __init__(
        self,
        runtime: SchedulerRuntime | None = None,
        discovery: AlertDiscovery | None = None,
        run_orchestrator: TriageRunOrchestrator | None = None,
        enabled: bool | None = None,
        interval_ms: int | None = None,
        lease_ms: int | None = None,
        max_catchup: int | None = None,
        runonce_timeout_ms: int | None = None,
        run_timeout_ms: int | None = None,
        stale_threshold_ms: int | None = None,
    ):
        self.runtime = runtime or SchedulerRuntime()
        self._discovery = discovery
        self._run_orchestrator = run_orchestrator
        self.enabled = enabled if enabled is not None else getattr(settings, "TRIAGE_ENABLED", True)
        self.interval_ms = int(interval_ms or getattr(settings, "TRIAGE_INTERVAL_MS", 60_000))
        self.lease_ms = int(lease_ms or getattr(settings, "TRIAGE_LEASE_MS", self.interval_ms * 2))
        self.max_catchup = int(max_catchup or getattr(settings, "TRIAGE_MAX_CATCHUP", 5))
        self.runonce_timeout_ms = int(
            runonce_timeout_ms
            if runonce_timeout_ms is not None
            else getattr(settings, "TRIAGE_RUNONCE_TIMEOUT_MS", 180_000)
        )
        self.run_timeout_ms = int(
            run_timeout_ms or getattr(settings, "TRIAGE_RUN_TIMEOUT_MS", 720_000)
        )
        self.stale_threshold_ms = int(
            stale_threshold_ms or getattr(settings, "TRIAGE_STALE_THRESHOLD_MS", self.interval_ms * 2)
        )
        self.lease = LeaseManager(self.runtime.owner_id, self.lease_ms, LOCK_NAME)

    @property
    def discovery(self) -> AlertDiscovery:
        if self._discovery is None:
            self._discovery = AlertDiscovery()
        return self._discovery

    @property
    def run_orchestrator(self) -> TriageRunOrchestrator:
        if self._run_orchestrator is None:
            self._run_orchestrator = TriageRunOrchestrator()
        return self._run_orchestrator

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def handle_cron(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Entry point for the once-a-minute beat.

        With an interval longer than the cron period the tick only runs once
        ``interval - 1s`` has passed since the last cycle started.
        """
        if not self.enabled:
            return {"processed": 0, "skipped": "disabled"}
        now = now or timezone.now()
        if self.interval_ms > CRON_PERIOD_MS:
            state = SchedulerState.load(SCHEDULER_NAME)
            last_run_at = state.last_run_at if state else None
            if last_run_at is not None:
                elapsed_ms = (now - last_run_at).total_seconds() * 1000
                if elapsed_ms < max(self.interval_ms - CRON_SLACK_MS, 0):
                    logger.debug("Scheduler cron skipped: interval not elapsed (%dms).", elapsed_ms)
                    return {"processed": 0, "skipped": "interval_not_elapsed"}
        result = self.run_scheduler_tick(now)
        if result.get("skipped"):
            logger.warning("Scheduler tick skipped: %s.", result["skipped"])
        return result

    def run_scheduler_tick(self, now: datetime | None = None) -> dict[str, Any]:
        """One lease-guarded tick. Never raises."""
        if not self.runtime.try_begin():
            logger.warning("Scheduler tick skipped: already running.")
            emit_tick_skipped(self.runtime.owner_id, "already_running")
            return {"processed": 0, "skipped": "already_running"}

        start = time.perf_counter()
        try:
            try:
                self.fail_stale_runs()
            except Exception:
                logger.exception("Stale run sweep failed")

            now = now or timezone.now()
            try:
                acquired = self.lease.acquire(now)
            except Exception:
                logger.exception("Failed to acquire scheduler lease")
                acquired = False
            if not acquired:
                logger.warning("Scheduler tick skipped: lease not acquired.")
                emit_tick_skipped(self.runtime.owner_id, "lease_not_acquired")
                return {"processed": 0, "skipped": "lease_not_acquired"}

            emit_tick_started(self.runtime.owner_id)
            try:
                with self.lease.heartbeat():
                    result = self._run_backlog(now)
            except Exception as exc:
                message = error_message(exc) or "Scheduler error"
                logger.exception("Scheduler run failed: %s", message)
                self._record_error(message)
                emit_tick_failed(self.runtime.owner_id, message)
                return {"processed": 0, "error": message}
            finally:
                try:
                    self.lease.release()
                except Exception:
                    logger.exception("Failed to release scheduler lease")

            emit_tick_completed(
                self.runtime.owner_id,
                result["processed"],
                result["backlog"],
                (time.perf_counter() - start) * 1000,
            )
            return result
        finally:
            self.runtime.end()

    def _run_backlog(self, now: datetime) -> dict[str, Any]:
        state = SchedulerState.load(SCHEDULER_NAME)
        last_run_at = state.last_run_at if state else None
        gap_ms = (now - last_run_at).total_seconds() * 1000 if last_run_at else 0
        backlog = compute_backlog(gap_ms, self.interval_ms, self.max_catchup, last_run_at is not None)

        processed = 0
        failed: list[str] = []
        for _ in range(backlog):
            cycle = self._run_once_with_timeout()
            processed += cycle.get("processed", 0)
            failed.extend(cycle.get("failed", []))

        if backlog > 1:
            logger.warning("Scheduler catch-up ran %d cycles.", backlog)
            if backlog == self.max_catchup and gap_ms / self.interval_ms > self.max_catchup:
                logger.warning("Scheduler backlog capped at %d cycles.", self.max_catchup)
        result: dict[str, Any] = {"processed": processed, "backlog": backlog}
        if failed:
            result["failed"] = failed
        return result

    def _run_once_in_thread(self, cancelled: threading.Event) -> dict[str, Any]:
        try:
            return self.run_once(cancelled=cancelled)
        finally:
            connection.close()

    def _run_once_with_timeout(self) -> dict[str, Any]:
        if self.runonce_timeout_ms <= 0:
            return self.run_once()
        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="triage-cycle")
        future = executor.submit(self._run_once_in_thread, cancelled)
        try:
            return future.result(timeout=self.runonce_timeout_ms / 1000)
        except FutureTimeoutError:
            # The alert in flight finishes; no further alert is started.
            cancelled.set()
            raise SchedulerRunTimeout("Scheduler run timed out") from None
        finally:
            executor.shutdown(wait=False)

    def _record_error(self, message: str) -> None:
        try:
            SchedulerState.update_state(SCHEDULER_NAME, last_error=message)
        except Exception:
            logger.exception("Failed to record scheduler error")

    def run_once(self, cancelled: threading.Event | None = None) -> dict[str, Any]:
        """
        One discovery cycle: fetch new alerts and triage each in fetch order.

        An alert that raises is logged and listed under ``failed``; the
        cycle moves on to the next one. Once ``cancelled`` is set no further
        alert is started and the rest are counted as ``abandoned``.
        """
        start = time.perf_counter()
        logger.info("Scheduler run started.")
        SchedulerState.update_state(SCHEDULER_NAME, last_run_at=timezone.now(), last_error="")
        try:
            alerts = self.discovery.collect_alerts()
        except Exception as exc:
            message = error_message(exc) or "Scheduler error"
            self._record_error(message)
            logger.exception(
                "Scheduler run failed after %dms: %s", (time.perf_counter() - start) * 1000, message
            )
            return {"processed": 0, "error": message}

        logger.info("Scheduler collected %d alert(s).", len(alerts))
        processed = 0
        failed: list[str] = []
        for index, alert in enumerate(alerts):
            if cancelled is not None and cancelled.is_set():
                abandoned = len(alerts) - index
                logger.warning("Scheduler run cancelled; abandoning %d alert(s).", abandoned)
                return {"processed": processed, "failed": failed, "abandoned": abandoned}
            try:
                self.process_alert(alert)
            except Exception:
                logger.exception("Failed to process alert %s", alert.monitor_id)
                failed.append(alert.monitor_id)
                continue
            processed += 1

        if failed:
            self._record_error(f"Failed to process {len(failed)} alert(s): {', '.join(failed)}")
        SchedulerState.update_state(SCHEDULER_NAME, last_success_at=timezone.now())
        logger.info(
            "Scheduler run completed (%d alerts, %d failed, %dms).",
            len(alerts),
            len(failed),
            (time.perf_counter() - start) * 1000,
        )
        result: dict[str, Any] = {"processed": processed}
        if failed:
            result["failed"] = failed
        return result

    def fail_stale_runs(self, now: datetime | None = None) -> int:
        """Fail ``running`` runs older than ``TRIAGE_RUN_TIMEOUT_MS``."""
        now = now or timezone.now()
        cutoff = now - timedelta(milliseconds=self.run_timeout_ms)
        count = TriageRun.objects.filter(status=RunStatus.RUNNING, created_at__lt=cutoff).update(
            status=RunStatus.FAILED,
            error=f"Timed out after {round(self.run_timeout_ms / 1000)}s",
            finished_at=now,
            updated_at=now,
        )
        if count:
            logger.warning("Marked %d stale triage run(s) as failed.", count)
        return count

    def process_alert(self, alert: AlertContext, allow_reprocess: bool = False) -> TriageRun | None:
        """
        Record the alert occurrence and triage it.

        Returns None when the occurrence was already processed and
        ``allow_reprocess`` is off.
        """
        existing = find_alert_event(alert)
        if existing is not None and not allow_reprocess:
            logger.info(
                "Alert %s (%s) already processed; skipping.", alert.monitor_id, alert.overall_state_modified
            )
            return None

        github, confluence = enrich_alert(alert)
        alert = alert.with_enrichment(github, confluence)
        if existing is not None:
            event = existing
        else:
            event, created = record_alert_event(alert)
            if not created and not allow_reprocess:
                logger.info("Alert %s recorded concurrently; skipping.", alert.monitor_id)
                return None

        run = create_run(event)
        logger.info(
            "Created triage run %s for alert %s (%s).",
            run.run_id,
            alert.monitor_id,
            alert.monitor_name or "unnamed",
        )
        return self.run_orchestrator.run_triage(run, alert, gather_evidence=True)

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def trigger_run(self) -> dict[str, Any]:
        from apps.orchestration.tasks import scheduler_tick_task

        if not self.enabled:
            return {"queued": False, "reason": "disabled"}
        if self.runtime.is_running:
            return {"queued": False, "reason": "already_running"}
        error = self._enqueue(scheduler_tick_task)
        if error:
            return {"queued": False, "error": error}
        return {"queued": True}

    @staticmethod
    def _enqueue(task, *args, **kwargs) -> str | None:
        """Queue a Celery task; the error message if the broker refused it."""
        try:
            task.delay(*args, **kwargs)
        except Exception as exc:
            logger.exception("Failed to queue %s", task.name)
            return f"Failed to queue {task.name}: {error_message(exc)}"
        return None

    @staticmethod
    def _abandon(run: TriageRun, error: str) -> dict[str, Any]:
        run.mark_failed(error)
        return {"queued": False, "error": error, "runId": run.run_id}

    @staticmethod
    def _find_run(run_id: str) -> TriageRun | None:
        return TriageRun.objects.select_related("alert").filter(run_id=run_id).first()

    def continue_run(self, run_id: str) -> dict[str, Any]:
        """New run on the same alert reusing the previous evidence and report."""
        from apps.orchestration.tasks import run_triage_task

        previous = self._find_run(run_id)
        if previous is None:
            return {"error": "Run not found"}
        run = create_run(previous.alert, parent=previous)
        if previous.evidence:
            run.store_evidence(previous.evidence)
        logger.info("Created continuation %s of run %s.", run.run_id, previous.run_id)
        error = self._enqueue(
            run_triage_task, run.run_id, gather_evidence=False, previous_report=previous.report_markdown
        )
        if error:
            return self._abandon(run, error)
        return {"queued": True, "runId": run.run_id}

    def rerun_run(self, run_id: str) -> dict[str, Any]:
        """New run on the same alert with fresh evidence."""
        from apps.orchestration.tasks import run_triage_task

        logger.info("Re-run requested for run %s.", run_id)
        previous = self._find_run(run_id)
        if previous is None:
            logger.warning("Re-run failed: run %s not found.", run_id)
            return {"error": "Run not found"}
        run = create_run(previous.alert, parent=previous)
        logger.info("Created rerun %s for alert %s.", run.run_id, previous.alert_id)
        error = self._enqueue(run_triage_task, run.run_id, gather_evidence=True)
        if error:
            return self._abandon(run, error)
        return {"queued": True, "runId": run.run_id}

    def reprocess_last_error(self) -> dict[str, Any]:
        from apps.orchestration.tasks import process_alert_task

        logger.info("Reprocess last error requested.")
        try:
            alert = self.discovery.find_last_error_alert()
        except Exception as exc:
            logger.exception("Reprocess last error lookup failed")
            return {"error": error_message(exc)}
        if alert is None:
            logger.warning("Reprocess last error: no matching alerts found in Datadog.")
            return {"error": "No matching alerts found in Datadog."}
        logger.info("Reprocessing last error: %s (%s).", alert.monitor_name, alert.monitor_id)
        error = self._enqueue(process_alert_task, alert.to_dict(), allow_reprocess=True)
        if error:
            return {"queued": False, "error": error}
        return {"queued": True, "monitorId": alert.monitor_id}

    def force_clear_running(self) -> dict[str, Any]:
        """Fail every running run, expire the lease and reset the local flag."""
        now = timezone.now()
        running = TriageRun.objects.filter(status=RunStatus.RUNNING)
        count = running.update(
            status=RunStatus.FAILED, error="Manually cleared", finished_at=now, updated_at=now
        )
        if not count:
            return {"ok": False, "cleared": 0, "message": "No running triage runs found."}
        SchedulerLock.objects.filter(name=LOCK_NAME).update(lease_expires_at=EPOCH, updated_at=now)
        self.runtime.force_clear()
        logger.warning("Force-cleared %d running run(s).", count)
        return {"ok": True, "cleared": count}

    def open_codex_session(self, run_id: str) -> dict[str, Any]:
        run = self._find_run(run_id)
        if run is None or not run.session_id:
            return {"error": "No Codex session available."}
        codex_bin = getattr(settings, "CODEX_BIN", "codex")
        repo_root = getattr(settings, "REPO_ROOT", os.getcwd())
        return {"ok": True, "command": f"{codex_bin} resume {run.session_id} -C {repo_root}"}

    def suggest_branch(self, run_id: str, today: datetime | None = None) -> dict[str, Any]:
        """Branch name, touched files and git commands for acting on a report."""
        run = self._find_run(run_id)
        if run is None:
            return {"error": "Run not found"}
        alert = run.alert
        service = alert.service or alert.repo_hint or "triage"
        date = (today or timezone.now()).strftime("%Y%m%d")
        branch_name = re.sub(r"/+", "/", f"triage/{service}/{date}-{branch_slug(alert.monitor_name or 'alert')}")
        repo_path = alert.repo_path or None
        commands = [f"git checkout -b {branch_name}"]
        if repo_path:
            commands.insert(0, f"cd {repo_path}")
        return {
            "branchName": branch_name,
            "repoPath": repo_path,
            "files": report_files(run.report_markdown),
            "commands": commands,
        }

    def health_status(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or timezone.now()
        state = SchedulerState.load(SCHEDULER_NAME)
        last_run_at = state.last_run_at if state else None
        stale = True
        if last_run_at is not None:
            stale = (now - last_run_at).total_seconds() * 1000 > self.stale_threshold_ms
        return {
            "ok": True,
            "timestamp": now.isoformat(),
            "scheduler": {
                "lastRunAt": last_run_at.isoformat() if last_run_at else None,
                "lastSuccessAt": (
                    state.last_success_at.isoformat() if state and state.last_success_at else None
                ),
                "lastError": (state.last_error or None) if state else None,
                "intervalMs": self.interval_ms,
                "staleThresholdMs": self.stale_threshold_ms,
                "stale": stale,
            },
        }


_runtime: SchedulerRuntime | None = None
_runtime_guard = threading.Lock()


def get_runtime() -> SchedulerRuntime:
    """The per-process SchedulerRuntime."""
    global _runtime
    with _runtime_guard:
        if _runtime is None:
            _runtime = SchedulerRuntime()
        return _runtime


def get_scheduler(**kwargs) -> TriageScheduler:
    """A TriageScheduler bound to this process's runtime."""
    kwargs.setdefault("runtime", get_runtime())
    return TriageScheduler(**kwargs)
