"""Tests for the triage scheduler."""

import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timedelta
from datetime import timezone as dt_tz
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from apps.alerts.models import AlertEvent
from apps.intelligence.providers.mock import MOCK_REPORT
from apps.orchestration._tests.factories import (
    FakeDiscovery,
    make_alert,
    make_event,
    make_run,
    make_scheduler,
)
from apps.orchestration.lease import EPOCH
from apps.orchestration.models import RunStatus, SchedulerLock, SchedulerState, TriageRun
from apps.orchestration.scheduler import (
    LOCK_NAME,
    SCHEDULER_NAME,
    SchedulerRunTimeout,
    SchedulerRuntime,
    branch_slug,
    compute_backlog,
    get_runtime,
    get_scheduler,
    report_files,
)


class ComputeBacklogTests(SimpleTestCase):
    def test_on_schedule_runs_once(self):
        assert compute_backlog(60_000, 60_000, 5) == 1
        assert compute_backlog(10_000, 60_000, 5) == 1

    def test_missed_ticks_are_replayed(self):
        assert compute_backlog(120_001, 60_000, 5) == 3
        assert compute_backlog(150_000, 60_000, 5) == 3

    def test_capped(self):
        assert compute_backlog(650_000, 60_000, 5) == 5

    def test_first_run(self):
        assert compute_backlog(650_000, 60_000, 5, has_last_run=False) == 1


class HelperTests(SimpleTestCase):
    def test_branch_slug(self):
        assert branch_slug("[checkout-api] High error rate!") == "checkout-api-high-error-rate"
        assert len(branch_slug("x" * 100)) == 32

    def test_report_files(self):
        report = "Edit k8s/hpa.yaml and src/app.py; compare with k8s/hpa.yaml\n- values.yml"
        assert report_files(report) == ["k8s/hpa.yaml", "src/app.py", "values.yml"]
        assert report_files("") == []

    def test_runtime_flag(self):
        runtime = SchedulerRuntime()
        assert runtime.try_begin()
        assert not runtime.try_begin()
        runtime.force_clear()
        assert not runtime.is_running
        assert runtime.try_begin()

    def test_owner_id_is_unique_per_runtime(self):
        assert SchedulerRuntime().owner_id != SchedulerRuntime().owner_id
        assert SchedulerRuntime().owner_id.startswith(f"{os.getpid()}-")

    def test_get_scheduler_shares_runtime(self):
        assert get_scheduler().runtime is get_runtime()
        assert get_scheduler().runtime is get_scheduler().runtime


@override_settings(TRIAGE_PROVIDER="mock", ENRICH_GITHUB=False, ENRICH_CONFLUENCE=False)
class SchedulerTestCase(TestCase):
    def setUp(self):
        self.runs_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.runs_dir, ignore_errors=True)
        self.now = timezone.now()

    def scheduler(self, alerts=None, **kwargs):
        kwargs.setdefault("discovery", FakeDiscovery(alerts))
        return make_scheduler(self.runs_dir, **kwargs)


class SchedulerTickTests(SchedulerTestCase):
    def test_tick_triages_new_alerts(self):
        scheduler = self.scheduler([make_alert()])

        result = scheduler.run_scheduler_tick()

        assert result == {"processed": 1, "backlog": 1}
        run = TriageRun.objects.get()
        assert run.status == RunStatus.COMPLETE
        assert run.provider == "mock"
        assert run.report_markdown == MOCK_REPORT
        assert run.session_id == "abc"
        assert run.finished_at is not None
        assert run.evidence_timeline == []
        assert os.path.exists(os.path.join(self.runs_dir, run.run_id, "prompt.txt"))

        state = SchedulerState.load(SCHEDULER_NAME)
        assert state.last_run_at is not None
        assert state.last_success_at is not None
        assert state.last_error == ""
        assert SchedulerLock.objects.get(name=LOCK_NAME).lease_expires_at == EPOCH
        assert not scheduler.runtime.is_running

    def test_same_occurrence_is_triaged_once(self):
        alert = make_alert()
        scheduler = self.scheduler([alert])
        scheduler.run_scheduler_tick()
        scheduler.run_scheduler_tick()
        assert AlertEvent.objects.count() == 1
        assert TriageRun.objects.count() == 1

    def test_lease_held_elsewhere_skips(self):
        SchedulerLock.objects.create(
            name=LOCK_NAME, owner_id="owner-b", lease_expires_at=self.now + timedelta(minutes=1)
        )
        discovery = FakeDiscovery([make_alert()])

        result = self.scheduler(discovery=discovery).run_scheduler_tick(self.now)

        assert result == {"processed": 0, "skipped": "lease_not_acquired"}
        assert discovery.calls == 0
        assert SchedulerLock.objects.get().owner_id == "owner-b"

    def test_already_running_skips(self):
        scheduler = self.scheduler([make_alert()])
        scheduler.runtime.try_begin()

        assert scheduler.run_scheduler_tick() == {"processed": 0, "skipped": "already_running"}
        assert not SchedulerLock.objects.exists()
        # the in-flight tick still owns the flag
        assert scheduler.runtime.is_running

    def test_stale_runs_are_failed_before_the_tick(self):
        stale = make_run(created_at=self.now - timedelta(hours=1))
        fresh = make_run(make_event("43"))

        self.scheduler().run_scheduler_tick()

        stale.refresh_from_db()
        fresh.refresh_from_db()
        assert stale.status == RunStatus.FAILED
        assert stale.error == "Timed out after 720s"
        assert stale.finished_at is not None
        assert fresh.status == RunStatus.RUNNING

    def test_catch_up_is_capped(self):
        SchedulerState.update_state(SCHEDULER_NAME, last_run_at=self.now - timedelta(seconds=650))
        discovery = FakeDiscovery()

        with self.assertLogs("apps.orchestration.scheduler", level="WARNING") as logs:
            result = self.scheduler(discovery=discovery).run_scheduler_tick(self.now)

        assert result == {"processed": 0, "backlog": 5}
        assert discovery.calls == 5
        assert any("capped at 5" in line for line in logs.output)

    def test_discovery_error_is_recorded(self):
        discovery = FakeDiscovery(error=RuntimeError("datadog down"))

        result = self.scheduler(discovery=discovery).run_scheduler_tick()

        assert result == {"processed": 0, "backlog": 1}
        state = SchedulerState.load(SCHEDULER_NAME)
        assert state.last_error == "datadog down"
        assert state.last_success_at is None

    def test_cycle_timeout(self):
        scheduler = self.scheduler(runonce_timeout_ms=50)
        with patch.object(scheduler, "run_once", side_effect=lambda cancelled=None: time.sleep(0.5)):
            result = scheduler.run_scheduler_tick()

        assert result == {"processed": 0, "error": "Scheduler run timed out"}
        assert SchedulerState.load(SCHEDULER_NAME).last_error == "Scheduler run timed out"
        assert SchedulerLock.objects.get().lease_expires_at == EPOCH
        assert not scheduler.runtime.is_running

    def test_failing_alert_does_not_abort_the_cycle(self):
        def enrich(alert):
            if alert.monitor_id == "1":
                raise RuntimeError("github exploded")
            return None, None

        scheduler = self.scheduler([make_alert("1"), make_alert("2")])
        with patch("apps.orchestration.scheduler.enrich_alert", side_effect=enrich):
            result = scheduler.run_scheduler_tick()

        assert result == {"processed": 1, "backlog": 1, "failed": ["1"]}
        run = TriageRun.objects.get()
        assert run.alert.monitor_id == "2"
        assert run.status == RunStatus.COMPLETE
        state = SchedulerState.load(SCHEDULER_NAME)
        assert state.last_error == "Failed to process 1 alert(s): 1"
        assert state.last_success_at is not None

    def test_cancelled_cycle_starts_no_further_alerts(self):
        scheduler = self.scheduler([make_alert("1"), make_alert("2"), make_alert("3")])
        cancelled = threading.Event()
        started = []

        def process(alert, allow_reprocess=False):
            started.append(alert.monitor_id)
            cancelled.set()

        with patch.object(scheduler, "process_alert", side_effect=process):
            result = scheduler.run_once(cancelled=cancelled)

        assert started == ["1"]
        assert result == {"processed": 1, "failed": [], "abandoned": 2}
        assert SchedulerState.load(SCHEDULER_NAME).last_success_at is None

    def test_cycle_timeout_cancels_the_running_cycle(self):
        scheduler = self.scheduler(runonce_timeout_ms=50)
        seen = {}

        def slow_cycle(cancelled=None):
            seen["cancelled"] = cancelled
            time.sleep(0.3)
            return {"processed": 0}

        with patch.object(scheduler, "run_once", side_effect=slow_cycle):
            with self.assertRaises(SchedulerRunTimeout):
                scheduler._run_once_with_timeout()

        assert seen["cancelled"].is_set()

    def test_fail_stale_runs_count(self):
        make_run(created_at=self.now - timedelta(minutes=13))
        assert self.scheduler().fail_stale_runs(self.now) == 1
        assert self.scheduler().fail_stale_runs(self.now) == 0


class HandleCronTests(SchedulerTestCase):
    def test_disabled(self):
        discovery = FakeDiscovery()
        result = self.scheduler(discovery=discovery, enabled=False).handle_cron()
        assert result == {"processed": 0, "skipped": "disabled"}
        assert discovery.calls == 0

    def test_short_interval_always_ticks(self):
        SchedulerState.update_state(SCHEDULER_NAME, last_run_at=self.now - timedelta(seconds=5))
        discovery = FakeDiscovery()
        self.scheduler(discovery=discovery).handle_cron(self.now)
        assert discovery.calls == 1

    def test_long_interval_waits(self):
        SchedulerState.update_state(SCHEDULER_NAME, last_run_at=self.now - timedelta(seconds=100))
        discovery = FakeDiscovery()
        result = self.scheduler(discovery=discovery, interval_ms=300_000).handle_cron(self.now)
        assert result == {"processed": 0, "skipped": "interval_not_elapsed"}
        assert discovery.calls == 0

    def test_long_interval_runs_within_slack(self):
        SchedulerState.update_state(SCHEDULER_NAME, last_run_at=self.now - timedelta(seconds=299.5))
        discovery = FakeDiscovery()
        result = self.scheduler(discovery=discovery, interval_ms=300_000).handle_cron(self.now)
        assert result == {"processed": 0, "backlog": 1}
        assert discovery.calls == 1

    def test_long_interval_first_run(self):
        discovery = FakeDiscovery()
        self.scheduler(discovery=discovery, interval_ms=300_000).handle_cron(self.now)
        assert discovery.calls == 1


class ProcessAlertTests(SchedulerTestCase):
    def test_reprocess_creates_a_new_run(self):
        scheduler = self.scheduler()
        alert = make_alert()
        first = scheduler.process_alert(alert)
        assert first.status == RunStatus.COMPLETE

        assert scheduler.process_alert(alert) is None
        second = scheduler.process_alert(alert, allow_reprocess=True)
        assert second.run_id != first.run_id
        assert second.alert_id == first.alert_id

    def test_provider_failure_marks_run_failed(self):
        from apps.intelligence.providers import ProviderTimeoutError

        scheduler = self.scheduler()
        with patch(
            "apps.intelligence.providers.mock.MockTriageProvider.execute",
            side_effect=ProviderTimeoutError("opencode timed out after 600000ms"),
        ):
            run = scheduler.process_alert(make_alert())
        assert run.status == RunStatus.FAILED
        assert run.error == "opencode timed out after 600000ms"
        assert run.report_markdown == ""


class RunTransitionTests(SchedulerTestCase):
    def test_swept_run_is_not_completed_late(self):
        run = make_run(created_at=self.now - timedelta(minutes=13))
        assert self.scheduler().fail_stale_runs(self.now) == 1

        assert not run.mark_complete("late report", session_id="s-1")

        assert run.status == RunStatus.FAILED
        run.refresh_from_db()
        assert run.status == RunStatus.FAILED
        assert run.error == "Timed out after 720s"
        assert run.report_markdown == ""
        assert run.session_id == ""

    def test_finished_run_is_not_failed_again(self):
        run = make_run()
        assert run.mark_complete("report")
        assert not run.mark_failed("late failure")
        run.refresh_from_db()
        assert run.status == RunStatus.COMPLETE
        assert run.error == ""

    def test_run_cleared_while_provider_runs_stays_failed(self):
        scheduler = self.scheduler()
        run = make_run()
        provider = scheduler.run_orchestrator.provider_for(run)
        real_execute = provider.execute

        def clear_then_answer(request):
            scheduler.force_clear_running()
            return real_execute(request)

        with patch.object(provider, "execute", side_effect=clear_then_answer):
            returned = scheduler.run_orchestrator.run_triage(run, make_alert())

        assert returned.status == RunStatus.FAILED
        run.refresh_from_db()
        assert run.status == RunStatus.FAILED
        assert run.error == "Manually cleared"
        assert run.report_markdown == ""


class ManualOperationTests(SchedulerTestCase):
    def test_trigger_run(self):
        scheduler = self.scheduler()
        with patch("apps.orchestration.tasks.scheduler_tick_task.delay") as delay:
            assert scheduler.trigger_run() == {"queued": True}
            scheduler.runtime.try_begin()
            assert scheduler.trigger_run() == {"queued": False, "reason": "already_running"}
        assert delay.call_count == 1
        assert self.scheduler(enabled=False).trigger_run() == {"queued": False, "reason": "disabled"}

    def test_continue_run_reuses_evidence(self):
        evidence = {"steps": [{"id": "k8s-state", "status": "ok"}], "artifacts": {}}
        previous = make_run(status=RunStatus.COMPLETE, report_markdown="old report")
        previous.store_evidence(evidence)

        with patch("apps.orchestration.tasks.run_triage_task.delay") as delay:
            result = self.scheduler().continue_run(previous.run_id)

        assert result["queued"]
        run = TriageRun.objects.get(run_id=result["runId"])
        assert run.parent_run_id == previous.pk
        assert run.status == RunStatus.RUNNING
        assert run.evidence == evidence
        assert run.evidence_timeline == evidence["steps"]
        delay.assert_called_once_with(run.run_id, gather_evidence=False, previous_report="old report")

    def test_rerun(self):
        previous = make_run(status=RunStatus.FAILED)
        with patch("apps.orchestration.tasks.run_triage_task.delay") as delay:
            result = self.scheduler().rerun_run(previous.run_id)
        run = TriageRun.objects.get(run_id=result["runId"])
        assert run.alert_id == previous.alert_id
        assert run.evidence is None
        delay.assert_called_once_with(run.run_id, gather_evidence=True)

    def test_broker_failure_is_reported_not_raised(self):
        scheduler = self.scheduler(discovery=FakeDiscovery(last_error_alert=make_alert()))
        previous = make_run(status=RunStatus.COMPLETE, report_markdown="old report")
        broker_down = ConnectionError("broker down")

        with patch("apps.orchestration.tasks.scheduler_tick_task.delay", side_effect=broker_down):
            result = scheduler.trigger_run()
        assert result["queued"] is False
        assert "broker down" in result["error"]

        with patch("apps.orchestration.tasks.run_triage_task.delay", side_effect=broker_down):
            continued = scheduler.continue_run(previous.run_id)
            rerun = scheduler.rerun_run(previous.run_id)
        for result in (continued, rerun):
            assert result["queued"] is False
            assert "broker down" in result["error"]
            run = TriageRun.objects.get(run_id=result["runId"])
            assert run.status == RunStatus.FAILED
            assert run.error == result["error"]
        assert not TriageRun.objects.filter(status=RunStatus.RUNNING).exists()

        with patch("apps.orchestration.tasks.process_alert_task.delay", side_effect=broker_down):
            result = scheduler.reprocess_last_error()
        assert result["queued"] is False
        assert "broker down" in result["error"]

    def test_unknown_run(self):
        scheduler = self.scheduler()
        assert scheduler.continue_run("nope") == {"error": "Run not found"}
        assert scheduler.rerun_run("nope") == {"error": "Run not found"}
        assert scheduler.suggest_branch("nope") == {"error": "Run not found"}
        assert scheduler.open_codex_session("nope") == {"error": "No Codex session available."}

    def test_reprocess_last_error(self):
        alert = make_alert(priority=2)
        scheduler = self.scheduler(discovery=FakeDiscovery(last_error_alert=alert))
        with patch("apps.orchestration.tasks.process_alert_task.delay") as delay:
            assert scheduler.reprocess_last_error() == {"queued": True, "monitorId": "42"}
        delay.assert_called_once_with(alert.to_dict(), allow_reprocess=True)

    def test_reprocess_without_candidate(self):
        assert self.scheduler().reprocess_last_error() == {"error": "No matching alerts found in Datadog."}

    def test_force_clear_running(self):
        scheduler = self.scheduler()
        assert scheduler.force_clear_running() == {
            "ok": False,
            "cleared": 0,
            "message": "No running triage runs found.",
        }

        run = make_run()
        scheduler.lease.acquire()
        scheduler.runtime.try_begin()
        assert scheduler.force_clear_running() == {"ok": True, "cleared": 1}
        run.refresh_from_db()
        assert run.status == RunStatus.FAILED
        assert run.error == "Manually cleared"
        assert SchedulerLock.objects.get().lease_expires_at == EPOCH
        assert not scheduler.runtime.is_running

    def test_suggest_branch(self):
        event = make_event(repo_path="/src/checkout-api")
        run = make_run(event, report_markdown="Set minReplicas in k8s/hpa.yaml and check src/pool.py")
        result = self.scheduler().suggest_branch(run.run_id, today=datetime(2024, 5, 1, tzinfo=dt_tz.utc))
        assert result == {
            "branchName": "triage/checkout-api/20240501-checkout-api-high-error-rate",
            "repoPath": "/src/checkout-api",
            "files": ["k8s/hpa.yaml", "src/pool.py"],
            "commands": [
                "cd /src/checkout-api",
                "git checkout -b triage/checkout-api/20240501-checkout-api-high-error-rate",
            ],
        }

    @override_settings(CODEX_BIN="codex", REPO_ROOT="/repos")
    def test_open_codex_session(self):
        run = make_run(session_id="cx-1")
        assert self.scheduler().open_codex_session(run.run_id) == {
            "ok": True,
            "command": "codex resume cx-1 -C /repos",
        }

    def test_health(self):
        scheduler = self.scheduler()
        health = scheduler.health_status(self.now)
        assert health["ok"]
        assert health["scheduler"]["stale"]
        assert health["scheduler"]["lastRunAt"] is None

        SchedulerState.update_state(SCHEDULER_NAME, last_run_at=self.now - timedelta(seconds=30), last_error="boom")
        health = scheduler.health_status(self.now)
        assert not health["scheduler"]["stale"]
        assert health["scheduler"]["lastError"] == "boom"
        assert health["scheduler"]["intervalMs"] == 60_000
        assert scheduler.health_status(self.now + timedelta(minutes=5))["scheduler"]["stale"]
