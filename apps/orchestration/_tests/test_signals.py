"""Tests for orchestration monitoring signals."""

from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase, override_settings

from apps.orchestration import signals
from apps.orchestration.signals import (
    LoggingBackend,
    SignalTags,
    StageTimer,
    StatsdBackend,
    emit_run_failed,
    emit_tick_skipped,
    get_monitoring_backend,
)


class RecordingBackend(signals.MonitoringBackend):
    def __init__(self):
        self.events = []

    def emit(self, signal_name, tags, value=None, extra=None):
        self.events.append((signal_name, tags, value, extra or {}))

    @property
    def names(self):
        return [event[0] for event in self.events]


class SignalEmissionTests(SimpleTestCase):
    def setUp(self):
        self.backend = RecordingBackend()
        patcher = patch.object(signals, "_backend", self.backend)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_stage_timer_success(self):
        with StageTimer(SignalTags(stage="provider", run_id="r1")) as timer:
            pass
        assert self.backend.names == ["triage.stage.started", "triage.stage.succeeded", "triage.stage.duration"]
        assert timer.duration_ms >= 0

    def test_stage_timer_failure_propagates(self):
        with self.assertRaises(RuntimeError):
            with StageTimer(SignalTags(stage="evidence")):
                raise RuntimeError("boom")
        failed = self.backend.events[1]
        assert failed[0] == "triage.stage.failed"
        assert failed[3]["error_type"] == "RuntimeError"
        assert failed[3]["error_message"] == "boom"

    def test_tick_skipped_reason(self):
        emit_tick_skipped("owner-a", "lease_not_acquired")
        name, tags, _, extra = self.backend.events[0]
        assert name == "triage.tick.skipped"
        assert tags.owner_id == "owner-a"
        assert extra == {"reason": "lease_not_acquired"}

    def test_run_failed_counts(self):
        emit_run_failed(SignalTags(stage="run", run_id="r1"), "ProviderTimeoutError", "slow", 10.0)
        assert self.backend.names == ["triage.run.failed", "triage.run.failure_count"]


class BackendTests(SimpleTestCase):
    def test_tags_to_dict_merges_extra(self):
        tags = SignalTags(stage="tick", owner_id="o", extra={"alert": "x"})
        assert tags.to_dict() == {
            "run_id": "",
            "stage": "tick",
            "owner_id": "o",
            "service": "unknown",
            "provider": "",
            "alert": "x",
        }

    def test_logging_backend(self):
        with self.assertLogs("apps.orchestration.signals", level="INFO") as logs:
            LoggingBackend().emit("triage.tick.started", SignalTags(stage="tick"))
        assert "[SIGNAL] triage.tick.started" in logs.output[0]

    def test_statsd_backend(self):
        backend = StatsdBackend()
        client = MagicMock()
        backend._client = client
        backend.emit("triage.stage.duration", SignalTags(stage="provider"), value=12.5)
        backend.emit("triage.tick.processed", SignalTags(stage="tick"), value=3)
        backend.emit("triage.tick.started", SignalTags(stage="tick"))
        client.timing.assert_called_once_with("triage.stage.duration.provider", 12.5)
        client.gauge.assert_called_once_with("triage.tick.processed.tick", 3)
        client.incr.assert_called_once_with("triage.tick.started.tick")

    @override_settings(ORCHESTRATION_METRICS_BACKEND="statsd", STATSD_PREFIX="oncall")
    def test_backend_selection(self):
        backend = get_monitoring_backend()
        assert isinstance(backend, StatsdBackend)
        assert backend.prefix == "oncall"

    @override_settings(ORCHESTRATION_METRICS_BACKEND="logging")
    def test_default_backend(self):
        assert isinstance(get_monitoring_backend(), LoggingBackend)
