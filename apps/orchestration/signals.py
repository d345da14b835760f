"""
Monitoring signals for triage scheduling.

Signals emitted:
- triage.tick.started / triage.tick.completed / triage.tick.skipped / triage.tick.failed
- triage.stage.started / triage.stage.succeeded / triage.stage.failed
  (stage = evidence | provider)
- triage.stage.duration
- evidence.step.finished (one per evidence step, tagged with its status)
- triage.run.completed / triage.run.failed

Tags on every signal:
- run_id (or "" for scheduler-level signals)
- stage (tick|evidence|provider|run)
- owner_id (the scheduler instance holding the lease)
- service
- provider
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings

logger = logging.getLogger("apps.orchestration.signals")


@dataclass
class SignalTags:
    """Tags attached to every monitoring signal."""

    stage: str
    run_id: str = ""
    owner_id: str = ""
    service: str = "unknown"
    provider: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        base = {
            "run_id": self.run_id,
            "stage": self.stage,
            "owner_id": self.owner_id,
            "service": self.service,
            "provider": self.provider,
        }
        base.update(self.extra)
        return base


class MonitoringBackend:
    """
    Abstract monitoring backend.

    Override emit() to send signals to your preferred monitoring system.
    """

    def emit(
        self,
        signal_name: str,
        tags: SignalTags,
        value: float | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        raise NotImplementedError


class LoggingBackend(MonitoringBackend):
    """Default backend: structured logging."""

    def emit(self, signal_name, tags, value=None, extra=None):
        data = {"signal": signal_name, "value": value, **tags.to_dict(), **(extra or {})}
        logger.info("[SIGNAL] %s", signal_name, extra={"signal_data": data})


class StatsdBackend(MonitoringBackend):
    """StatsD backend for metrics collection."""

    def __init__(self, host: str = "localhost", port: int = 8125, prefix: str = "triage"):
        self.host = host
        self.port = port
        self.prefix = prefix
        self._client = None

    def _get_client(self):
        if self._client is None:
            import statsd

            self._client = statsd.StatsClient(self.host, self.port, prefix=self.prefix)
        return self._client

    def emit(self, signal_name, tags, value=None, extra=None):
        client = self._get_client()
        # prefix.signal_name.stage
        metric_name = f"{signal_name}.{tags.stage}"
        if value is not None:
            if "duration" in signal_name:
                client.timing(metric_name, value)
            else:
                client.gauge(metric_name, value)
        else:
            client.incr(metric_name)


def get_monitoring_backend() -> MonitoringBackend:
    """Get configured monitoring backend."""
    backend_name = getattr(settings, "ORCHESTRATION_METRICS_BACKEND", "logging")

    if backend_name == "statsd":
        return StatsdBackend(
            host=getattr(settings, "STATSD_HOST", "localhost"),
            port=int(getattr(settings, "STATSD_PORT", 8125)),
            prefix=getattr(settings, "STATSD_PREFIX", "triage"),
        )
    return LoggingBackend()


_backend: MonitoringBackend | None = None


def _get_backend() -> MonitoringBackend:
    global _backend
    if _backend is None:
        _backend = get_monitoring_backend()
    return _backend


def emit_tick_started(owner_id: str) -> None:
    _get_backend().emit("triage.tick.started", SignalTags(stage="tick", owner_id=owner_id))


def emit_tick_completed(owner_id: str, processed: int, backlog: int, duration_ms: float) -> None:
    tags = SignalTags(stage="tick", owner_id=owner_id)
    _get_backend().emit(
        "triage.tick.completed",
        tags,
        extra={"processed": processed, "backlog": backlog, "duration_ms": duration_ms},
    )
    _get_backend().emit("triage.tick.processed", tags, value=processed)


def emit_tick_skipped(owner_id: str, reason: str) -> None:
    _get_backend().emit(
        "triage.tick.skipped", SignalTags(stage="tick", owner_id=owner_id), extra={"reason": reason}
    )


def emit_tick_failed(owner_id: str, error_message: str) -> None:
    _get_backend().emit(
        "triage.tick.failed", SignalTags(stage="tick", owner_id=owner_id), extra={"error_message": error_message}
    )


def emit_evidence_step(tags: SignalTags, step_id: str, status: str, duration_ms: float) -> None:
    _get_backend().emit(
        "evidence.step.finished",
        tags,
        value=duration_ms,
        extra={"step": step_id, "status": status},
    )


def emit_run_completed(tags: SignalTags, duration_ms: float) -> None:
    _get_backend().emit("triage.run.completed", tags, extra={"duration_ms": duration_ms})
    _get_backend().emit("triage.run.duration", tags, value=duration_ms)


def emit_run_failed(tags: SignalTags, error_type: str, error_message: str, duration_ms: float) -> None:
    _get_backend().emit(
        "triage.run.failed",
        tags,
        extra={"error_type": error_type, "error_message": error_message, "duration_ms": duration_ms},
    )
    _get_backend().emit("triage.run.failure_count", tags, value=1)


class StageTimer:
    """Context manager timing one stage of a triage run."""

    def __init__(self, tags: SignalTags):
        self.tags = tags
        self.start_time: float = 0.0
        self.duration_ms: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = time.perf_counter()
        _get_backend().emit("triage.stage.started", self.tags)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        if exc_type is None:
            _get_backend().emit("triage.stage.succeeded", self.tags, extra={"duration_ms": self.duration_ms})
        else:
            _get_backend().emit(
                "triage.stage.failed",
                self.tags,
                extra={
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val),
                    "duration_ms": self.duration_ms,
                },
            )
        _get_backend().emit("triage.stage.duration", self.tags, value=self.duration_ms)
        return False
