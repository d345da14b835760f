"""
Lease-based mutual exclusion over the SchedulerLock table.

The whole protocol is conditional updates on one row:

- acquire: take the row if it is expired or already ours; insert it if it
  does not exist (losing an insert race is a plain "not acquired").
- renew: extend only while we still own it.
- release: push expiry to the epoch so anyone can take it immediately.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from datetime import datetime, timedelta
from datetime import timezone as dt_tz

from django.db import IntegrityError, connection, transaction
from django.db.models import Q
from django.utils import timezone

from apps.orchestration.models import SchedulerLock

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=dt_tz.utc)
MIN_HEARTBEAT_SECONDS = 5.0


class LeaseManager:
    """
    Acquire, renew and release one named lease for one owner.

    Usage:
        lease = LeaseManager(owner_id="1234-abcd", lease_ms=120_000)
        if lease.acquire():
            with lease.heartbeat():
                ...
            lease.release()
    """

    def __init__(self, owner_id: str, lease_ms: int, lock_name: str = "triage-scheduler"):
        self.owner_id = owner_id
        self.lease_ms = lease_ms
        self.lock_name = lock_name

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(milliseconds=self.lease_ms)

    def acquire(self, now: datetime | None = None) -> bool:
        now = now or timezone.now()
        expires_at = now + self.lease_duration
        updated = SchedulerLock.objects.filter(
            Q(lease_expires_at__lt=now) | Q(owner_id=self.owner_id),
            name=self.lock_name,
        ).update(
            owner_id=self.owner_id,
            lease_expires_at=expires_at,
            heartbeat_at=now,
            acquired_at=now,
            updated_at=now,
        )
        if updated:
            return True

        existing = SchedulerLock.objects.filter(name=self.lock_name).first()
        if existing is None:
            try:
                with transaction.atomic():
                    SchedulerLock.objects.create(
                        name=self.lock_name,
                        owner_id=self.owner_id,
                        lease_expires_at=expires_at,
                        heartbeat_at=now,
                        acquired_at=now,
                    )
                return True
            except IntegrityError:
                logger.info("Scheduler lease %s created concurrently by another owner", self.lock_name)
                return False

        logger.warning(
            "Scheduler lease held by %s until %s.",
            existing.owner_id,
            existing.lease_expires_at.isoformat(),
        )
        return False

    def renew(self, now: datetime | None = None) -> bool:
        """Extend our lease; False (and nothing changed) if we no longer own it."""
        now = now or timezone.now()
        updated = SchedulerLock.objects.filter(name=self.lock_name, owner_id=self.owner_id).update(
            lease_expires_at=now + self.lease_duration,
            heartbeat_at=now,
            updated_at=now,
        )
        if not updated:
            logger.warning("Scheduler lease %s lost by %s; renew skipped", self.lock_name, self.owner_id)
        return bool(updated)

    def release(self) -> None:
        SchedulerLock.objects.filter(name=self.lock_name, owner_id=self.owner_id).update(
            lease_expires_at=EPOCH,
            updated_at=timezone.now(),
        )

    @property
    def heartbeat_interval(self) -> float:
        return max(MIN_HEARTBEAT_SECONDS, self.lease_ms / 2 / 1000)

    def _heartbeat_loop(self, stop: threading.Event, interval: float) -> None:
        try:
            while not stop.wait(interval):
                try:
                    self.renew()
                except Exception:
                    logger.exception("Scheduler lease heartbeat failed")
        finally:
            connection.close()

    @contextlib.contextmanager
    def heartbeat(self, interval: float | None = None):
        """Renew the lease from a background thread for the duration of the block."""
        stop = threading.Event()
        thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(stop, interval or self.heartbeat_interval),
            name=f"lease-heartbeat-{self.lock_name}",
            daemon=True,
        )
        thread.start()
        try:
            yield self
        finally:
            stop.set()
            thread.join(timeout=5)
