"""Tests for the scheduler lease."""

import time
from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone

from apps.orchestration.lease import EPOCH, LeaseManager
from apps.orchestration.models import SchedulerLock


class LeaseManagerTests(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.a = LeaseManager("owner-a", lease_ms=120_000)
        self.b = LeaseManager("owner-b", lease_ms=120_000)

    def test_first_acquire_creates_row(self):
        assert self.a.acquire(self.now)
        lock = SchedulerLock.objects.get(name="triage-scheduler")
        assert lock.owner_id == "owner-a"
        assert lock.lease_expires_at == self.now + timedelta(minutes=2)
        assert lock.is_held(self.now)

    def test_held_lease_excludes_others(self):
        assert self.a.acquire(self.now)
        assert not self.b.acquire(self.now + timedelta(seconds=30))
        assert SchedulerLock.objects.get().owner_id == "owner-a"

    def test_owner_can_reacquire(self):
        assert self.a.acquire(self.now)
        later = self.now + timedelta(seconds=30)
        assert self.a.acquire(later)
        assert SchedulerLock.objects.get().lease_expires_at == later + timedelta(minutes=2)

    def test_expired_lease_can_be_taken(self):
        assert self.a.acquire(self.now)
        assert self.b.acquire(self.now + timedelta(minutes=3))
        assert SchedulerLock.objects.get().owner_id == "owner-b"

    def test_release_frees_immediately(self):
        assert self.a.acquire(self.now)
        self.a.release()
        assert SchedulerLock.objects.get().lease_expires_at == EPOCH
        assert self.b.acquire(self.now)

    def test_release_by_non_owner_is_noop(self):
        assert self.a.acquire(self.now)
        self.b.release()
        assert SchedulerLock.objects.get().lease_expires_at == self.now + timedelta(minutes=2)

    def test_renew_only_while_owned(self):
        assert self.a.acquire(self.now)
        later = self.now + timedelta(seconds=60)
        assert self.a.renew(later)
        assert SchedulerLock.objects.get().lease_expires_at == later + timedelta(minutes=2)

        assert self.b.acquire(later + timedelta(minutes=3))
        assert not self.a.renew(later + timedelta(minutes=3))
        assert SchedulerLock.objects.get().owner_id == "owner-b"

    def test_losing_the_insert_race(self):
        SchedulerLock.objects.create(
            name="triage-scheduler", owner_id="owner-b", lease_expires_at=self.now + timedelta(minutes=2)
        )
        # Simulate the row appearing between the conditional update and the lookup.
        with patch("django.db.models.query.QuerySet.first", return_value=None):
            assert not self.a.acquire(self.now)
        assert SchedulerLock.objects.get().owner_id == "owner-b"

    def test_heartbeat_interval(self):
        assert self.a.heartbeat_interval == 60
        assert LeaseManager("x", lease_ms=1_000).heartbeat_interval == 5

    def test_heartbeat_renews_in_background(self):
        with patch.object(self.a, "renew") as renew:
            with self.a.heartbeat(interval=0.01):
                for _ in range(200):
                    if renew.called:
                        break
                    time.sleep(0.01)
        assert renew.called
