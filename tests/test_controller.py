"""Tests for the polling controller."""

from __future__ import annotations

from datetime import timedelta

import pytest

from factories import backup_schedule, restore
from hub_backup.controller import Controller
from hub_backup.errors import TransientError
from hub_backup.models import RestorePhase
from hub_backup.result import ReconcileResult


class RecordingOrchestrator:
    def __init__(self, result=None, error=None):
        self.result = result or ReconcileResult()
        self.error = error
        self.calls = []

    def reconcile(self, resource, now=None):
        self.calls.append((resource.metadata.name, now))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def schedules():
    return RecordingOrchestrator(ReconcileResult(requeue_after=timedelta(minutes=60)))


@pytest.fixture
def restores():
    return RecordingOrchestrator()


@pytest.fixture
def controller(client, config, schedules, restores) -> Controller:
    return Controller(client, config, schedules=schedules, restores=restores)


def test_new_resources_are_reconciled(client, controller, schedules, restores, now):
    client.backup_schedules.append(backup_schedule())
    client.restores.append(restore())

    assert controller.run_once(now) == 2
    assert schedules.calls == [("schedule-hub-1", now)]
    assert restores.calls == [("restore-acm", now)]


def test_requeue_time_is_honoured(client, controller, schedules, now):
    client.backup_schedules.append(backup_schedule())
    controller.run_once(now)

    assert controller.run_once(now + timedelta(minutes=30)) == 0
    assert controller.run_once(now + timedelta(minutes=60)) == 1
    assert len(schedules.calls) == 2


def test_settled_resource_waits_for_a_generation_change(client, controller, restores, now):
    target = restore()
    client.restores.append(target)
    controller.run_once(now)

    assert controller.run_once(now + timedelta(days=1)) == 0

    target.metadata.generation = 2
    assert controller.run_once(now + timedelta(days=1)) == 1


def test_active_resource_is_polled(client, config, schedules, now):
    class StartingOrchestrator(RecordingOrchestrator):
        def reconcile(self, resource, now=None):
            resource.status.phase = RestorePhase.STARTED
            return super().reconcile(resource, now)

    restores = StartingOrchestrator()
    controller = Controller(client, config, schedules=schedules, restores=restores)
    client.restores.append(restore())
    controller.run_once(now)

    assert controller.run_once(now + timedelta(seconds=config.poll_interval_seconds)) == 1


def test_failures_back_off_exponentially(client, config, schedules, now):
    restores = RecordingOrchestrator(error=TransientError("apiserver unavailable"))
    controller = Controller(client, config, schedules=schedules, restores=restores)
    target = restore()
    client.restores.append(target)

    controller.run_once(now)
    first = controller.state(target)
    assert first.failures == 1
    assert first.due == now + timedelta(seconds=config.poll_interval_seconds)

    controller.run_once(first.due)
    second = controller.state(target)
    assert second.failures == 2
    assert second.due == first.due + timedelta(seconds=2 * config.poll_interval_seconds)


def test_backoff_is_capped(controller, config):
    assert controller.backoff(20) == timedelta(seconds=config.max_retry_backoff_seconds)


def test_resources_being_deleted_are_skipped(client, controller, restores, now):
    target = restore()
    target.metadata.deletion_timestamp = now
    client.restores.append(target)

    assert controller.run_once(now) == 0
    assert restores.calls == []


def test_removed_resources_are_forgotten(client, controller, now):
    target = restore()
    client.restores.append(target)
    controller.run_once(now)

    client.restores.clear()
    controller.run_once(now)

    assert controller.state(target) is None
