"""Polling controller that drives BackupSchedules and Restores.

Each resource is reconciled when it is first seen, when its generation
changes, or when its requeue time is reached. Failed cycles are retried with
a capped exponential backoff.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union

from .client import ClusterClient
from .config import OperatorConfig
from .errors import TransientError
from .models import BackupSchedule, Restore, RestorePhase, SchedulePhase, utcnow
from .restore import RestoreOrchestrator
from .result import ReconcileResult
from .schedule import ScheduleOrchestrator

LOG = logging.getLogger(__name__)

Resource = Union[BackupSchedule, Restore]
Key = Tuple[str, str, str]

# Phases waiting on engine progress; polled on every tick instead of waiting for an edit.
ACTIVE_SCHEDULE_PHASES = frozenset({SchedulePhase.NEW, SchedulePhase.UNKNOWN, SchedulePhase.FAILED})
ACTIVE_RESTORE_PHASES = frozenset({RestorePhase.STARTED, RestorePhase.RUNNING, RestorePhase.UNKNOWN})


@dataclass
class ResourceState:
    generation: Optional[int]
    due: Optional[datetime]
    failures: int = 0


class Controller:
    def __init__(
        self,
        client: ClusterClient,
        config: OperatorConfig,
        schedules: Optional[ScheduleOrchestrator] = None,
        restores: Optional[RestoreOrchestrator] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._schedules = schedules or ScheduleOrchestrator(client, config)
        self._restores = restores or RestoreOrchestrator(client, config)
        self._state: Dict[Key, ResourceState] = {}

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self._config.poll_interval_seconds)

    def state(self, resource: Resource) -> Optional[ResourceState]:
        return self._state.get(_key(resource))

    def run_once(self, now: Optional[datetime] = None) -> int:
        """Reconcile every resource that is due; returns how many were reconciled."""
        now = now or utcnow()
        namespace = self._config.namespace
        seen = set()
        reconciled = 0

        for backup_schedule in self._client.list_backup_schedules(namespace):
            seen.add(_key(backup_schedule))
            if self._process(backup_schedule, self._schedules.reconcile, now):
                reconciled += 1

        for restore in self._client.list_restores(namespace):
            seen.add(_key(restore))
            if self._process(restore, self._restores.reconcile, now):
                reconciled += 1

        for key in list(self._state):
            if key not in seen:
                del self._state[key]
        return reconciled

    def run(self, stop_event: threading.Event) -> None:
        LOG.info("Watching namespace %s every %ss", self._config.namespace, self._config.poll_interval_seconds)
        while not stop_event.is_set():
            try:
                self.run_once()
            except TransientError as exc:
                LOG.error("Listing resources failed: %s", exc)
            stop_event.wait(self._config.poll_interval_seconds)
        LOG.info("Controller stopped")

    def is_due(self, resource: Resource, now: datetime) -> bool:
        if resource.metadata.deletion_timestamp is not None:
            return False
        state = self._state.get(_key(resource))
        if state is None or state.generation != resource.metadata.generation:
            return True
        return state.due is not None and now >= state.due

    def _process(
        self,
        resource: Resource,
        reconcile: Callable[[Resource, datetime], ReconcileResult],
        now: datetime,
    ) -> bool:
        if not self.is_due(resource, now):
            return False

        key = _key(resource)
        previous = self._state.get(key)
        try:
            result = reconcile(resource, now)
        except Exception as exc:  # noqa: BLE001
            failures = (previous.failures if previous else 0) + 1
            backoff = self.backoff(failures)
            LOG.error(
                "Reconciling %s %s/%s failed (attempt %d), retrying in %ss: %s",
                key[0],
                key[1],
                key[2],
                failures,
                int(backoff.total_seconds()),
                exc,
            )
            self._state[key] = ResourceState(resource.metadata.generation, now + backoff, failures)
            return True

        self._state[key] = ResourceState(resource.metadata.generation, self._next_due(resource, result, now))
        return True

    def backoff(self, failures: int) -> timedelta:
        seconds = self._config.poll_interval_seconds * (2 ** (failures - 1))
        return timedelta(seconds=min(seconds, self._config.max_retry_backoff_seconds))

    def _next_due(self, resource: Resource, result: ReconcileResult, now: datetime) -> Optional[datetime]:
        due = now + result.requeue_after if result.requeue_after is not None else None
        if _is_active(resource):
            poll = now + self.poll_interval
            due = poll if due is None else min(due, poll)
        return due


def _key(resource: Resource) -> Key:
    return (resource.kind, resource.metadata.namespace or "", resource.metadata.name)


def _is_active(resource: Resource) -> bool:
    if isinstance(resource, BackupSchedule):
        return resource.status.phase in ACTIVE_SCHEDULE_PHASES
    return resource.status.phase in ACTIVE_RESTORE_PHASES
