"""
Test fixtures for hub-backup tests.

Provides an in-memory cluster client and a ready-to-use operator config.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Set, Tuple

import pytest

from hub_backup import constants
from hub_backup.config import OperatorConfig, ValueRef
from hub_backup.errors import TransientError
from hub_backup.index import OwnerIndex
from hub_backup.models import (
    Backup,
    BackupSchedule,
    DynamicResource,
    EngineRestore,
    EngineSchedule,
    ManagedCluster,
    ResourceKind,
    Restore,
    Secret,
)

NAMESPACE = "open-cluster-management-backup"
NOW = datetime(2022, 7, 26, 15, 25, 34, tzinfo=timezone.utc)


class FakeClusterClient:
    """In-memory ClusterClient; operations listed in ``fail_on`` raise TransientError."""

    def __init__(self) -> None:
        self.backup_schedules: List[BackupSchedule] = []
        self.restores: List[Restore] = []
        self.schedules: List[EngineSchedule] = []
        self.engine_restores: List[EngineRestore] = []
        self.backups: List[Backup] = []
        self.managed_clusters: List[ManagedCluster] = []
        self.secrets: List[Secret] = []
        self.dynamic: Dict[str, List[DynamicResource]] = {}
        self.events: List[Tuple[str, str, str, str]] = []
        self.deleted_schedules: List[str] = []
        self.deleted_backups: List[str] = []
        self.deleted_dynamic: List[str] = []
        self.applied_secrets: List[Secret] = []
        self.patched: List[Tuple[str, Dict[str, Optional[str]]]] = []
        self.status_updates: List[str] = []
        self.fail_on: Set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise TransientError(f"{operation} failed", details={"status": 500})

    # Desired state
    def list_backup_schedules(self, namespace: str) -> List[BackupSchedule]:
        self._check("list_backup_schedules")
        return [s for s in self.backup_schedules if s.metadata.namespace == namespace]

    def update_backup_schedule_status(self, schedule: BackupSchedule) -> None:
        self._check("update_backup_schedule_status")
        self.status_updates.append(schedule.metadata.name)

    def list_restores(self, namespace: str) -> List[Restore]:
        self._check("list_restores")
        return [r for r in self.restores if r.metadata.namespace == namespace]

    def update_restore_status(self, restore: Restore) -> None:
        self._check("update_restore_status")
        self.status_updates.append(restore.metadata.name)

    # Backup engine
    def list_schedules(self, namespace: str, owner: str) -> List[EngineSchedule]:
        self._check("list_schedules")
        index = OwnerIndex.build(constants.API_GROUP_VERSION, constants.BACKUP_SCHEDULE_KIND, self.schedules)
        return index.children_of(namespace, owner)

    def create_schedule(self, schedule: EngineSchedule) -> EngineSchedule:
        self._check("create_schedule")
        created = schedule.model_copy(deep=True)
        self.schedules.append(created)
        return created

    def delete_schedule(self, schedule: EngineSchedule) -> None:
        self._check("delete_schedule")
        self.schedules = [s for s in self.schedules if s.metadata.name != schedule.metadata.name]
        self.deleted_schedules.append(schedule.metadata.name)

    def list_engine_restores(self, namespace: str, owner: str) -> List[EngineRestore]:
        self._check("list_engine_restores")
        index = OwnerIndex.build(constants.API_GROUP_VERSION, constants.RESTORE_KIND, self.engine_restores)
        return index.children_of(namespace, owner)

    def create_engine_restore(self, restore: EngineRestore) -> EngineRestore:
        self._check("create_engine_restore")
        created = restore.model_copy(deep=True)
        self.engine_restores.append(created)
        return created

    def list_backups(self, namespace: str, labels: Optional[Mapping[str, str]] = None) -> List[Backup]:
        self._check("list_backups")
        return [
            b
            for b in self.backups
            if b.metadata.namespace == namespace and _matches(b.metadata.labels, labels)
        ]

    def get_backup(self, namespace: str, name: str) -> Optional[Backup]:
        self._check("get_backup")
        for backup in self.backups:
            if backup.metadata.namespace == namespace and backup.name == name:
                return backup
        return None

    def delete_backup(self, backup: Backup) -> None:
        self._check("delete_backup")
        backup.status.phase = constants.BACKUP_PHASE_DELETING
        self.deleted_backups.append(backup.name)

    # Fleet registry
    def list_managed_clusters(self) -> List[ManagedCluster]:
        self._check("list_managed_clusters")
        return list(self.managed_clusters)

    def list_secrets(
        self,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Secret]:
        self._check("list_secrets")
        return [
            s
            for s in self.secrets
            if (namespace is None or s.metadata.namespace == namespace) and _matches(s.metadata.labels, labels)
        ]

    def apply_secret(self, secret: Secret) -> Secret:
        self._check("apply_secret")
        self.applied_secrets.append(secret)
        return secret

    def patch_secret_labels(self, secret: Secret, labels: Mapping[str, Optional[str]]) -> None:
        self._check("patch_secret_labels")
        _merge_labels(secret.metadata.labels, labels)
        self.patched.append((f"secrets/{secret.metadata.namespace}/{secret.metadata.name}", dict(labels)))

    # Generic resources
    def list_dynamic(self, kind: ResourceKind, label_selector: str = "") -> List[DynamicResource]:
        self._check("list_dynamic")
        resources = self.dynamic.get(kind.plural, [])
        if not label_selector:
            return list(resources)
        return [r for r in resources if label_selector in r.metadata.labels]

    def delete_dynamic(self, kind: ResourceKind, resource: DynamicResource) -> None:
        self._check("delete_dynamic")
        self.deleted_dynamic.append(f"{kind.plural}/{resource.metadata.name}")

    def patch_dynamic_labels(
        self,
        kind: ResourceKind,
        resource: DynamicResource,
        labels: Mapping[str, Optional[str]],
    ) -> None:
        self._check("patch_dynamic_labels")
        _merge_labels(resource.metadata.labels, labels)
        self.patched.append((f"{kind.plural}/{resource.metadata.namespace}/{resource.metadata.name}", dict(labels)))

    # Events
    def record_event(self, subject, event_type: str, reason: str, message: str) -> None:
        self.events.append((subject.metadata.name, event_type, reason, message))

    def event_reasons(self) -> List[str]:
        return [reason for _, _, reason, _ in self.events]


def _merge_labels(labels: Dict[str, str], changes: Mapping[str, Optional[str]]) -> None:
    for key, value in changes.items():
        if value is None:
            labels.pop(key, None)
        else:
            labels[key] = value


def _matches(actual: Mapping[str, str], wanted: Optional[Mapping[str, str]]) -> bool:
    if not wanted:
        return True
    return all(actual.get(key) == value for key, value in wanted.items())


@pytest.fixture
def client() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture
def config() -> OperatorConfig:
    return OperatorConfig(hub_id=ValueRef(value="hub-1"), namespace=NAMESPACE)


@pytest.fixture
def now() -> datetime:
    return NOW
