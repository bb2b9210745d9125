from __future__ import annotations

from typing import List, Mapping, Optional, Protocol, Union

from .models import (
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

EventSubject = Union[BackupSchedule, Restore]


class ClusterClient(Protocol):
    """Everything the orchestrators read from or write to the cluster.

    Implementations raise ``TransientError`` when a call fails and return
    ``None`` from ``get_*`` methods when the object does not exist.
    """

    # Desired state
    def list_backup_schedules(self, namespace: str) -> List[BackupSchedule]:
        ...

    def update_backup_schedule_status(self, schedule: BackupSchedule) -> None:
        ...

    def list_restores(self, namespace: str) -> List[Restore]:
        ...

    def update_restore_status(self, restore: Restore) -> None:
        ...

    # Backup engine
    def list_schedules(self, namespace: str, owner: str) -> List[EngineSchedule]:
        ...

    def create_schedule(self, schedule: EngineSchedule) -> EngineSchedule:
        ...

    def delete_schedule(self, schedule: EngineSchedule) -> None:
        ...

    def list_engine_restores(self, namespace: str, owner: str) -> List[EngineRestore]:
        ...

    def create_engine_restore(self, restore: EngineRestore) -> EngineRestore:
        ...

    def list_backups(self, namespace: str, labels: Optional[Mapping[str, str]] = None) -> List[Backup]:
        ...

    def get_backup(self, namespace: str, name: str) -> Optional[Backup]:
        ...

    def delete_backup(self, backup: Backup) -> None:
        ...

    # Fleet registry
    def list_managed_clusters(self) -> List[ManagedCluster]:
        ...

    def list_secrets(
        self,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Secret]:
        ...

    def apply_secret(self, secret: Secret) -> Secret:
        ...

    def patch_secret_labels(self, secret: Secret, labels: Mapping[str, Optional[str]]) -> None:
        """Merge ``labels`` into the secret; a ``None`` value removes the label."""
        ...

    # Generic resources
    def list_dynamic(self, kind: ResourceKind, label_selector: str = "") -> List[DynamicResource]:
        ...

    def delete_dynamic(self, kind: ResourceKind, resource: DynamicResource) -> None:
        ...

    def patch_dynamic_labels(
        self,
        kind: ResourceKind,
        resource: DynamicResource,
        labels: Mapping[str, Optional[str]],
    ) -> None:
        ...

    # Events
    def record_event(self, subject: EventSubject, event_type: str, reason: str, message: str) -> None:
        ...
