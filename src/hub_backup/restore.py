"""Reconciliation of Restore resources.

A Restore owns one engine restore per category it does not skip. When the
Restore keeps syncing with new backups, a newer backup gets a new engine
restore; the status name references point at the current one and the
superseded restores stay behind as history.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from . import constants
from .cleanup import cleanup_restored_resources
from .client import ClusterClient
from .config import OperatorConfig
from .errors import NotFoundError, TransientError
from .models import (
    RESTORE_TYPES,
    CleanupType,
    Condition,
    EngineRestore,
    EngineRestoreSpec,
    ObjectMeta,
    OwnerReference,
    ResourceType,
    Restore,
    RestorePhase,
    find_status_condition,
    set_status_condition,
    utcnow,
)
from .reactivation import ClusterReactivator
from .result import ReconcileResult
from .selector import BackupSelector
from .sync import is_skip_all_restores, is_valid_sync_options

LOG = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = timedelta(minutes=30)
# Once a restore is finished, cluster registration is polled at this interval.
MANAGED_CLUSTER_IMPORT_INTERVAL = timedelta(seconds=20)

FINISHED_PHASES = frozenset(
    {
        constants.RESTORE_PHASE_COMPLETED,
        constants.RESTORE_PHASE_FAILED,
        constants.RESTORE_PHASE_PARTIALLY_FAILED,
        constants.RESTORE_PHASE_FAILED_VALIDATION,
    }
)
RUNNING_PHASES = frozenset({constants.RESTORE_PHASE_NEW, constants.RESTORE_PHASE_IN_PROGRESS})
FAILED_PHASES = frozenset({constants.RESTORE_PHASE_FAILED, constants.RESTORE_PHASE_FAILED_VALIDATION})

SKIPPED_ALL_MSG = "All Velero restores have been skipped"
STARTED_MSG = "Velero restores have been started"
UNKNOWN_MSG = "Some Velero restores have an unknown status"
RUNNING_MSG = "Velero restores are running"
ENABLED_MSG = "Velero restores have run to completion, restore will continue to sync with new backups"
FAILED_MSG = "Velero restore {name} has failed"
PARTIALLY_FAILED_MSG = "Velero restore {name} has partially failed"
FINISHED_MSG = "All Velero restores have run successfully"
RESTORE_COMPLETE_PREFIX = "Restore Complete "


def is_engine_restore_finished(restore: Optional[EngineRestore]) -> bool:
    return restore is not None and restore.status.phase in FINISHED_PHASES


def is_engine_restore_running(restore: Optional[EngineRestore]) -> bool:
    return restore is not None and restore.status.phase in RUNNING_PHASES


def engine_restore_name(restore: Restore, backup_name: str) -> str:
    return f"{restore.metadata.name}-{backup_name}"


def is_sync_active(restore: Restore) -> bool:
    """Syncing stops once managed clusters have been restored."""
    valid, _ = is_valid_sync_options(restore)
    return valid and not restore.status.restore_name(ResourceType.MANAGED_CLUSTERS)


def completed_restore_names(restore: Restore) -> List[str]:
    """Engine restores already reported through the RestoreComplete condition."""
    condition = find_status_condition(restore.status.conditions, constants.CONDITION_RESTORE_COMPLETE)
    if condition is None or not condition.message.startswith(RESTORE_COMPLETE_PREFIX):
        return []
    return condition.message[len(RESTORE_COMPLETE_PREFIX) :].split(", ")


def current_restores(restore: Restore, engine_restores: List[EngineRestore]) -> List[EngineRestore]:
    """The engine restore each category currently points at; all of them if none is recorded."""
    by_name = {engine_restore.metadata.name: engine_restore for engine_restore in engine_restores}
    current = []
    for category in RESTORE_TYPES:
        name = restore.status.restore_name(category)
        if name and name in by_name:
            current.append(by_name[name])
    return current or list(engine_restores)


def set_restore_phase(engine_restores: Optional[List[EngineRestore]], restore: Restore) -> RestorePhase:
    """Compute the Restore phase from its engine restores and store it in status."""
    status = restore.status
    if not engine_restores:
        if is_skip_all_restores(restore):
            status.phase, status.last_message = RestorePhase.FINISHED, SKIPPED_ALL_MSG
        else:
            status.phase, status.last_message = RestorePhase.STARTED, STARTED_MSG
        return status.phase

    current = current_restores(restore, engine_restores)
    known = RUNNING_PHASES | FINISHED_PHASES
    failed = [r for r in current if r.status.phase in FAILED_PHASES]
    partial = [r for r in current if r.status.phase == constants.RESTORE_PHASE_PARTIALLY_FAILED]

    if any(r.status.phase not in known for r in current):
        status.phase, status.last_message = RestorePhase.UNKNOWN, UNKNOWN_MSG
    elif any(r.status.phase in RUNNING_PHASES for r in current):
        status.phase, status.last_message = RestorePhase.RUNNING, RUNNING_MSG
    elif is_sync_active(restore):
        status.phase, status.last_message = RestorePhase.ENABLED, ENABLED_MSG
    elif failed:
        status.phase = RestorePhase.FAILED
        status.last_message = FAILED_MSG.format(name=failed[0].metadata.name)
    elif partial:
        status.phase = RestorePhase.PARTIALLY_FAILED
        status.last_message = PARTIALLY_FAILED_MSG.format(name=partial[0].metadata.name)
    else:
        status.phase, status.last_message = RestorePhase.FINISHED, FINISHED_MSG
    return status.phase


def send_result(
    restore: Restore,
    error: Optional[Exception] = None,
    default_sync_interval: timedelta = DEFAULT_SYNC_INTERVAL,
    cluster_import_interval: timedelta = MANAGED_CLUSTER_IMPORT_INTERVAL,
) -> ReconcileResult:
    """Decide when ``restore`` should be reconciled again; ``error`` is re-raised as is."""
    if error is not None:
        raise error

    phase = restore.status.phase
    sync_interval = restore.spec.restore_sync_interval or default_sync_interval
    if phase == RestorePhase.ENABLED and is_valid_sync_options(restore)[0]:
        return ReconcileResult(requeue_after=sync_interval)
    if phase == RestorePhase.FINISHED:
        return ReconcileResult(requeue_after=cluster_import_interval)
    if phase == RestorePhase.STARTED and not any(
        restore.status.restore_name(category) for category in RESTORE_TYPES
    ):
        # Nothing could be created yet; look for backups again later.
        return ReconcileResult(requeue_after=sync_interval)
    return ReconcileResult()


class RestoreOrchestrator:
    """Drives a Restore through its engine restores and post-restore activation."""

    def __init__(
        self,
        client: ClusterClient,
        config: OperatorConfig,
        selector: Optional[BackupSelector] = None,
        reactivator: Optional[ClusterReactivator] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._names = config.schedule_names
        self._selector = selector or BackupSelector(client, config.schedule_names)
        self._reactivator = reactivator or ClusterReactivator(client, config.local_cluster_name)

    def reconcile(self, restore: Restore, now: Optional[datetime] = None) -> ReconcileResult:
        error: Optional[Exception] = None
        try:
            self._reconcile(restore, now or utcnow())
        except TransientError as exc:
            LOG.error(
                "Reconciliation of restore %s/%s failed: %s",
                restore.metadata.namespace,
                restore.metadata.name,
                exc,
            )
            error = exc
        return send_result(
            restore,
            error,
            default_sync_interval=self._config.default_sync_interval,
            cluster_import_interval=self._config.cluster_import_interval,
        )

    def _reconcile(self, restore: Restore, now: datetime) -> None:
        namespace = restore.metadata.namespace or self._config.namespace
        name = restore.metadata.name

        if restore.spec.sync_restore_with_new_backups:
            self.validate_sync_options(restore, now)

        # Restores created during this cycle have no engine phase yet; the
        # phase is computed from what existed when the cycle started.
        engine_restores = self._client.list_engine_restores(namespace, name)
        if not engine_restores:
            self.init_restores(restore, now)
        else:
            self.update_conditions(restore, engine_restores, now)
            if restore.status.phase == RestorePhase.ENABLED and is_sync_active(restore):
                self.sync_new_backups(restore, engine_restores, now)

        phase = set_restore_phase(engine_restores, restore)
        if phase in (RestorePhase.FINISHED, RestorePhase.ENABLED):
            self.activate_clusters(restore, engine_restores, now)

        self._client.update_restore_status(restore)

    def validate_sync_options(self, restore: Restore, now: datetime) -> bool:
        valid, message = is_valid_sync_options(restore)
        if valid:
            set_status_condition(
                restore.status.conditions,
                Condition(type=constants.CONDITION_SYNC_VALIDATION, status="False", reason="Valid"),
                now,
            )
            return True

        changed = set_status_condition(
            restore.status.conditions,
            Condition(
                type=constants.CONDITION_SYNC_VALIDATION,
                status="True",
                reason=constants.REASON_FAILED_VALIDATION,
                message=message,
            ),
            now,
        )
        if changed:
            LOG.warning("Restore %s will not sync with new backups: %s", restore.metadata.name, message)
            self._client.record_event(restore, constants.EVENT_WARNING, "SyncValidationFailed", message)
        return False

    def init_restores(self, restore: Restore, now: datetime) -> List[EngineRestore]:
        namespace = restore.metadata.namespace or self._config.namespace
        created: List[EngineRestore] = []
        for category in RESTORE_TYPES:
            selection = restore.spec.backup_name(category)
            if selection == constants.SKIP_RESTORE:
                LOG.info("Skipping %s restore for %s/%s", category.value, namespace, restore.metadata.name)
                continue
            try:
                backup_name = self._selector.select_backup(namespace, category, selection)
            except NotFoundError as exc:
                LOG.info(
                    "backup name not found, skipping restore for name=%s namespace=%s type=%s: %s",
                    restore.metadata.name,
                    namespace,
                    category.value,
                    exc.message,
                )
                self._client.record_event(
                    restore,
                    constants.EVENT_WARNING,
                    "BackupNotFound",
                    f"{category.value}: {exc.message}",
                )
                continue
            created.append(self.create_restore(restore, category, backup_name, now))
        return created

    def create_restore(
        self,
        restore: Restore,
        category: ResourceType,
        backup_name: str,
        now: datetime,
    ) -> EngineRestore:
        namespace = restore.metadata.namespace or self._config.namespace
        desired = EngineRestore(
            metadata=ObjectMeta(
                name=engine_restore_name(restore, backup_name),
                namespace=namespace,
                owner_references=[
                    OwnerReference(
                        api_version=restore.api_version,
                        kind=restore.kind,
                        name=restore.metadata.name,
                        uid=restore.metadata.uid or "",
                        controller=True,
                        block_owner_deletion=True,
                    )
                ],
            ),
            spec=EngineRestoreSpec(backup_name=backup_name),
        )
        created = self._client.create_engine_restore(desired)
        name = created.metadata.name
        LOG.info("Engine restore created name=%s namespace=%s", name, namespace)
        self._client.record_event(restore, constants.EVENT_NORMAL, "Velero restore created", name)

        restore.status.set_restore_name(category, name)
        set_status_condition(
            restore.status.conditions,
            Condition(
                type=constants.CONDITION_RESTORE_STARTED,
                status="True",
                reason=constants.REASON_STARTED,
                message=f"Velero restore {name} started",
            ),
            now,
        )
        return created

    def update_conditions(self, restore: Restore, engine_restores: List[EngineRestore], now: datetime) -> None:
        conditions = restore.status.conditions
        managed_clusters_name = self._names[ResourceType.MANAGED_CLUSTERS]
        reported = set(completed_restore_names(restore))
        finished: List[str] = []
        for engine_restore in current_restores(restore, engine_restores):
            name = engine_restore.metadata.name
            if is_engine_restore_finished(engine_restore):
                # Managed clusters are complete only after activation.
                if managed_clusters_name in name:
                    continue
                finished.append(name)
                if name not in reported:
                    self._client.record_event(
                        restore, constants.EVENT_NORMAL, "Velero Restore finished", f"{name} finished"
                    )
                    self.cleanup_after(restore, engine_restore)
            elif is_engine_restore_running(engine_restore):
                set_status_condition(
                    conditions,
                    Condition(
                        type=constants.CONDITION_RESTORE_STARTED,
                        status="True",
                        reason=constants.REASON_RUNNING,
                        message=f"Velero Restore {name} is running",
                    ),
                    now,
                )
            else:
                set_status_condition(
                    conditions,
                    Condition(
                        type=constants.CONDITION_RESTORE_STARTED,
                        status="False",
                        reason=constants.REASON_RUNNING,
                        message=f"Velero Restore {name} is running",
                    ),
                    now,
                )

        if finished:
            set_status_condition(
                conditions,
                Condition(
                    type=constants.CONDITION_RESTORE_COMPLETE,
                    status="True",
                    reason=constants.REASON_FINISHED,
                    message=RESTORE_COMPLETE_PREFIX + ", ".join(sorted(finished)),
                ),
                now,
            )

    def cleanup_after(self, restore: Restore, engine_restore: EngineRestore) -> None:
        """Remove resources the completed resources restore did not bring back."""
        if restore.spec.cleanup_before_restore != CleanupType.ALL:
            return
        if engine_restore.status.phase != constants.RESTORE_PHASE_COMPLETED:
            return
        if self._names[ResourceType.RESOURCES] not in engine_restore.spec.backup_name:
            return

        deleted = cleanup_restored_resources(
            self._client,
            self._config.cleanup_resources,
            engine_restore.metadata.name,
            self._config.excluded_namespaces,
            self._config.local_cluster_name,
        )
        if deleted:
            LOG.info("Cleanup after restore %s removed %d resources", engine_restore.metadata.name, len(deleted))

    def sync_new_backups(
        self,
        restore: Restore,
        engine_restores: List[EngineRestore],
        now: datetime,
    ) -> List[EngineRestore]:
        """Create restores for backups newer than the ones last restored."""
        namespace = restore.metadata.namespace or self._config.namespace
        by_name: Dict[str, EngineRestore] = {r.metadata.name: r for r in engine_restores}
        created: List[EngineRestore] = []
        for category in RESTORE_TYPES:
            selection = restore.spec.backup_name(category)
            if category == ResourceType.MANAGED_CLUSTERS:
                # Turning managed clusters on while syncing restores them and ends syncing.
                if selection in (None, constants.SKIP_RESTORE):
                    continue
            elif selection != constants.LATEST_BACKUP:
                continue

            current = by_name.get(restore.status.restore_name(category) or "")
            if current is not None and not is_engine_restore_finished(current):
                continue

            try:
                backup_name = self._selector.select_backup(namespace, category, selection)
            except NotFoundError as exc:
                LOG.info("No new %s backup for restore %s: %s", category.value, restore.metadata.name, exc.message)
                continue

            if engine_restore_name(restore, backup_name) in by_name:
                continue
            created.append(self.create_restore(restore, category, backup_name, now))
        return created

    def activate_clusters(self, restore: Restore, engine_restores: List[EngineRestore], now: datetime) -> List[str]:
        name = restore.status.restore_name(ResourceType.MANAGED_CLUSTERS)
        if not name:
            return []
        managed_clusters_restore = next((r for r in engine_restores if r.metadata.name == name), None)
        if not is_engine_restore_finished(managed_clusters_restore):
            return []

        clusters = self._client.list_managed_clusters()
        secrets = self._client.list_secrets(labels={constants.MSA_LABEL: "true"})
        activated = self._reactivator.reactivate(secrets, clusters, now)
        if activated:
            self._client.record_event(
                restore,
                constants.EVENT_NORMAL,
                "ManagedClustersReactivated",
                ", ".join(activated),
            )
        return activated
