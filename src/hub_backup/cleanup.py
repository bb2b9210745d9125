from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from . import constants
from .client import ClusterClient
from .models import Backup, DynamicResource, ResourceKind
from .selector import filter_backups, start_time

LOG = logging.getLogger(__name__)


def deletion_order(backups: Iterable[Backup]) -> List[Backup]:
    """Oldest first; among equal start times the one with more errors first."""
    return sorted(backups, key=lambda backup: (start_time(backup), -backup.status.errors))


def cleanup_backups(
    client: ClusterClient,
    namespace: str,
    schedule_names: Sequence[str],
    max_total: int,
) -> List[str]:
    """Delete the backups produced by ``schedule_names`` beyond ``max_total``.

    Backups already being deleted are neither counted nor deleted again.
    Returns the names of the backups whose deletion was requested.
    """
    if max_total <= 0:
        return []

    backups = filter_backups(
        client.list_backups(namespace),
        lambda backup: backup.status.phase != constants.BACKUP_PHASE_DELETING
        and any(name in backup.name for name in schedule_names),
    )
    surplus = len(backups) - max_total
    if surplus <= 0:
        return []

    deleted: List[str] = []
    for backup in deletion_order(backups)[:surplus]:
        LOG.info("Removing expired backup %s", backup.name)
        client.delete_backup(backup)
        deleted.append(backup.name)
    return deleted


def is_deletion_suppressed(
    resource: DynamicResource,
    namespaced: bool,
    excluded_namespaces: Sequence[str],
    local_namespace: str,
) -> bool:
    if not namespaced:
        return False
    namespace = resource.metadata.namespace or ""
    if namespace == local_namespace or namespace in excluded_namespaces:
        return True
    return resource.metadata.labels.get(constants.EXCLUDE_FROM_BACKUP_LABEL) == "true"


def delete_dynamic_resource(
    client: ClusterClient,
    kind: ResourceKind,
    resource: DynamicResource,
    excluded_namespaces: Sequence[str],
    local_namespace: str,
) -> bool:
    """Delete ``resource`` unless it is protected; returns whether a delete was issued.

    Namespaced resources in the local cluster namespace, in an excluded
    namespace, or labelled as excluded from backup are left alone.
    Cluster-scoped resources are always eligible.
    """
    if is_deletion_suppressed(resource, kind.namespaced, excluded_namespaces, local_namespace):
        LOG.debug(
            "Skipping deletion of %s %s/%s",
            resource.kind,
            resource.metadata.namespace,
            resource.metadata.name,
        )
        return False

    LOG.info("Deleting %s %s", resource.kind or kind.plural, resource.metadata.name)
    client.delete_dynamic(kind, resource)
    return True


def cleanup_restored_resources(
    client: ClusterClient,
    kinds: Sequence[ResourceKind],
    restore_name: str,
    excluded_namespaces: Sequence[str],
    local_namespace: str,
) -> List[str]:
    """Remove backed-up resources that the restore ``restore_name`` did not bring back.

    Only resources carrying the backup label are candidates; anything the
    engine stamped with this restore's name is kept.
    """
    deleted: List[str] = []
    for kind in kinds:
        for resource in client.list_dynamic(kind, constants.BACKUP_LABEL):
            if resource.metadata.labels.get(constants.RESTORE_NAME_LABEL) == restore_name:
                continue
            if delete_dynamic_resource(client, kind, resource, excluded_namespaces, local_namespace):
                deleted.append(f"{kind.plural}/{resource.metadata.name}")
    return deleted
