from __future__ import annotations

from typing import Tuple

from . import constants
from .models import RESTORE_TYPES, CleanupType, ResourceType, Restore


def is_valid_sync_options(restore: Restore) -> Tuple[bool, str]:
    """Check whether ``restore`` may keep syncing with new backups.

    Returns the verdict and, when invalid, a message naming the first rule
    that failed. Unset backup names are invalid input here, not "skip".
    """
    spec = restore.spec
    if not spec.sync_restore_with_new_backups:
        return False, "syncRestoreWithNewBackups is not enabled"

    if spec.cleanup_before_restore != CleanupType.ALL:
        return False, (
            "syncRestoreWithNewBackups requires cleanupBeforeRestore to be set to "
            f"{CleanupType.ALL.value}"
        )

    managed_clusters = spec.backup_name(ResourceType.MANAGED_CLUSTERS)
    credentials = spec.backup_name(ResourceType.CREDENTIALS)
    resources = spec.backup_name(ResourceType.RESOURCES)

    if managed_clusters is None or credentials is None or resources is None:
        return False, "all backup names must be set when syncRestoreWithNewBackups is enabled"

    if resources != constants.LATEST_BACKUP:
        return False, "veleroResourcesBackupName must be set to latest to sync with new backups"

    if credentials not in (constants.LATEST_BACKUP, constants.SKIP_RESTORE):
        return False, (
            "veleroCredentialsBackupName must be set to latest or skip to sync with new backups"
        )

    return True, ""


def is_skip_all_restores(restore: Restore) -> bool:
    """True when no category selects a backup; unset counts as skip."""
    for category in RESTORE_TYPES:
        name = restore.spec.backup_name(category)
        if name is not None and name != constants.SKIP_RESTORE:
            return False
    return True
