from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from . import constants
from .client import ClusterClient
from .errors import NotFoundError
from .models import Backup, ResourceType

LOG = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def filter_backups(backups: Iterable[Backup], predicate: Callable[[Backup], bool]) -> List[Backup]:
    return [backup for backup in backups if predicate(backup)]


def start_time(backup: Backup) -> datetime:
    return backup.status.start_timestamp or _EPOCH


def reliability_key(backup: Backup) -> Tuple[int, float]:
    """Sort key where the best candidate comes first.

    Fewer errors wins; among equal error counts the most recent start wins.
    """
    return (backup.status.errors, -start_time(backup).timestamp())


def most_recent_with_less_errors(backups: Iterable[Backup]) -> List[Backup]:
    return sorted(backups, key=reliability_key)


class BackupSelector:
    """Chooses, per category, which stored backup a restore should use."""

    def __init__(self, client: ClusterClient, schedule_names: Dict[ResourceType, str]) -> None:
        self._client = client
        self._schedule_names = schedule_names

    def select_backup(
        self,
        namespace: str,
        category: ResourceType,
        explicit_name: Optional[str] = None,
    ) -> str:
        if explicit_name and explicit_name != constants.LATEST_BACKUP:
            if self._client.get_backup(namespace, explicit_name) is None:
                raise NotFoundError(
                    f"cannot find {explicit_name} Velero Backup",
                    details={"namespace": namespace, "category": category.value},
                )
            return explicit_name

        schedule_name = self._schedule_names[category]
        related = filter_backups(
            self._client.list_backups(namespace),
            lambda backup: schedule_name in backup.name,
        )
        if not related:
            raise NotFoundError(
                "no backups found",
                details={"namespace": namespace, "category": category.value},
            )

        best = most_recent_with_less_errors(related)[0]
        LOG.debug(
            "Selected backup %s for %s out of %d candidates",
            best.name,
            category.value,
            len(related),
        )
        return best.name
