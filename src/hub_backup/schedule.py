"""Reconciliation of BackupSchedule resources.

A BackupSchedule owns one engine schedule per backup category. The engine
does not watch its schedules for spec changes, so any drift between the
BackupSchedule and its engine schedules is resolved by deleting them all and
creating them again on the next cycle; they are never edited in place.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from croniter import CroniterBadCronError, croniter

from . import constants
from .cleanup import cleanup_backups
from .client import ClusterClient
from .config import OperatorConfig
from .errors import CollisionError, TransientError, ValidationError
from .models import (
    Backup,
    BackupSchedule,
    BackupTemplate,
    EngineSchedule,
    EngineScheduleSpec,
    ObjectMeta,
    OwnerReference,
    ResourceType,
    SchedulePhase,
    utcnow,
)
from .prepare import prepare_for_backup
from .result import ReconcileResult
from .selector import filter_backups, start_time

LOG = logging.getLogger(__name__)

FAILED_PHASE_MSG = "Velero schedules initialization failed"
NEW_PHASE_MSG = "Velero schedules are initialized"
ENABLED_PHASE_MSG = "Velero schedules are enabled"
UNKNOWN_PHASE_MSG = (
    "Some Velero schedules are not enabled. "
    "If the status doesn't change check the velero pod is running and "
    "that you have created a Velero resource as documented in the install guide."
)
BACKUP_COLLISION_PHASE_MSG = (
    "Backup {backup}, from cluster with id [{other}] is using the same storage location."
    " This is a backup collision with current cluster [{current}] backup."
    " Review and resolve the collision then create a new BackupSchedule resource to"
    " resume backups from this cluster."
)
EMPTY_SCHEDULE_MSG = "Schedule must be a non-empty valid Cron expression"

_STANDARD_FIELDS = 5


# --- Cron handling -------------------------------------------------------------


def parse_cron_expression(expression: str) -> Optional[str]:
    """Return an error message when ``expression`` is not a standard cron expression."""
    fields = expression.split()
    if not expression.startswith("@") and len(fields) != _STANDARD_FIELDS:
        return f"expected exactly {_STANDARD_FIELDS} fields, found {len(fields)}: {fields}"
    try:
        croniter(expression)
    except CroniterBadCronError as exc:
        return str(exc)
    except Exception as exc:  # noqa: BLE001
        # Anything croniter raises makes the expression invalid.
        LOG.info("Unexpected error parsing schedule %r: %s", expression, exc)
        return str(exc) or exc.__class__.__name__
    return None


def parse_cron_schedule(backup_schedule: BackupSchedule) -> List[str]:
    expression = backup_schedule.spec.velero_schedule.strip()
    if not expression:
        return [EMPTY_SCHEDULE_MSG]

    error = parse_cron_expression(expression)
    if error is not None:
        LOG.error("Error parsing schedule %r: %s", expression, error)
        return [f"invalid schedule: {error}"]
    return []


def validate_backup_schedule(backup_schedule: BackupSchedule) -> None:
    errors = parse_cron_schedule(backup_schedule)
    if errors:
        raise ValidationError("BackupSchedule is not valid", errors=errors)


def cron_interval(expression: str, reference: datetime) -> timedelta:
    iterator = croniter(expression, reference)
    first = iterator.get_next(datetime)
    second = iterator.get_next(datetime)
    return second - first


def truncate_to_seconds(value: timedelta) -> timedelta:
    return timedelta(seconds=int(value.total_seconds()))


# --- Engine schedule construction ---------------------------------------------


def backup_template(category: ResourceType, config: OperatorConfig, namespace: str) -> BackupTemplate:
    """Category-specific backup spec for an engine schedule."""
    excluded = sorted({config.local_cluster_name, namespace, *config.excluded_namespaces})
    if category == ResourceType.MANAGED_CLUSTERS:
        return BackupTemplate(
            included_resources=[
                "managedcluster.cluster.open-cluster-management.io",
                "klusterletaddonconfig.agent.open-cluster-management.io",
                "managedclusteraddon.addon.open-cluster-management.io",
                "clusterdeployment.hive.openshift.io",
                "machinepool.hive.openshift.io",
            ],
            excluded_namespaces=[config.local_cluster_name],
            include_cluster_resources=True,
        )
    if category == ResourceType.CREDENTIALS:
        return BackupTemplate(
            included_resources=["secret", "configmap"],
            excluded_namespaces=excluded,
            label_selector={
                "matchExpressions": [{"key": constants.BACKUP_LABEL, "operator": "Exists"}],
            },
        )
    if category == ResourceType.RESOURCES:
        return BackupTemplate(
            included_resources=[
                f"{kind.plural}.{kind.group}" for kind in config.cleanup_resources
            ],
            excluded_namespaces=excluded,
            include_cluster_resources=True,
        )
    return BackupTemplate(
        included_namespaces=[namespace],
        included_resources=[
            f"{constants.BACKUP_SCHEDULE_PLURAL}.{constants.API_GROUP}",
        ],
    )


def owner_reference(backup_schedule: BackupSchedule) -> OwnerReference:
    return OwnerReference(
        api_version=backup_schedule.api_version,
        kind=backup_schedule.kind,
        name=backup_schedule.metadata.name,
        uid=backup_schedule.metadata.uid or "",
        controller=True,
        block_owner_deletion=True,
    )


def build_engine_schedule(
    category: ResourceType,
    backup_schedule: BackupSchedule,
    config: OperatorConfig,
    now: datetime,
) -> EngineSchedule:
    namespace = backup_schedule.metadata.namespace or config.namespace
    template = backup_template(category, config, namespace)
    expression = backup_schedule.spec.velero_schedule

    if category == ResourceType.VALIDATION:
        # Lives exactly one cron interval so an empty location means a broken schedule.
        template.ttl = cron_interval(expression, now)
    else:
        ttl = truncate_to_seconds(backup_schedule.spec.velero_ttl)
        if ttl:
            template.ttl = ttl

    return EngineSchedule(
        metadata=ObjectMeta(
            name=config.schedule_names[category],
            namespace=namespace,
            labels={constants.BACKUP_CLUSTER_LABEL: config.resolved_hub_id},
            owner_references=[owner_reference(backup_schedule)],
        ),
        spec=EngineScheduleSpec(schedule=expression, template=template),
    )


# --- Status helpers ----------------------------------------------------------


def category_of(schedule: EngineSchedule, schedule_names: Dict[ResourceType, str]) -> Optional[ResourceType]:
    for category, name in schedule_names.items():
        if schedule.metadata.name == name:
            return category
    return None


def update_schedule_status(
    schedule: EngineSchedule,
    backup_schedule: BackupSchedule,
    schedule_names: Dict[ResourceType, str],
) -> None:
    category = category_of(schedule, schedule_names)
    if category is not None:
        backup_schedule.status.set_schedule(category, schedule)


def set_schedule_phase(schedules: List[EngineSchedule], backup_schedule: BackupSchedule) -> SchedulePhase:
    """Aggregate the engine schedules' phases into the BackupSchedule phase."""
    status = backup_schedule.status
    if status.phase == SchedulePhase.BACKUP_COLLISION:
        return status.phase

    phase, message = _aggregate(schedules)
    status.phase = phase
    status.last_message = message
    return phase


def _aggregate(schedules: List[EngineSchedule]) -> Tuple[SchedulePhase, str]:
    if not schedules:
        return SchedulePhase.NEW, NEW_PHASE_MSG
    for schedule in schedules:
        phase = schedule.status.phase
        if not phase:
            return SchedulePhase.UNKNOWN, UNKNOWN_PHASE_MSG
        if phase == constants.SCHEDULE_PHASE_NEW:
            return SchedulePhase.NEW, NEW_PHASE_MSG
        if phase == constants.SCHEDULE_PHASE_FAILED_VALIDATION:
            return SchedulePhase.FAILED_VALIDATION, FAILED_PHASE_MSG
    return SchedulePhase.ENABLED, ENABLED_PHASE_MSG


def is_schedule_spec_updated(
    schedules: List[EngineSchedule],
    backup_schedule: BackupSchedule,
    schedule_names: Dict[ResourceType, str],
) -> bool:
    desired_ttl = truncate_to_seconds(backup_schedule.spec.velero_ttl)
    for schedule in schedules:
        # The validation schedule's TTL follows the cron interval instead.
        if schedule.metadata.name != schedule_names[ResourceType.VALIDATION]:
            if truncate_to_seconds(schedule.ttl) != desired_ttl:
                return True
        if schedule.spec.schedule != backup_schedule.spec.velero_schedule:
            return True
    return False


def latest_backup(backups: List[Backup]) -> Optional[Backup]:
    live = filter_backups(
        backups,
        lambda backup: backup.status.phase != constants.BACKUP_PHASE_DELETING,
    )
    if not live:
        return None
    return sorted(live, key=start_time)[-1]


# --- Orchestrator -------------------------------------------------------------


class ScheduleOrchestrator:
    """Drives a BackupSchedule towards one enabled engine schedule per category."""

    def __init__(self, client: ClusterClient, config: OperatorConfig) -> None:
        self._client = client
        self._config = config
        self._names = config.schedule_names

    def reconcile(self, backup_schedule: BackupSchedule, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utcnow()
        meta = backup_schedule.metadata
        namespace = meta.namespace or self._config.namespace
        status = backup_schedule.status

        if status.phase == SchedulePhase.BACKUP_COLLISION:
            LOG.info(
                "BackupSchedule %s/%s is in %s; create a new BackupSchedule to resume backups",
                namespace,
                meta.name,
                status.phase.value,
            )
            return ReconcileResult()

        try:
            validate_backup_schedule(backup_schedule)
        except ValidationError as exc:
            status.phase = SchedulePhase.FAILED_VALIDATION
            status.last_message = ",".join(exc.errors)
            self._client.record_event(
                backup_schedule, constants.EVENT_WARNING, "FailedValidation", status.last_message
            )
            self._cleanup_backups(backup_schedule, namespace)
            self._client.update_backup_schedule_status(backup_schedule)
            return ReconcileResult()

        self._prepare_for_backup(namespace, meta.name)
        schedules = self._client.list_schedules(namespace, meta.name)
        requeue = ReconcileResult(requeue_after=self._config.schedule_requeue_interval)

        if schedules and is_schedule_spec_updated(schedules, backup_schedule, self._names):
            LOG.info("BackupSchedule %s/%s spec changed; recreating engine schedules", namespace, meta.name)
            self.delete_schedules(backup_schedule, schedules)
            status.phase = SchedulePhase.NEW
            status.last_message = NEW_PHASE_MSG
            self._cleanup_backups(backup_schedule, namespace)
            self._client.update_backup_schedule_status(backup_schedule)
            return requeue

        existing = {schedule.metadata.name for schedule in schedules}
        missing = [c for c in self._config.categories if self._names[c] not in existing]
        if missing:
            try:
                self.init_schedules(backup_schedule, missing, now)
            except TransientError as exc:
                LOG.error("Failed to create engine schedules for %s/%s: %s", namespace, meta.name, exc)
                status.phase = SchedulePhase.FAILED
                status.last_message = f"{FAILED_PHASE_MSG}: {exc}"
            else:
                status.phase = SchedulePhase.NEW
                status.last_message = NEW_PHASE_MSG
            self._cleanup_backups(backup_schedule, namespace)
            self._client.update_backup_schedule_status(backup_schedule)
            return requeue

        for schedule in schedules:
            LOG.debug("Updating status with a copy of engine schedule %s", schedule.metadata.name)
            update_schedule_status(schedule, backup_schedule, self._names)
        phase = set_schedule_phase(schedules, backup_schedule)

        if phase == SchedulePhase.ENABLED:
            try:
                self.check_collision(backup_schedule, schedules)
            except CollisionError as exc:
                status.phase = SchedulePhase.BACKUP_COLLISION
                status.last_message = exc.message
                LOG.warning("BackupSchedule %s/%s: %s", namespace, meta.name, exc.message)
                self._client.record_event(
                    backup_schedule, constants.EVENT_WARNING, "BackupCollision", exc.message
                )
                self.delete_schedules(backup_schedule, schedules)
                self._client.update_backup_schedule_status(backup_schedule)
                return ReconcileResult()

        self._cleanup_backups(backup_schedule, namespace)
        self._client.update_backup_schedule_status(backup_schedule)
        return requeue

    def init_schedules(
        self,
        backup_schedule: BackupSchedule,
        categories: List[ResourceType],
        now: datetime,
    ) -> None:
        for category in categories:
            desired = build_engine_schedule(category, backup_schedule, self._config, now)
            created = self._client.create_schedule(desired)
            LOG.info(
                "Engine schedule created name=%s namespace=%s",
                created.metadata.name,
                created.metadata.namespace,
            )
            backup_schedule.status.set_schedule(category, created)

    def delete_schedules(self, backup_schedule: BackupSchedule, schedules: List[EngineSchedule]) -> None:
        for schedule in schedules:
            self._client.delete_schedule(schedule)
            LOG.info(
                "Deleted engine schedule name=%s namespace=%s",
                schedule.metadata.name,
                schedule.metadata.namespace,
            )
        backup_schedule.status.clear_schedules()

    def check_collision(self, backup_schedule: BackupSchedule, schedules: List[EngineSchedule]) -> None:
        """Raise CollisionError when another hub produced the latest resources backup."""
        resources_name = self._names[ResourceType.RESOURCES]
        resources_schedule = next((s for s in schedules if s.metadata.name == resources_name), None)
        if resources_schedule is None:
            return

        namespace = backup_schedule.metadata.namespace or self._config.namespace
        try:
            backups = self._client.list_backups(
                namespace, labels={constants.SCHEDULE_NAME_LABEL: resources_name}
            )
        except TransientError as exc:
            LOG.info("Could not list backups for collision check: %s", exc)
            return

        last = latest_backup(backups)
        if last is None:
            return

        current = resources_schedule.metadata.labels.get(constants.BACKUP_CLUSTER_LABEL, "")
        other = last.metadata.labels.get(constants.BACKUP_CLUSTER_LABEL, "")
        if other != current:
            raise CollisionError(
                BACKUP_COLLISION_PHASE_MSG.format(backup=last.name, other=other, current=current),
                details={"backup": last.name},
            )

    def _prepare_for_backup(self, namespace: str, name: str) -> None:
        try:
            labelled = prepare_for_backup(self._client)
        except TransientError as exc:
            LOG.warning("Labelling secrets for BackupSchedule %s/%s failed: %s", namespace, name, exc)
            return
        if labelled:
            LOG.info("Labelled %d secrets for backup", len(labelled))

    def _cleanup_backups(self, backup_schedule: BackupSchedule, namespace: str) -> None:
        max_total = backup_schedule.spec.max_backups * len(self._config.categories)
        names = [self._names[category] for category in self._config.categories]
        try:
            cleanup_backups(self._client, namespace, names, max_total)
        except TransientError as exc:
            LOG.warning("Backup cleanup failed in %s: %s", namespace, exc)
