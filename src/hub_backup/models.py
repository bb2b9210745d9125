"""Resource models for the hub's desired state and the backup engine's objects.

Every model parses from, and serialises back to, the Kubernetes JSON
representation (camelCase keys). Only the fields the orchestrators read or
write are modelled; unknown keys are ignored.
"""

from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from . import constants

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s|us|µs|ns)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(value: Any) -> timedelta:
    """Parse a Go style duration ("72h0m0s", "15m") into a timedelta."""
    if value is None or value == "":
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    text = str(value).strip()
    if text == "0":
        return timedelta(0)
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration '{value}'")
    return timedelta(seconds=total)


def format_duration(value: Optional[timedelta]) -> str:
    """Render a timedelta the way the Kubernetes API server does ("1h30m0s")."""
    seconds = int(value.total_seconds()) if value else 0
    if seconds == 0:
        return "0s"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceType(str, Enum):
    """Backup category. Each category is backed up by its own engine schedule."""

    MANAGED_CLUSTERS = "managedClusters"
    CREDENTIALS = "credentials"
    RESOURCES = "resources"
    VALIDATION = "validation"


# Categories that are always backed up and can be restored.
RESTORE_TYPES = (
    ResourceType.MANAGED_CLUSTERS,
    ResourceType.CREDENTIALS,
    ResourceType.RESOURCES,
)


class SchedulePhase(str, Enum):
    NEW = "New"
    FAILED_VALIDATION = "FailedValidation"
    FAILED = "Failed"
    UNKNOWN = "Unknown"
    ENABLED = "Enabled"
    BACKUP_COLLISION = "BackupCollision"


class RestorePhase(str, Enum):
    STARTED = "Started"
    RUNNING = "Running"
    ENABLED = "Enabled"
    FINISHED = "Finished"
    FAILED_VALIDATION = "FailedValidation"
    UNKNOWN = "Unknown"
    FAILED = "Failed"
    PARTIALLY_FAILED = "PartiallyFailed"


class CleanupType(str, Enum):
    NONE = "None"
    ALL = "All"


class KubeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# --- Metadata ----------------------------------------------------------------


class OwnerReference(KubeModel):
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


class ObjectMeta(KubeModel):
    name: str = ""
    namespace: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    uid: Optional[str] = None
    generation: Optional[int] = None
    resource_version: Optional[str] = None
    owner_references: List[OwnerReference] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def _none_to_dict(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("owner_references", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def controller_of(self) -> Optional[OwnerReference]:
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None


class Condition(KubeModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


def find_status_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_status_condition(
    conditions: List[Condition],
    new: Condition,
    now: Optional[datetime] = None,
) -> bool:
    """Add or update ``new`` in ``conditions``; returns True when anything changed.

    The transition time only moves when the condition's status flips.
    """
    existing = find_status_condition(conditions, new.type)
    if existing is None:
        if new.last_transition_time is None:
            new.last_transition_time = now or utcnow()
        conditions.append(new)
        return True

    changed = False
    if existing.status != new.status:
        existing.status = new.status
        existing.last_transition_time = new.last_transition_time or now or utcnow()
        changed = True
    if existing.reason != new.reason:
        existing.reason = new.reason
        changed = True
    if existing.message != new.message:
        existing.message = new.message
        changed = True
    return changed


# --- Backup engine objects -----------------------------------------------------


class BackupTemplate(KubeModel):
    """Subset of the engine's BackupSpec used as a schedule template."""

    included_namespaces: Optional[List[str]] = None
    excluded_namespaces: Optional[List[str]] = None
    included_resources: Optional[List[str]] = None
    excluded_resources: Optional[List[str]] = None
    label_selector: Optional[Dict[str, Any]] = None
    include_cluster_resources: Optional[bool] = None
    storage_location: Optional[str] = None
    ttl: Optional[timedelta] = None

    @field_validator("ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> Optional[timedelta]:
        if value is None:
            return None
        return parse_duration(value)

    @field_serializer("ttl")
    def _dump_ttl(self, value: Optional[timedelta]) -> Optional[str]:
        return format_duration(value) if value is not None else None


class EngineScheduleSpec(KubeModel):
    schedule: str = ""
    template: BackupTemplate = Field(default_factory=BackupTemplate)


class EngineScheduleStatus(KubeModel):
    phase: str = ""
    last_backup: Optional[datetime] = None
    validation_errors: Optional[List[str]] = None


class EngineSchedule(KubeModel):
    api_version: str = constants.VELERO_GROUP_VERSION
    kind: str = "Schedule"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: EngineScheduleSpec = Field(default_factory=EngineScheduleSpec)
    status: EngineScheduleStatus = Field(default_factory=EngineScheduleStatus)

    @property
    def ttl(self) -> timedelta:
        return self.spec.template.ttl or timedelta(0)


class EngineRestoreSpec(KubeModel):
    backup_name: str = ""


class EngineRestoreStatus(KubeModel):
    phase: str = ""
    errors: int = 0
    warnings: int = 0
    failure_reason: Optional[str] = None


class EngineRestore(KubeModel):
    api_version: str = constants.VELERO_GROUP_VERSION
    kind: str = "Restore"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: EngineRestoreSpec = Field(default_factory=EngineRestoreSpec)
    status: EngineRestoreStatus = Field(default_factory=EngineRestoreStatus)


class BackupStatus(KubeModel):
    phase: str = ""
    errors: int = 0
    warnings: int = 0
    start_timestamp: Optional[datetime] = None
    completion_timestamp: Optional[datetime] = None


class Backup(KubeModel):
    """A stored backup artifact produced by the engine."""

    api_version: str = constants.VELERO_GROUP_VERSION
    kind: str = "Backup"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: BackupStatus = Field(default_factory=BackupStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


# --- Desired state -------------------------------------------------------------


class BackupScheduleSpec(KubeModel):
    velero_schedule: str = ""
    velero_ttl: timedelta = timedelta(0)
    max_backups: int = 10

    @field_validator("velero_ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_serializer("velero_ttl")
    def _dump_ttl(self, value: timedelta) -> str:
        return format_duration(value)


_SCHEDULE_STATUS_FIELDS = {
    ResourceType.MANAGED_CLUSTERS: "velero_schedule_managed_clusters",
    ResourceType.CREDENTIALS: "velero_schedule_credentials",
    ResourceType.RESOURCES: "velero_schedule_resources",
    ResourceType.VALIDATION: "velero_schedule_validation",
}


class BackupScheduleStatus(KubeModel):
    phase: Optional[SchedulePhase] = None
    last_message: str = ""
    velero_schedule_managed_clusters: Optional[EngineSchedule] = None
    velero_schedule_credentials: Optional[EngineSchedule] = None
    velero_schedule_resources: Optional[EngineSchedule] = None
    velero_schedule_validation: Optional[EngineSchedule] = None

    def get_schedule(self, category: ResourceType) -> Optional[EngineSchedule]:
        return getattr(self, _SCHEDULE_STATUS_FIELDS[category])

    def set_schedule(self, category: ResourceType, schedule: Optional[EngineSchedule]) -> None:
        copy = schedule.model_copy(deep=True) if schedule is not None else None
        setattr(self, _SCHEDULE_STATUS_FIELDS[category], copy)

    def clear_schedules(self) -> None:
        for category in _SCHEDULE_STATUS_FIELDS:
            self.set_schedule(category, None)


class BackupSchedule(KubeModel):
    api_version: str = constants.API_GROUP_VERSION
    kind: str = constants.BACKUP_SCHEDULE_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: BackupScheduleSpec = Field(default_factory=BackupScheduleSpec)
    status: BackupScheduleStatus = Field(default_factory=BackupScheduleStatus)


_RESTORE_SPEC_FIELDS = {
    ResourceType.MANAGED_CLUSTERS: "velero_managed_clusters_backup_name",
    ResourceType.CREDENTIALS: "velero_credentials_backup_name",
    ResourceType.RESOURCES: "velero_resources_backup_name",
}

_RESTORE_STATUS_FIELDS = {
    ResourceType.MANAGED_CLUSTERS: "velero_managed_clusters_restore_name",
    ResourceType.CREDENTIALS: "velero_credentials_restore_name",
    ResourceType.RESOURCES: "velero_resources_restore_name",
}


class RestoreSpec(KubeModel):
    velero_managed_clusters_backup_name: Optional[str] = None
    velero_credentials_backup_name: Optional[str] = None
    velero_resources_backup_name: Optional[str] = None
    cleanup_before_restore: CleanupType = CleanupType.NONE
    sync_restore_with_new_backups: bool = False
    restore_sync_interval: Optional[timedelta] = None

    @field_validator("restore_sync_interval", mode="before")
    @classmethod
    def _parse_interval(cls, value: Any) -> Optional[timedelta]:
        if value is None or value == "":
            return None
        return parse_duration(value)

    @field_serializer("restore_sync_interval")
    def _dump_interval(self, value: Optional[timedelta]) -> Optional[str]:
        return format_duration(value) if value is not None else None

    def backup_name(self, category: ResourceType) -> Optional[str]:
        return getattr(self, _RESTORE_SPEC_FIELDS[category])


class RestoreStatus(KubeModel):
    phase: Optional[RestorePhase] = None
    last_message: str = ""
    velero_managed_clusters_restore_name: Optional[str] = None
    velero_credentials_restore_name: Optional[str] = None
    velero_resources_restore_name: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)

    def restore_name(self, category: ResourceType) -> Optional[str]:
        return getattr(self, _RESTORE_STATUS_FIELDS[category])

    def set_restore_name(self, category: ResourceType, name: Optional[str]) -> None:
        setattr(self, _RESTORE_STATUS_FIELDS[category], name)


class Restore(KubeModel):
    api_version: str = constants.API_GROUP_VERSION
    kind: str = constants.RESTORE_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: RestoreSpec = Field(default_factory=RestoreSpec)
    status: RestoreStatus = Field(default_factory=RestoreStatus)


# --- Fleet registry --------------------------------------------------------------


class ClientConfig(KubeModel):
    url: str = ""
    ca_bundle: Optional[str] = None


class ManagedClusterSpec(KubeModel):
    hub_accepts_client: bool = False
    managed_cluster_client_configs: List[ClientConfig] = Field(default_factory=list)


class ManagedClusterStatus(KubeModel):
    conditions: List[Condition] = Field(default_factory=list)


class ManagedCluster(KubeModel):
    api_version: str = "cluster.open-cluster-management.io/v1"
    kind: str = "ManagedCluster"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ManagedClusterSpec = Field(default_factory=ManagedClusterSpec)
    status: ManagedClusterStatus = Field(default_factory=ManagedClusterStatus)

    @property
    def client_url(self) -> str:
        for client_config in self.spec.managed_cluster_client_configs:
            if client_config.url:
                return client_config.url
        return ""

    @property
    def is_available(self) -> bool:
        condition = find_status_condition(
            self.status.conditions, constants.CLUSTER_AVAILABLE_CONDITION
        )
        return condition is not None and condition.status == "True"


class Secret(KubeModel):
    api_version: str = "v1"
    kind: str = "Secret"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    type: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)

    def decoded(self, key: str) -> bytes:
        """Return the decoded value for ``key``; empty when missing or malformed."""
        raw = self.data.get(key)
        if not raw:
            return b""
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            return b""


def encode_secret_value(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


# --- Generic resources -----------------------------------------------------------


class ResourceKind(KubeModel):
    """Coordinates of a resource type handled through the dynamic API."""

    group: str = ""
    version: str = "v1"
    plural: str
    kind: str = ""
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


class DynamicResource(KubeModel):
    api_version: str = ""
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: Dict[str, Any] = Field(default_factory=dict)
