from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import ResourceKind, ResourceType

DEFAULT_SCHEDULE_NAMES: Dict[ResourceType, str] = {
    ResourceType.MANAGED_CLUSTERS: "acm-managed-clusters-schedule",
    ResourceType.CREDENTIALS: "acm-credentials-schedule",
    ResourceType.RESOURCES: "acm-resources-schedule",
    ResourceType.VALIDATION: "acm-validation-policy-schedule",
}

DEFAULT_CLEANUP_RESOURCES: List[ResourceKind] = [
    ResourceKind(group="apps.open-cluster-management.io", plural="channels", kind="Channel"),
    ResourceKind(group="apps.open-cluster-management.io", plural="subscriptions", kind="Subscription"),
    ResourceKind(group="app.k8s.io", version="v1beta1", plural="applications", kind="Application"),
    ResourceKind(group="policy.open-cluster-management.io", plural="policies", kind="Policy"),
    ResourceKind(
        group="policy.open-cluster-management.io",
        plural="placementbindings",
        kind="PlacementBinding",
    ),
    ResourceKind(
        group="cluster.open-cluster-management.io",
        version="v1beta2",
        plural="managedclustersets",
        kind="ManagedClusterSet",
        namespaced=False,
    ),
]


class ConfigurationError(Exception):
    """Raised when the operator configuration is invalid."""


class ValueRef(BaseModel):
    """A literal value, or a reference to an environment variable or file holding it."""

    value: Optional[str] = None
    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the value.")

    def resolve(self) -> Optional[str]:
        if self.value:
            return self.value
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file)
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
        return None


class KubernetesConfig(BaseModel):
    in_cluster: bool = Field(default=True, description="Try the service account config first.")
    kubeconfig: Optional[Path] = None
    context: Optional[str] = None

    @field_validator("kubeconfig")
    @classmethod
    def _expand_kubeconfig(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value else value


class OperatorConfig(BaseModel):
    hub_id: ValueRef = Field(default_factory=lambda: ValueRef(env="HUB_ID"))
    namespace: str = "open-cluster-management-backup"
    local_cluster_name: str = "local-cluster"
    validation_schedule: bool = False
    schedule_names: Dict[ResourceType, str] = Field(default_factory=lambda: dict(DEFAULT_SCHEDULE_NAMES))
    schedule_requeue_minutes: int = 60
    cluster_import_interval_seconds: int = 20
    default_sync_interval_minutes: int = 30
    poll_interval_seconds: int = 10
    max_retry_backoff_seconds: int = 300
    excluded_namespaces: List[str] = Field(default_factory=list)
    cleanup_resources: List[ResourceKind] = Field(default_factory=lambda: list(DEFAULT_CLEANUP_RESOURCES))
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)

    @field_validator("schedule_names")
    @classmethod
    def _merge_schedule_names(cls, value: Dict[ResourceType, str]) -> Dict[ResourceType, str]:
        merged = dict(DEFAULT_SCHEDULE_NAMES)
        merged.update(value)
        names = list(merged.values())
        if len(set(names)) != len(names):
            raise ValueError("Schedule names must be unique per category.")
        return merged

    @field_validator(
        "schedule_requeue_minutes",
        "cluster_import_interval_seconds",
        "default_sync_interval_minutes",
        "poll_interval_seconds",
        "max_retry_backoff_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Intervals must be positive.")
        return value

    @field_validator("cleanup_resources")
    @classmethod
    def _require_api_group(cls, value: List[ResourceKind]) -> List[ResourceKind]:
        for kind in value:
            if not kind.group:
                raise ValueError(f"Cleanup resource {kind.plural} must belong to an API group.")
        return value

    @model_validator(mode="after")
    def _require_hub_id(self) -> "OperatorConfig":
        if not self.hub_id.resolve():
            raise ValueError("hub_id could not be resolved; set it in the config or via HUB_ID.")
        return self

    @property
    def categories(self) -> List[ResourceType]:
        """Categories with an engine schedule, in creation order."""
        categories = [
            ResourceType.MANAGED_CLUSTERS,
            ResourceType.CREDENTIALS,
            ResourceType.RESOURCES,
        ]
        if self.validation_schedule:
            categories.append(ResourceType.VALIDATION)
        return categories

    @property
    def resolved_hub_id(self) -> str:
        return self.hub_id.resolve() or ""

    @property
    def schedule_requeue_interval(self) -> timedelta:
        return timedelta(minutes=self.schedule_requeue_minutes)

    @property
    def cluster_import_interval(self) -> timedelta:
        return timedelta(seconds=self.cluster_import_interval_seconds)

    @property
    def default_sync_interval(self) -> timedelta:
        return timedelta(minutes=self.default_sync_interval_minutes)


def load_config(path: Path) -> OperatorConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if isinstance(raw.get("hub_id"), str):
        raw["hub_id"] = {"value": raw["hub_id"]}

    try:
        return OperatorConfig.model_validate(raw)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(str(exc)) from exc
