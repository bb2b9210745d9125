from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type, TypeVar

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from . import constants
from .client import EventSubject
from .config import ConfigurationError, KubernetesConfig
from .errors import TransientError
from .index import OwnerIndex
from .models import (
    Backup,
    BackupSchedule,
    DynamicResource,
    EngineRestore,
    EngineSchedule,
    KubeModel,
    ManagedCluster,
    ResourceKind,
    Restore,
    Secret,
    utcnow,
)

LOG = logging.getLogger(__name__)

PAGE_SIZE = 250
COMPONENT_NAME = "hub-backup"

Model = TypeVar("Model", bound=KubeModel)


def init_api_client(cfg: KubernetesConfig) -> k8s_client.ApiClient:
    """Build an API client from the service account, falling back to a kubeconfig."""
    if cfg.in_cluster:
        try:
            k8s_config.load_incluster_config()
            return k8s_client.ApiClient()
        except ConfigException:
            LOG.info("In-cluster configuration unavailable; falling back to kubeconfig")
    try:
        return k8s_config.new_client_from_config(
            config_file=str(cfg.kubeconfig) if cfg.kubeconfig else None,
            context=cfg.context,
        )
    except (ConfigException, OSError) as exc:
        raise ConfigurationError(f"Failed to load kubeconfig: {exc}") from exc


def label_selector(labels: Optional[Mapping[str, str]]) -> str:
    if not labels:
        return ""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class KubernetesClusterClient:
    """ClusterClient backed by the Kubernetes API server."""

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self._api_client = api_client
        self._custom = k8s_client.CustomObjectsApi(api_client)
        self._core = k8s_client.CoreV1Api(api_client)

    # Desired state ---------------------------------------------------------
    def list_backup_schedules(self, namespace: str) -> List[BackupSchedule]:
        return self._list_custom(
            BackupSchedule,
            constants.API_GROUP,
            constants.API_VERSION,
            constants.BACKUP_SCHEDULE_PLURAL,
            namespace=namespace,
        )

    def update_backup_schedule_status(self, schedule: BackupSchedule) -> None:
        self._replace_status(constants.BACKUP_SCHEDULE_PLURAL, schedule)

    def list_restores(self, namespace: str) -> List[Restore]:
        return self._list_custom(
            Restore,
            constants.API_GROUP,
            constants.API_VERSION,
            constants.RESTORE_PLURAL,
            namespace=namespace,
        )

    def update_restore_status(self, restore: Restore) -> None:
        self._replace_status(constants.RESTORE_PLURAL, restore)

    # Backup engine ---------------------------------------------------------
    def list_schedules(self, namespace: str, owner: str) -> List[EngineSchedule]:
        schedules = self._list_custom(
            EngineSchedule,
            constants.VELERO_GROUP,
            constants.VELERO_VERSION,
            constants.VELERO_SCHEDULE_PLURAL,
            namespace=namespace,
        )
        index = OwnerIndex.build(constants.API_GROUP_VERSION, constants.BACKUP_SCHEDULE_KIND, schedules)
        return index.children_of(namespace, owner)

    def create_schedule(self, schedule: EngineSchedule) -> EngineSchedule:
        return self._create_velero(EngineSchedule, constants.VELERO_SCHEDULE_PLURAL, schedule)

    def delete_schedule(self, schedule: EngineSchedule) -> None:
        self._delete_velero(constants.VELERO_SCHEDULE_PLURAL, schedule.metadata.namespace, schedule.metadata.name)

    def list_engine_restores(self, namespace: str, owner: str) -> List[EngineRestore]:
        restores = self._list_custom(
            EngineRestore,
            constants.VELERO_GROUP,
            constants.VELERO_VERSION,
            constants.VELERO_RESTORE_PLURAL,
            namespace=namespace,
        )
        index = OwnerIndex.build(constants.API_GROUP_VERSION, constants.RESTORE_KIND, restores)
        return index.children_of(namespace, owner)

    def create_engine_restore(self, restore: EngineRestore) -> EngineRestore:
        return self._create_velero(EngineRestore, constants.VELERO_RESTORE_PLURAL, restore)

    def list_backups(self, namespace: str, labels: Optional[Mapping[str, str]] = None) -> List[Backup]:
        return self._list_custom(
            Backup,
            constants.VELERO_GROUP,
            constants.VELERO_VERSION,
            constants.VELERO_BACKUP_PLURAL,
            namespace=namespace,
            selector=label_selector(labels),
        )

    def get_backup(self, namespace: str, name: str) -> Optional[Backup]:
        try:
            raw = self._custom.get_namespaced_custom_object(
                constants.VELERO_GROUP,
                constants.VELERO_VERSION,
                namespace,
                constants.VELERO_BACKUP_PLURAL,
                name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise _transient(f"get backup {namespace}/{name}", exc) from exc
        return Backup.model_validate(raw)

    def delete_backup(self, backup: Backup) -> None:
        # The engine only removes stored artifacts through a delete request.
        body = {
            "apiVersion": constants.VELERO_GROUP_VERSION,
            "kind": "DeleteBackupRequest",
            "metadata": {
                "generateName": f"{backup.name}-",
                "namespace": backup.metadata.namespace,
            },
            "spec": {"backupName": backup.name},
        }
        try:
            self._custom.create_namespaced_custom_object(
                constants.VELERO_GROUP,
                constants.VELERO_VERSION,
                backup.metadata.namespace,
                constants.VELERO_DELETE_BACKUP_REQUEST_PLURAL,
                body,
            )
        except ApiException as exc:
            raise _transient(f"request deletion of backup {backup.name}", exc) from exc

    # Fleet registry --------------------------------------------------------
    def list_managed_clusters(self) -> List[ManagedCluster]:
        return self._list_custom(
            ManagedCluster,
            constants.MANAGED_CLUSTER_GROUP,
            constants.MANAGED_CLUSTER_VERSION,
            constants.MANAGED_CLUSTER_PLURAL,
        )

    def list_secrets(
        self,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Secret]:
        if namespace:
            def call(**kwargs: Any) -> Any:
                return self._core.list_namespaced_secret(namespace, **kwargs)
        else:
            call = self._core.list_secret_for_all_namespaces
        return [
            Secret.model_validate(self._api_client.sanitize_for_serialization(item))
            for item in self._paginate(call, label_selector(labels), "secrets", typed=True)
        ]

    def apply_secret(self, secret: Secret) -> Secret:
        namespace = secret.metadata.namespace
        name = secret.metadata.name
        try:
            existing = self._core.read_namespaced_secret(name, namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise _transient(f"read secret {namespace}/{name}", exc) from exc
            existing = None

        body = secret.to_dict()
        try:
            if existing is None:
                result = self._core.create_namespaced_secret(namespace, body)
            else:
                body["metadata"]["resourceVersion"] = existing.metadata.resource_version
                result = self._core.replace_namespaced_secret(name, namespace, body)
        except ApiException as exc:
            raise _transient(f"apply secret {namespace}/{name}", exc) from exc
        return Secret.model_validate(self._api_client.sanitize_for_serialization(result))

    def patch_secret_labels(self, secret: Secret, labels: Mapping[str, Optional[str]]) -> None:
        namespace = secret.metadata.namespace
        name = secret.metadata.name
        try:
            self._core.patch_namespaced_secret(name, namespace, {"metadata": {"labels": dict(labels)}})
        except ApiException as exc:
            raise _transient(f"label secret {namespace}/{name}", exc) from exc

    # Generic resources -----------------------------------------------------
    def list_dynamic(self, kind: ResourceKind, label_selector: str = "") -> List[DynamicResource]:
        return self._list_custom(
            DynamicResource,
            kind.group,
            kind.version,
            kind.plural,
            selector=label_selector,
        )

    def delete_dynamic(self, kind: ResourceKind, resource: DynamicResource) -> None:
        name = resource.metadata.name
        try:
            if kind.namespaced:
                self._custom.delete_namespaced_custom_object(
                    kind.group,
                    kind.version,
                    resource.metadata.namespace,
                    kind.plural,
                    name,
                    propagation_policy="Foreground",
                )
            else:
                self._custom.delete_cluster_custom_object(
                    kind.group,
                    kind.version,
                    kind.plural,
                    name,
                    propagation_policy="Foreground",
                )
        except ApiException as exc:
            if exc.status == 404:
                return
            raise _transient(f"delete {kind.plural} {name}", exc) from exc

    def patch_dynamic_labels(
        self,
        kind: ResourceKind,
        resource: DynamicResource,
        labels: Mapping[str, Optional[str]],
    ) -> None:
        name = resource.metadata.name
        body = {"metadata": {"labels": dict(labels)}}
        try:
            if kind.namespaced:
                self._custom.patch_namespaced_custom_object(
                    kind.group, kind.version, resource.metadata.namespace, kind.plural, name, body
                )
            else:
                self._custom.patch_cluster_custom_object(kind.group, kind.version, kind.plural, name, body)
        except ApiException as exc:
            raise _transient(f"label {kind.plural} {name}", exc) from exc

    # Events ----------------------------------------------------------------
    def record_event(self, subject: EventSubject, event_type: str, reason: str, message: str) -> None:
        now = utcnow().isoformat()
        namespace = subject.metadata.namespace or "default"
        body = {
            "metadata": {"generateName": f"{subject.metadata.name}.", "namespace": namespace},
            "involvedObject": {
                "apiVersion": subject.api_version,
                "kind": subject.kind,
                "name": subject.metadata.name,
                "namespace": namespace,
                "uid": subject.metadata.uid,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
            "source": {"component": COMPONENT_NAME},
        }
        try:
            self._core.create_namespaced_event(namespace, body)
        except ApiException as exc:
            LOG.warning("Failed to record event %s for %s: %s", reason, subject.metadata.name, exc.reason)

    # Internal helpers ------------------------------------------------------
    def _list_custom(
        self,
        model: Type[Model],
        group: str,
        version: str,
        plural: str,
        namespace: Optional[str] = None,
        selector: str = "",
    ) -> List[Model]:
        if namespace:
            def call(**kwargs: Any) -> Dict[str, Any]:
                return self._custom.list_namespaced_custom_object(group, version, namespace, plural, **kwargs)
        else:
            def call(**kwargs: Any) -> Dict[str, Any]:
                return self._custom.list_cluster_custom_object(group, version, plural, **kwargs)

        return [model.model_validate(item) for item in self._paginate(call, selector, plural)]

    @staticmethod
    def _paginate(
        call: Callable[..., Any],
        selector: str,
        what: str,
        typed: bool = False,
    ) -> Iterable[Any]:
        kwargs: Dict[str, Any] = {"limit": PAGE_SIZE}
        if selector:
            kwargs["label_selector"] = selector
        while True:
            try:
                page = call(**kwargs)
            except ApiException as exc:
                raise _transient(f"list {what}", exc) from exc
            if typed:
                yield from page.items or []
                token = page.metadata._continue if page.metadata else None
            else:
                yield from page.get("items", [])
                token = page.get("metadata", {}).get("continue")
            if not token:
                return
            kwargs["_continue"] = token

    def _create_velero(self, model: Type[Model], plural: str, obj: Any) -> Model:
        """Create ``obj``; an object already holding its name is returned as is."""
        namespace = obj.metadata.namespace
        name = obj.metadata.name
        try:
            raw = self._custom.create_namespaced_custom_object(
                constants.VELERO_GROUP,
                constants.VELERO_VERSION,
                namespace,
                plural,
                obj.to_dict(),
            )
        except ApiException as exc:
            if exc.status != 409:
                raise _transient(f"create {plural} {name}", exc) from exc
            LOG.info("%s %s/%s already exists", plural, namespace, name)
            try:
                raw = self._custom.get_namespaced_custom_object(
                    constants.VELERO_GROUP,
                    constants.VELERO_VERSION,
                    namespace,
                    plural,
                    name,
                )
            except ApiException as get_exc:
                raise _transient(f"get {plural} {name}", get_exc) from get_exc
        return model.model_validate(raw)

    def _delete_velero(self, plural: str, namespace: Optional[str], name: str) -> None:
        try:
            self._custom.delete_namespaced_custom_object(
                constants.VELERO_GROUP,
                constants.VELERO_VERSION,
                namespace,
                plural,
                name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return
            raise _transient(f"delete {plural} {name}", exc) from exc

    def _replace_status(self, plural: str, obj: Any) -> None:
        try:
            self._custom.replace_namespaced_custom_object_status(
                constants.API_GROUP,
                constants.API_VERSION,
                obj.metadata.namespace,
                plural,
                obj.metadata.name,
                obj.to_dict(),
            )
        except ApiException as exc:
            raise _transient(f"update status of {plural} {obj.metadata.name}", exc) from exc


def _transient(action: str, exc: ApiException) -> TransientError:
    return TransientError(
        f"Failed to {action}",
        details={"status": exc.status, "reason": exc.reason},
    )
