"""Labelling of hub secrets ahead of the credentials backup.

The credentials schedule only picks up secrets carrying the backup label.
Secrets created for hive cluster pools, the agent installer and bare metal
hosts never get that label from their owners, so it is added here before
every backup cycle.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Sequence

from . import constants
from .client import ClusterClient
from .errors import TransientError
from .models import DynamicResource, ResourceKind, Secret

LOG = logging.getLogger(__name__)

CLUSTER_DEPLOYMENTS = ResourceKind(
    group=constants.HIVE_GROUP,
    version=constants.HIVE_VERSION,
    plural="clusterdeployments",
    kind="ClusterDeployment",
)
CLUSTER_POOLS = ResourceKind(
    group=constants.HIVE_GROUP,
    version=constants.HIVE_VERSION,
    plural="clusterpools",
    kind="ClusterPool",
)

CLUSTER_POOL_LABEL_VALUE = "clusterpool"
AGENT_INSTALL_LABEL_VALUE = "agent-install"
BAREMETAL_LABEL_VALUE = "baremetal"


def is_import_secret(secret: Secret) -> bool:
    return secret.metadata.name == f"{secret.metadata.namespace}-import"


def update_secret(client: ClusterClient, secret: Secret, value: str) -> bool:
    """Add the backup label to ``secret`` unless it already has one."""
    if constants.BACKUP_LABEL in secret.metadata.labels:
        return False
    LOG.info("Labelling secret %s/%s for backup", secret.metadata.namespace, secret.metadata.name)
    client.patch_secret_labels(secret, {constants.BACKUP_LABEL: value})
    return True


def update_secrets_labels(
    client: ClusterClient,
    secrets: Sequence[Secret],
    prefix: str,
    value: str,
) -> List[str]:
    """Label the secrets named after ``prefix``; returns ``namespace/name`` of those labelled."""
    labelled: List[str] = []
    for secret in secrets:
        namespace = secret.metadata.namespace
        name = secret.metadata.name
        if is_import_secret(secret):
            # Hive import secrets stay out of backups.
            if secret.metadata.labels.get(constants.BACKUP_LABEL) == value:
                LOG.info("Removing backup label from import secret %s/%s", namespace, name)
                client.patch_secret_labels(secret, {constants.BACKUP_LABEL: None})
            continue
        if not name.startswith(prefix) or "-bootstrap-" in name:
            continue
        if update_secret(client, secret, value):
            labelled.append(f"{namespace}/{name}")
    return labelled


def _list(client: ClusterClient, kind: ResourceKind) -> List[DynamicResource]:
    try:
        return client.list_dynamic(kind)
    except TransientError as exc:
        LOG.info("Skipping %s: %s", kind.plural, exc)
        return []


def _list_secrets(
    client: ClusterClient,
    namespace: Optional[str] = None,
    labels: Optional[Mapping[str, str]] = None,
) -> List[Secret]:
    try:
        return client.list_secrets(namespace=namespace, labels=labels)
    except TransientError as exc:
        LOG.info("Could not list secrets to label for backup: %s", exc)
        return []


def prepare_for_backup(client: ClusterClient) -> List[str]:
    """Label the secrets the credentials backup must carry.

    Sources that cannot be listed, typically because their API is not
    installed on the hub, are skipped. Returns ``namespace/name`` of every
    secret labelled.
    """
    labelled: List[str] = []

    for deployment in _list(client, CLUSTER_DEPLOYMENTS):
        if not deployment.spec.get("clusterPoolRef"):
            continue
        secrets = _list_secrets(client, deployment.metadata.namespace)
        labelled += update_secrets_labels(client, secrets, deployment.metadata.name, CLUSTER_POOL_LABEL_VALUE)
        # Restoring a claimed ClusterDeployment is refused by the hive webhook without this label.
        if deployment.metadata.labels.get(constants.DISABLE_CREATION_WEBHOOK_LABEL) != "true":
            LOG.info("Updating ClusterDeployment %s/%s", deployment.metadata.namespace, deployment.metadata.name)
            client.patch_dynamic_labels(
                CLUSTER_DEPLOYMENTS, deployment, {constants.DISABLE_CREATION_WEBHOOK_LABEL: "true"}
            )

    for pool in _list(client, CLUSTER_POOLS):
        secrets = _list_secrets(client, pool.metadata.namespace)
        labelled += update_secrets_labels(client, secrets, pool.metadata.name, CLUSTER_POOL_LABEL_VALUE)

    for secret in _list_secrets(client, labels={constants.AGENT_INSTALL_LABEL: "true"}):
        if update_secret(client, secret, AGENT_INSTALL_LABEL_VALUE):
            labelled.append(f"{secret.metadata.namespace}/{secret.metadata.name}")

    for secret in _list_secrets(client, labels={constants.BAREMETAL_LABEL: BAREMETAL_LABEL_VALUE}):
        if secret.metadata.namespace == constants.MACHINE_API_NAMESPACE:
            continue
        if update_secret(client, secret, BAREMETAL_LABEL_VALUE):
            labelled.append(f"{secret.metadata.namespace}/{secret.metadata.name}")

    return labelled
