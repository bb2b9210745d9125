from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from . import constants
from .client import ClusterClient
from .models import ManagedCluster, ObjectMeta, Secret, encode_secret_value

LOG = logging.getLogger(__name__)

_TIMESTAMP = TypeAdapter(datetime)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = _TIMESTAMP.validate_python(value)
    except PydanticValidationError:
        return None
    # Naive timestamps are taken as UTC so they compare with aware ones.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_token_fresh(secret: Secret, now: datetime) -> bool:
    """True when ``now`` lies between the secret's last refresh and its expiry."""
    last_refresh = _parse_timestamp(secret.metadata.annotations.get(constants.LAST_REFRESH_ANNOTATION))
    expiration = _parse_timestamp(secret.metadata.annotations.get(constants.EXPIRATION_ANNOTATION))
    if last_refresh is None or expiration is None:
        return False
    return last_refresh <= now < expiration


def find_auto_import_secret(secrets: Iterable[Secret], namespace: str) -> Optional[Secret]:
    for secret in secrets:
        if secret.metadata.namespace == namespace and secret.metadata.name == constants.AUTO_IMPORT_SECRET_NAME:
            return secret
    return None


def build_bootstrap_secret(cluster: ManagedCluster, token: str) -> Secret:
    namespace = cluster.metadata.name
    return Secret(
        metadata=ObjectMeta(name=constants.BOOTSTRAP_SECRET_NAME, namespace=namespace),
        type="Opaque",
        data={
            "autoImportRetry": encode_secret_value(constants.AUTO_IMPORT_RETRY),
            "token": encode_secret_value(token),
            "server": encode_secret_value(cluster.client_url),
        },
    )


class ClusterReactivator:
    """Re-triggers registration of fleet members once a restore has finished."""

    def __init__(self, client: ClusterClient, local_cluster_name: str) -> None:
        self._client = client
        self._local_cluster_name = local_cluster_name

    def reactivate(
        self,
        secrets: List[Secret],
        managed_clusters: List[ManagedCluster],
        now: datetime,
    ) -> List[str]:
        """Apply a bootstrap secret for every cluster that can be reactivated.

        Returns the names of the clusters whose bootstrap was (re)issued.
        """
        activated: List[str] = []
        for cluster in managed_clusters:
            name = cluster.metadata.name
            if name == self._local_cluster_name:
                continue
            if not cluster.client_url:
                LOG.debug("Cluster %s was never connected, nothing to reactivate", name)
                continue
            if cluster.is_available:
                continue

            secret = find_auto_import_secret(secrets, name)
            if secret is None:
                LOG.info("No %s secret for cluster %s", constants.AUTO_IMPORT_SECRET_NAME, name)
                continue

            token = secret.decoded(constants.TOKEN_KEY)
            if not token:
                LOG.info("Secret %s/%s carries no token", name, secret.metadata.name)
                continue
            if not is_token_fresh(secret, now):
                LOG.info("Secret %s/%s token is stale or expired", name, secret.metadata.name)
                continue

            bootstrap = build_bootstrap_secret(cluster, token.decode("utf-8", "ignore"))
            self._client.apply_secret(bootstrap)
            LOG.info("Issued %s for cluster %s", constants.BOOTSTRAP_SECRET_NAME, name)
            activated.append(name)

        return activated

