"""Tests for backup retention and post-restore cleanup."""

from __future__ import annotations

import pytest

from factories import NAMESPACE, backup, dynamic_resource
from hub_backup import constants
from hub_backup.cleanup import (
    cleanup_backups,
    cleanup_restored_resources,
    delete_dynamic_resource,
    deletion_order,
    is_deletion_suppressed,
)
from hub_backup.models import ResourceKind

SCHEDULE_NAMES = ["acm-managed-clusters-schedule", "acm-credentials-schedule", "acm-resources-schedule"]
CHANNELS = ResourceKind(group="apps.open-cluster-management.io", plural="channels", kind="Channel")
CLUSTER_SETS = ResourceKind(
    group="cluster.open-cluster-management.io",
    version="v1beta2",
    plural="managedclustersets",
    kind="ManagedClusterSet",
    namespaced=False,
)


class TestDeletionSuppression:
    @pytest.mark.parametrize(
        "namespace, labels, suppressed",
        [
            ("local-cluster", {}, True),
            ("open-cluster-management-agent", {}, True),
            ("app-ns", {constants.EXCLUDE_FROM_BACKUP_LABEL: "true"}, True),
            ("app-ns", {constants.EXCLUDE_FROM_BACKUP_LABEL: "false"}, False),
            ("app-ns", {}, False),
        ],
        ids=["local-namespace", "excluded-namespace", "excluded-label", "label-false", "eligible"],
    )
    def test_namespaced_resources(self, namespace, labels, suppressed):
        resource = dynamic_resource("channel-1", namespace=namespace, labels=labels)

        assert (
            is_deletion_suppressed(resource, True, ["open-cluster-management-agent"], "local-cluster")
            is suppressed
        )

    def test_cluster_scoped_resources_are_always_eligible(self):
        resource = dynamic_resource(
            "set-1",
            labels={constants.EXCLUDE_FROM_BACKUP_LABEL: "true"},
            kind="ManagedClusterSet",
        )

        assert not is_deletion_suppressed(resource, False, [], "local-cluster")

    def test_delete_dynamic_resource_reports_whether_it_deleted(self, client):
        protected = dynamic_resource("channel-1", namespace="local-cluster")
        eligible = dynamic_resource("channel-2", namespace="app-ns")

        assert delete_dynamic_resource(client, CHANNELS, protected, [], "local-cluster") is False
        assert delete_dynamic_resource(client, CHANNELS, eligible, [], "local-cluster") is True
        assert client.deleted_dynamic == ["channels/channel-2"]


class TestCleanupRestoredResources:
    def test_removes_backed_up_resources_not_stamped_by_the_restore(self, client):
        backed_up = {constants.BACKUP_LABEL: ""}
        client.dynamic["channels"] = [
            dynamic_resource(
                "restored",
                namespace="app-ns",
                labels={**backed_up, constants.RESTORE_NAME_LABEL: "restore-acm-acm-resources-schedule-1"},
            ),
            dynamic_resource("stale", namespace="app-ns", labels=backed_up),
            dynamic_resource("unlabelled", namespace="app-ns"),
            dynamic_resource("local", namespace="local-cluster", labels=backed_up),
        ]
        client.dynamic["managedclustersets"] = [
            dynamic_resource("stale-set", labels=backed_up, kind="ManagedClusterSet"),
        ]

        deleted = cleanup_restored_resources(
            client,
            [CHANNELS, CLUSTER_SETS],
            "restore-acm-acm-resources-schedule-1",
            [],
            "local-cluster",
        )

        assert deleted == ["channels/stale", "managedclustersets/stale-set"]
        assert client.deleted_dynamic == deleted


class TestCleanupBackups:
    def test_deletion_order_is_oldest_first_then_most_errors(self):
        backups = [
            backup("acm-resources-schedule-b", minutes=10, errors=0),
            backup("acm-resources-schedule-c", minutes=10, errors=4),
            backup("acm-resources-schedule-a", minutes=0, errors=0),
        ]

        ordered = [b.name for b in deletion_order(backups)]

        assert ordered == ["acm-resources-schedule-a", "acm-resources-schedule-c", "acm-resources-schedule-b"]

    def test_surplus_is_deleted(self, client):
        client.backups.extend(backup(f"acm-resources-schedule-{i}", minutes=i) for i in range(5))

        deleted = cleanup_backups(client, NAMESPACE, SCHEDULE_NAMES, 3)

        assert deleted == ["acm-resources-schedule-0", "acm-resources-schedule-1"]

    def test_deleting_and_foreign_backups_are_not_counted(self, client):
        client.backups.extend(
            [
                backup("acm-resources-schedule-0", minutes=0, phase=constants.BACKUP_PHASE_DELETING),
                backup("acm-resources-schedule-1", minutes=1),
                backup("acm-resources-schedule-2", minutes=2),
                backup("manual-backup", minutes=-10),
            ]
        )

        assert cleanup_backups(client, NAMESPACE, SCHEDULE_NAMES, 2) == []

    @pytest.mark.parametrize("max_total", [0, -1])
    def test_non_positive_limit_disables_the_sweep(self, client, max_total):
        client.backups.extend(backup(f"acm-resources-schedule-{i}", minutes=i) for i in range(3))

        assert cleanup_backups(client, NAMESPACE, SCHEDULE_NAMES, max_total) == []
        assert client.deleted_backups == []
