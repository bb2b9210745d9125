"""Tests for BackupSchedule reconciliation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from factories import NAMESPACE, backup, backup_schedule, secret
from hub_backup import constants
from hub_backup.config import OperatorConfig, ValueRef
from hub_backup.models import EngineSchedule, EngineScheduleStatus, ObjectMeta, ResourceType, SchedulePhase
from hub_backup.schedule import (
    EMPTY_SCHEDULE_MSG,
    ScheduleOrchestrator,
    build_engine_schedule,
    parse_cron_expression,
    set_schedule_phase,
    validate_backup_schedule,
)

SCHEDULE_NAMES = ["acm-managed-clusters-schedule", "acm-credentials-schedule", "acm-resources-schedule"]


@pytest.fixture
def orchestrator(client, config) -> ScheduleOrchestrator:
    return ScheduleOrchestrator(client, config)


def _enable_all(client) -> None:
    for schedule in client.schedules:
        schedule.status.phase = constants.SCHEDULE_PHASE_ENABLED


class TestParseCron:
    @pytest.mark.parametrize("expression", ["0 * * * *", "*/15 2 * * 1-5", "@daily", "@hourly"])
    def test_valid(self, expression):
        assert parse_cron_expression(expression) is None

    def test_valid_schedule_passes_validation(self):
        validate_backup_schedule(backup_schedule(cron="@daily"))

    @pytest.mark.parametrize("expression", ["invalid", "0 * * *", "0 0 * * * *", "61 * * * *"])
    def test_invalid(self, expression):
        assert parse_cron_expression(expression)


class TestReconcile:
    def test_invalid_cron_fails_validation(self, client, orchestrator, now):
        schedule = backup_schedule(cron="invalid")

        result = orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.FAILED_VALIDATION
        assert "invalid schedule" in schedule.status.last_message
        assert not result.requeue
        assert client.schedules == []
        assert "FailedValidation" in client.event_reasons()

    def test_empty_cron_fails_validation(self, orchestrator, now):
        schedule = backup_schedule(cron="  ")

        orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.FAILED_VALIDATION
        assert schedule.status.last_message == EMPTY_SCHEDULE_MSG

    def test_creates_one_schedule_per_category(self, client, orchestrator, now):
        schedule = backup_schedule()

        result = orchestrator.reconcile(schedule, now)

        assert sorted(s.metadata.name for s in client.schedules) == sorted(SCHEDULE_NAMES)
        assert schedule.status.phase == SchedulePhase.NEW
        assert result.requeue_after == timedelta(minutes=60)
        for engine_schedule in client.schedules:
            assert engine_schedule.spec.schedule == "0 * * * *"
            assert engine_schedule.metadata.labels[constants.BACKUP_CLUSTER_LABEL] == "hub-1"
            assert engine_schedule.metadata.controller_of().name == "schedule-hub-1"
        assert schedule.status.velero_schedule_resources is not None
        assert schedule.status.velero_schedule_validation is None

    def test_only_missing_categories_are_created(self, client, orchestrator, now):
        schedule = backup_schedule()
        orchestrator.reconcile(schedule, now)
        client.schedules = [s for s in client.schedules if s.metadata.name != "acm-credentials-schedule"]

        orchestrator.reconcile(schedule, now)

        assert sorted(s.metadata.name for s in client.schedules) == sorted(SCHEDULE_NAMES)

    def test_ttl_drift_deletes_all_schedules(self, client, orchestrator, now):
        schedule = backup_schedule()
        orchestrator.reconcile(schedule, now)

        schedule.spec.velero_ttl = timedelta(hours=72)
        result = orchestrator.reconcile(schedule, now)

        assert client.schedules == []
        assert sorted(client.deleted_schedules) == sorted(SCHEDULE_NAMES)
        assert schedule.status.phase == SchedulePhase.NEW
        assert schedule.status.velero_schedule_resources is None
        assert result.requeue

        orchestrator.reconcile(schedule, now)

        assert len(client.schedules) == 3
        assert all(s.ttl == timedelta(hours=72) for s in client.schedules)

    def test_cron_drift_deletes_all_schedules(self, client, orchestrator, now):
        schedule = backup_schedule()
        orchestrator.reconcile(schedule, now)

        schedule.spec.velero_schedule = "30 * * * *"
        orchestrator.reconcile(schedule, now)

        assert client.schedules == []

    def test_enabled_when_all_engine_schedules_are_enabled(self, client, orchestrator, now):
        schedule = backup_schedule()
        orchestrator.reconcile(schedule, now)
        _enable_all(client)

        result = orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.ENABLED
        assert schedule.status.velero_schedule_credentials.status.phase == constants.SCHEDULE_PHASE_ENABLED
        assert result.requeue_after == timedelta(minutes=60)

    def test_collision_with_another_hub(self, client, orchestrator, now):
        schedule = backup_schedule()
        orchestrator.reconcile(schedule, now)
        _enable_all(client)
        client.backups.append(
            backup(
                "acm-resources-schedule-20220726",
                labels={
                    constants.SCHEDULE_NAME_LABEL: "acm-resources-schedule",
                    constants.BACKUP_CLUSTER_LABEL: "hub-2",
                },
            )
        )

        result = orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.BACKUP_COLLISION
        assert "hub-2" in schedule.status.last_message
        assert client.schedules == []
        assert not result.requeue
        assert "BackupCollision" in client.event_reasons()

        # Sticky until a new BackupSchedule is created.
        client.status_updates.clear()
        assert not orchestrator.reconcile(schedule, now).requeue
        assert schedule.status.phase == SchedulePhase.BACKUP_COLLISION
        assert client.schedules == []
        assert client.status_updates == []

    def test_own_backups_are_not_a_collision(self, client, orchestrator, now):
        schedule = backup_schedule()
        orchestrator.reconcile(schedule, now)
        _enable_all(client)
        client.backups.append(
            backup(
                "acm-resources-schedule-20220726",
                labels={
                    constants.SCHEDULE_NAME_LABEL: "acm-resources-schedule",
                    constants.BACKUP_CLUSTER_LABEL: "hub-1",
                },
            )
        )

        orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.ENABLED

    def test_failed_creation_reports_failed_phase(self, client, orchestrator, now):
        client.fail_on.add("create_schedule")
        schedule = backup_schedule()

        result = orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.FAILED
        assert "create_schedule failed" in schedule.status.last_message
        assert result.requeue

    def test_secrets_are_labelled_before_backups(self, client, orchestrator, now):
        client.secrets = [secret("pull", "infra", labels={constants.AGENT_INSTALL_LABEL: "true"})]

        orchestrator.reconcile(backup_schedule(), now)

        assert client.secrets[0].metadata.labels[constants.BACKUP_LABEL] == "agent-install"

    def test_labelling_failure_does_not_fail_the_cycle(self, client, orchestrator, now):
        client.fail_on.add("patch_secret_labels")
        client.secrets = [secret("pull", "infra", labels={constants.AGENT_INSTALL_LABEL: "true"})]
        schedule = backup_schedule()

        orchestrator.reconcile(schedule, now)

        assert schedule.status.phase == SchedulePhase.NEW
        assert len(client.schedules) == 3

    def test_retention_sweep_runs_each_cycle(self, client, orchestrator, now):
        schedule = backup_schedule(max_backups=1)
        client.backups.extend(backup(f"acm-resources-schedule-{i}", minutes=i) for i in range(5))

        orchestrator.reconcile(schedule, now)

        assert client.deleted_backups == ["acm-resources-schedule-0", "acm-resources-schedule-1"]

    def test_validation_schedule_lives_one_cron_interval(self, client, now):
        config = OperatorConfig(hub_id=ValueRef(value="hub-1"), namespace=NAMESPACE, validation_schedule=True)
        orchestrator = ScheduleOrchestrator(client, config)

        orchestrator.reconcile(backup_schedule(ttl=timedelta(hours=72)), now)

        validation = next(s for s in client.schedules if s.metadata.name == "acm-validation-policy-schedule")
        assert len(client.schedules) == 4
        assert validation.ttl == timedelta(hours=1)


class TestSetSchedulePhase:
    @staticmethod
    def _schedules(*phases):
        return [
            EngineSchedule(metadata=ObjectMeta(name=f"s{i}"), status=EngineScheduleStatus(phase=phase))
            for i, phase in enumerate(phases)
        ]

    @pytest.mark.parametrize(
        "phases, expected",
        [
            ((), SchedulePhase.NEW),
            (("Enabled", "Enabled", "Enabled"), SchedulePhase.ENABLED),
            (("Enabled", "", "Enabled"), SchedulePhase.UNKNOWN),
            (("Enabled", "New", "Enabled"), SchedulePhase.NEW),
            (("Enabled", "FailedValidation", "Enabled"), SchedulePhase.FAILED_VALIDATION),
        ],
    )
    def test_aggregation(self, phases, expected):
        schedule = backup_schedule()

        assert set_schedule_phase(self._schedules(*phases), schedule) == expected
        assert schedule.status.phase == expected

    def test_collision_is_sticky(self):
        schedule = backup_schedule()
        schedule.status.phase = SchedulePhase.BACKUP_COLLISION

        assert set_schedule_phase(self._schedules("Enabled"), schedule) == SchedulePhase.BACKUP_COLLISION


def test_ttl_is_omitted_when_unset(config, now):
    engine_schedule = build_engine_schedule(ResourceType.CREDENTIALS, backup_schedule(), config, now)

    assert "ttl" not in engine_schedule.to_dict()["spec"]["template"]
    assert engine_schedule.to_dict()["metadata"]["ownerReferences"][0]["kind"] == "BackupSchedule"
