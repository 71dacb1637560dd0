"""
Тесты хранилища статусов развёртывания
"""
from datetime import datetime, timedelta

import pytest

from vpn.deployment_store import (
    PIPELINE_ORDER,
    DeploymentStage,
    DeploymentStatusStore,
    next_stage,
)
from vpn.exceptions import InvalidStageTransition, NotFound


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def tick(self, **kwargs):
        self.now += timedelta(**kwargs)


WORK_STAGES = PIPELINE_ORDER[1:-1]


def run_to_last_stage(store: DeploymentStatusStore, job_id: str) -> None:
    for stage in WORK_STAGES:
        assert store.advance(job_id, stage) is True


class TestStages:
    """Стадии только вперёд и по одной"""

    def test_create_starts_pending(self):
        store = DeploymentStatusStore()
        job_id = store.create(7, "Начало развертывания")

        snapshot = store.get(job_id)
        assert snapshot.stage == DeploymentStage.PENDING
        assert snapshot.server_id == 7
        assert snapshot.log_text == "Начало развертывания"
        assert snapshot.error is None
        assert not snapshot.is_terminal

    def test_full_pipeline(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)

        run_to_last_stage(store, job_id)
        assert store.complete(job_id) is True

        snapshot = store.get(job_id)
        assert snapshot.stage_history == PIPELINE_ORDER
        assert snapshot.is_terminal
        assert snapshot.finished_at is not None

    def test_skip_stage_rejected(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)

        with pytest.raises(InvalidStageTransition):
            store.advance(job_id, DeploymentStage.PULLING_IMAGE)
        assert store.get(job_id).stage == DeploymentStage.PENDING

    def test_regress_rejected(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)
        store.advance(job_id, DeploymentStage.INSTALLING_DOCKER)
        store.advance(job_id, DeploymentStage.PULLING_IMAGE)

        with pytest.raises(InvalidStageTransition):
            store.advance(job_id, DeploymentStage.INSTALLING_DOCKER)

    def test_terminal_stages_not_reachable_through_advance(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)
        run_to_last_stage(store, job_id)

        with pytest.raises(InvalidStageTransition):
            store.advance(job_id, DeploymentStage.COMPLETED)

    def test_complete_before_last_stage_rejected(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)
        store.advance(job_id, DeploymentStage.INSTALLING_DOCKER)

        with pytest.raises(InvalidStageTransition):
            store.complete(job_id)

    def test_fail_from_any_stage(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)
        store.advance(job_id, DeploymentStage.INSTALLING_DOCKER)

        assert store.fail(job_id, "apt-get exited with 100") is True

        snapshot = store.get(job_id)
        assert snapshot.stage == DeploymentStage.FAILED
        assert snapshot.error == "apt-get exited with 100"
        assert snapshot.stage_history == (
            DeploymentStage.PENDING,
            DeploymentStage.INSTALLING_DOCKER,
            DeploymentStage.FAILED,
        )

    def test_terminal_job_ignores_further_writes(self):
        store = DeploymentStatusStore()
        job_id = store.create(1)
        store.fail(job_id, "timeout")

        assert store.fail(job_id, "second error") is False
        assert store.append_log(job_id, "late output") is False
        assert store.advance(job_id, DeploymentStage.INSTALLING_DOCKER) is False

        snapshot = store.get(job_id)
        assert snapshot.error == "timeout"
        assert "late output" not in snapshot.log_text

    def test_next_stage(self):
        assert next_stage(DeploymentStage.PENDING) == DeploymentStage.INSTALLING_DOCKER
        assert next_stage(DeploymentStage.STARTING_XRAY) == DeploymentStage.COMPLETED
        assert next_stage(DeploymentStage.FAILED) is None


class TestLogs:

    def test_append_multiline_output(self):
        store = DeploymentStatusStore()
        job_id = store.create(1, "start")

        store.append_log(job_id, "line 1\nline 2\n\n")

        snapshot = store.get(job_id)
        assert [line.text for line in snapshot.logs] == ["start", "line 1", "line 2"]

    def test_snapshots_are_immutable(self):
        store = DeploymentStatusStore()
        job_id = store.create(1, "start")
        before = store.get(job_id)

        store.append_log(job_id, "more")
        store.advance(job_id, DeploymentStage.INSTALLING_DOCKER)

        assert before.log_text == "start"
        assert before.stage == DeploymentStage.PENDING


class TestRetention:
    """Очистка завершённых развёртываний"""

    def test_unknown_id(self):
        store = DeploymentStatusStore()
        with pytest.raises(NotFound):
            store.get("missing")

    def test_terminal_job_purged_after_retention(self):
        clock = FakeClock()
        store = DeploymentStatusStore(retention=timedelta(minutes=15), clock=clock)
        job_id = store.create(1)
        store.fail(job_id, "boom")

        clock.tick(minutes=14)
        assert store.get(job_id).stage == DeploymentStage.FAILED

        clock.tick(minutes=1)
        with pytest.raises(NotFound):
            store.get(job_id)

    def test_purge_expired_keeps_running_jobs(self):
        clock = FakeClock()
        store = DeploymentStatusStore(retention=timedelta(minutes=15), clock=clock)
        done = store.create(1)
        store.fail(done, "boom")
        running = store.create(2)

        clock.tick(hours=1)
        assert store.purge_expired() == 1

        assert store.get(running).stage == DeploymentStage.PENDING
        assert [s.id for s in store.list_active()] == [running]
