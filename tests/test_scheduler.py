"""
Тесты координатора фоновых задач
"""
from datetime import datetime, timedelta

import pytest

from scheduler.jobs import (
    AUTO_RENEWAL,
    DEPLOYMENT_CLEANUP,
    REMINDER_DISPATCH,
    STATUS_REFRESH,
    SUBSCRIPTION_PURGE,
    TickCoordinator,
)
from services.subscription_service import ReconciliationReport, SubscriptionStatus
from vpn.deployment_store import DeploymentStatusStore

from helpers import load_subscription, make_subscription


class TestTickCoordinator:

    def test_default_jobs(self, lifecycle, store):
        coordinator = TickCoordinator(lifecycle, deployment_store=store)

        assert set(coordinator.names) == {
            STATUS_REFRESH, REMINDER_DISPATCH, AUTO_RENEWAL, SUBSCRIPTION_PURGE, DEPLOYMENT_CLEANUP
        }
        assert coordinator.interval(STATUS_REFRESH) == timedelta(minutes=30)
        assert coordinator.interval(REMINDER_DISPATCH) == timedelta(hours=1)
        assert coordinator.interval(AUTO_RENEWAL) == timedelta(hours=6)
        assert coordinator.interval(SUBSCRIPTION_PURGE) == timedelta(hours=1)

    def test_interval_override(self, lifecycle):
        coordinator = TickCoordinator(lifecycle, intervals={REMINDER_DISPATCH: timedelta(seconds=10)})

        assert coordinator.interval(REMINDER_DISPATCH) == timedelta(seconds=10)
        assert DEPLOYMENT_CLEANUP not in coordinator.names

    @pytest.mark.parametrize("intervals", [
        {"unknown_job": timedelta(minutes=1)},
        {STATUS_REFRESH: timedelta(0)},
    ])
    def test_invalid_intervals(self, lifecycle, intervals):
        with pytest.raises(ValueError):
            TickCoordinator(lifecycle, intervals=intervals)

    @pytest.mark.asyncio
    async def test_run_now_is_synchronous(self, lifecycle, session_factory, test_user):
        sub = await make_subscription(session_factory, test_user, datetime.utcnow() - timedelta(hours=1))
        coordinator = TickCoordinator(lifecycle)

        report = await coordinator.run_now(STATUS_REFRESH)

        assert isinstance(report, ReconciliationReport)
        assert report.changed == 1
        assert (await load_subscription(session_factory, sub.id)).status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_subscription_purge_job(self, lifecycle, session_factory, test_user):
        sub = await make_subscription(session_factory, test_user, datetime.utcnow() - timedelta(days=30))
        coordinator = TickCoordinator(lifecycle)

        report = await coordinator.run_now(SUBSCRIPTION_PURGE)

        assert report.changed == 1
        assert (await load_subscription(session_factory, sub.id)).status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_run_now_unknown_job(self, lifecycle):
        with pytest.raises(ValueError):
            await TickCoordinator(lifecycle).run_now("nope")

    @pytest.mark.asyncio
    async def test_deployment_cleanup(self, lifecycle):
        store = DeploymentStatusStore(retention=timedelta(0))
        job_id = store.create(1)
        store.fail(job_id, "boom")
        coordinator = TickCoordinator(lifecycle, deployment_store=store)

        assert await coordinator.run_now(DEPLOYMENT_CLEANUP) == 1

    @pytest.mark.asyncio
    async def test_start_runs_catch_up_and_schedules_jobs(self, lifecycle, session_factory, test_user, store):
        sub = await make_subscription(session_factory, test_user, datetime.utcnow() + timedelta(days=1))
        coordinator = TickCoordinator(lifecycle, deployment_store=store)

        await coordinator.start(run_catch_up=True)
        try:
            assert (await load_subscription(session_factory, sub.id)).status == SubscriptionStatus.EXPIRING_SOON
            job_ids = {job.id for job in coordinator.scheduler.get_jobs()}
            assert job_ids == set(coordinator.names)
        finally:
            coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_start_without_catch_up(self, lifecycle, session_factory, test_user):
        sub = await make_subscription(session_factory, test_user, datetime.utcnow() + timedelta(days=1))
        coordinator = TickCoordinator(lifecycle)

        await coordinator.start(run_catch_up=False)
        try:
            assert (await load_subscription(session_factory, sub.id)).status == SubscriptionStatus.ACTIVE
        finally:
            coordinator.shutdown()
