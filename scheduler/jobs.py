"""
Планировщик задач (APScheduler).
Регулярные сверки подписок и очистка статусов развёртываний.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import pytz
from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import config
from services.subscription_service import SubscriptionLifecycle
from vpn.deployment_store import DeploymentStatusStore

logger = logging.getLogger(__name__)

STATUS_REFRESH = "status_refresh"
REMINDER_DISPATCH = "reminder_dispatch"
AUTO_RENEWAL = "auto_renewal"
SUBSCRIPTION_PURGE = "subscription_purge"
DEPLOYMENT_CLEANUP = "deployment_cleanup"


@dataclass
class Tick:
    """Именованная периодическая задача"""
    name: str
    func: Callable[[], Awaitable[Any]]
    interval: timedelta
    title: str


def default_intervals() -> dict[str, timedelta]:
    return {
        STATUS_REFRESH: timedelta(minutes=config.STATUS_REFRESH_MINUTES),
        REMINDER_DISPATCH: timedelta(minutes=config.REMINDER_INTERVAL_MINUTES),
        AUTO_RENEWAL: timedelta(hours=config.AUTO_RENEWAL_INTERVAL_HOURS),
        SUBSCRIPTION_PURGE: timedelta(minutes=config.SUBSCRIPTION_PURGE_MINUTES),
        DEPLOYMENT_CLEANUP: timedelta(minutes=config.DEPLOY_CLEANUP_MINUTES),
    }


class TickCoordinator:
    """
    Владелец всех фоновых задач.

    Интервалы передаются явно (или берутся из конфигурации),
    run_now() запускает сверку синхронно — без ожидания таймеров.
    """

    def __init__(
        self,
        lifecycle: SubscriptionLifecycle,
        deployment_store: Optional[DeploymentStatusStore] = None,
        intervals: Optional[dict[str, timedelta]] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.lifecycle = lifecycle
        self.deployment_store = deployment_store
        self.scheduler = scheduler or AsyncIOScheduler(timezone=pytz.timezone(config.TIMEZONE))

        resolved = default_intervals()
        for name, interval in (intervals or {}).items():
            if name not in resolved:
                raise ValueError(f"Неизвестная задача: {name}")
            if interval <= timedelta(0):
                raise ValueError(f"Интервал задачи {name} должен быть больше 0")
            resolved[name] = interval

        self._ticks: dict[str, Tick] = {
            STATUS_REFRESH: Tick(STATUS_REFRESH, lifecycle.refresh_statuses, resolved[STATUS_REFRESH], "📋 Статусы подписок"),
            REMINDER_DISPATCH: Tick(REMINDER_DISPATCH, lifecycle.dispatch_reminders, resolved[REMINDER_DISPATCH], "🔔 Напоминания"),
            AUTO_RENEWAL: Tick(AUTO_RENEWAL, lifecycle.process_auto_renewals, resolved[AUTO_RENEWAL], "💳 Автопродление"),
            SUBSCRIPTION_PURGE: Tick(
                SUBSCRIPTION_PURGE, lifecycle.purge_expired, resolved[SUBSCRIPTION_PURGE], "🗄 Архивация истёкших подписок"
            ),
        }
        if deployment_store is not None:
            self._ticks[DEPLOYMENT_CLEANUP] = Tick(
                DEPLOYMENT_CLEANUP, self._purge_deployments, resolved[DEPLOYMENT_CLEANUP], "🧹 Очистка развёртываний"
            )

        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @property
    def names(self) -> list[str]:
        return list(self._ticks)

    def interval(self, name: str) -> timedelta:
        return self._get(name).interval

    def _get(self, name: str) -> Tick:
        tick = self._ticks.get(name)
        if tick is None:
            raise ValueError(f"Неизвестная задача: {name}")
        return tick

    async def _purge_deployments(self) -> int:
        return self.deployment_store.purge_expired()

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        logger.error(f"❌ Ошибка задачи {event.job_id}: {event.exception!r}")

    async def run_now(self, name: str) -> Any:
        """Выполнить задачу немедленно и дождаться результата"""
        return await self._get(name).func()

    async def start(self, run_catch_up: bool = True) -> None:
        """
        Запустить планировщик.

        Перед стартом статусы пересчитываются один раз, чтобы не ждать
        первого интервала после простоя.
        """
        if run_catch_up:
            try:
                await self.run_now(STATUS_REFRESH)
            except Exception as e:
                logger.error(f"❌ Ошибка начального обновления статусов: {e}")

        for tick in self._ticks.values():
            self.scheduler.add_job(
                tick.func,
                IntervalTrigger(seconds=tick.interval.total_seconds()),
                id=tick.name,
                name=tick.name,
                replace_existing=True,
                coalesce=True,
            )

        self.scheduler.start()
        logger.info("✅ Планировщик задач запущен")
        for tick in self._ticks.values():
            logger.info(f"   {tick.title}: каждые {_format_interval(tick.interval)}")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("⏹ Планировщик задач остановлен")


def _format_interval(interval: timedelta) -> str:
    seconds = int(interval.total_seconds())
    if seconds % 3600 == 0:
        return f"{seconds // 3600} ч"
    if seconds % 60 == 0:
        return f"{seconds // 60} мин"
    return f"{seconds} с"
