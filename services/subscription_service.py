"""
Жизненный цикл подписок.

Сверки, которые запускает планировщик:
- refresh_statuses: пересчёт статуса из expires_at (при переходе в expired
  пользователь получает одно уведомление)
- dispatch_reminders: напоминания об окончании подписки
- process_auto_renewals: списания за автопродление
- purge_expired: архивация подписок, истёкших дольше льготного периода,
  с освобождением слота на сервере

Каждая сверка идемпотентна и безопасна при наложении запусков:
изменения одной подписки выполняются под её собственной блокировкой
с повторной проверкой состояния. Ошибка одной подписки логируется
и не прерывает обработку остальных.
"""
import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy import or_, select

from config import config
from database.models import Payment, Subscription, User
from services.payment_service import ChargeResult
from services.plans import Plan, days_word, get_plan, is_known_plan
from vpn.exceptions import NotFound, PaymentFailure, ValidationError
from vpn.registry import ServerRegistry

logger = logging.getLogger(__name__)


class SubscriptionStatus:
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Notifier(Protocol):
    async def notify_user(self, telegram_id: int, message: str) -> bool: ...


class PaymentGateway(Protocol):
    async def charge_subscription(self, subscription: Subscription, amount: int, description: str = ...) -> ChargeResult: ...


def compute_status(expires_at: datetime, now: datetime, warning_window: timedelta) -> str:
    """Статус подписки как функция от времени окончания"""
    if expires_at <= now:
        return SubscriptionStatus.EXPIRED
    if expires_at - now <= warning_window:
        return SubscriptionStatus.EXPIRING_SOON
    return SubscriptionStatus.ACTIVE


def days_left(expires_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((expires_at - now).total_seconds() / 86400))


def build_reminder_message(auto_renew: bool, days: int) -> str:
    message = (
        "🔄 <b>Напоминание о подписке</b>\n\n"
        f"Ваша VPN-подписка заканчивается через <b>{days} {days_word(days)}</b>.\n\n"
    )
    if auto_renew:
        message += (
            "✅ У вас включено автопродление. Оплата будет списана автоматически.\n\n"
            "Если вы хотите отключить автопродление, перейдите в раздел \"Мои подписки\"."
        )
    else:
        message += (
            "❗️ Автопродление не включено. Чтобы продлить подписку, перейдите в раздел "
            "\"Мои подписки\" и нажмите кнопку \"Продлить\".\n\n"
            "Также вы можете включить автопродление, чтобы не беспокоиться о продлении в будущем."
        )
    return message


def build_renewal_success_message(plan: Plan, expires_at: datetime) -> str:
    return (
        "✅ <b>Подписка продлена</b>\n\n"
        f"Тариф: {plan.title}\n"
        f"Списано: {plan.price} ₽\n"
        f"Действует до: {expires_at:%d.%m.%Y}\n\n"
        "Спасибо, что пользуетесь нашим сервисом!"
    )


def build_expiry_notice_message() -> str:
    return (
        "⚠️ <b>Ваша VPN-подписка истекла</b>\n\n"
        "Для продолжения использования VPN, пожалуйста, продлите вашу подписку "
        "в разделе \"Мои подписки\"."
    )


def build_renewal_failure_message() -> str:
    return (
        "❌ <b>Ошибка автопродления</b>\n\n"
        "К сожалению, мы не смогли списать оплату для автоматического продления вашей VPN-подписки.\n\n"
        "Пожалуйста, продлите подписку вручную в разделе \"Мои подписки\"."
    )


@dataclass
class ReconciliationReport:
    """Итог одного прохода сверки"""
    name: str
    processed: int = 0
    changed: int = 0
    failed: int = 0
    skipped: bool = False

    def __str__(self) -> str:
        if self.skipped:
            return f"{self.name}: пропущено (автопродление выключено)"
        return f"{self.name}: обработано {self.processed}, изменено {self.changed}, ошибок {self.failed}"


class SubscriptionLifecycle:
    """
    Сервис жизненного цикла подписок.

    Основные функции:
    - Сверки статусов, напоминаний, автопродлений и архивации истёкших
    - Создание/отмена подписки с резервированием слота на сервере
    - Включение/выключение автопродления
    """

    def __init__(
        self,
        session_factory,
        notifier: Notifier,
        payment_gateway: PaymentGateway,
        registry: Optional[ServerRegistry] = None,
        warning_window: Optional[timedelta] = None,
        reminder_cooldown: Optional[timedelta] = None,
        renewal_interval: Optional[timedelta] = None,
        auto_renewal_enabled: Optional[bool] = None,
        expired_grace: Optional[timedelta] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self.notifier = notifier
        self.payment_gateway = payment_gateway
        self.registry = registry or ServerRegistry(session_factory)
        self.warning_window = warning_window or timedelta(days=config.EXPIRY_WARNING_DAYS)
        self.reminder_cooldown = reminder_cooldown or timedelta(hours=config.REMINDER_COOLDOWN_HOURS)
        self.renewal_interval = renewal_interval or timedelta(hours=config.AUTO_RENEWAL_INTERVAL_HOURS)
        self.auto_renewal_enabled = (
            config.AUTO_RENEWAL_ENABLED if auto_renewal_enabled is None else auto_renewal_enabled
        )
        self.expired_grace = (
            timedelta(days=config.EXPIRED_GRACE_DAYS) if expired_grace is None else expired_grace
        )
        self._clock = clock
        # Блокировка на каждую подписку
        self._locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, subscription_id: int) -> asyncio.Lock:
        return self._locks[subscription_id]

    def _drop_lock(self, subscription_id: int) -> None:
        # Для отменённой подписки все операции под блокировкой — no-op
        lock = self._locks.get(subscription_id)
        if lock is not None and not lock.locked():
            del self._locks[subscription_id]

    async def _candidate_ids(self, *conditions) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription.id).where(*conditions).order_by(Subscription.id)
            )
            return list(result.scalars().all())

    # === СТАТУСЫ ===

    async def refresh_statuses(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Пересчитать статусы всех неотменённых подписок"""
        now = now or self._clock()
        report = ReconciliationReport("Обновление статусов")

        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription.id, Subscription.expires_at, Subscription.status)
                .where(Subscription.status != SubscriptionStatus.CANCELLED)
                .order_by(Subscription.id)
            )
            rows = result.all()

        for subscription_id, expires_at, status in rows:
            report.processed += 1
            if compute_status(expires_at, now, self.warning_window) == status:
                continue
            try:
                if await self._refresh_one(subscription_id, now):
                    report.changed += 1
            except Exception as e:
                report.failed += 1
                logger.error(f"Ошибка обновления статуса подписки {subscription_id}: {e}")

        logger.info(f"📋 {report}")
        return report

    async def _refresh_one(self, subscription_id: int, now: datetime) -> bool:
        async with self._lock_for(subscription_id):
            async with self._session_factory() as session:
                sub = await session.get(Subscription, subscription_id)
                if sub is None or sub.status == SubscriptionStatus.CANCELLED:
                    return False

                new_status = compute_status(sub.expires_at, now, self.warning_window)
                if sub.status == new_status:
                    return False

                logger.info(f"Подписка {subscription_id}: {sub.status} -> {new_status}")
                sub.status = new_status
                await session.commit()

                # Уведомление один раз: повторный запуск увидит expired под той же блокировкой
                if new_status == SubscriptionStatus.EXPIRED:
                    user = await session.get(User, sub.user_id)
                    if user is None or not await self.notifier.notify_user(
                        user.telegram_id, build_expiry_notice_message()
                    ):
                        logger.warning(f"Уведомление об истечении подписки {subscription_id} не доставлено")
                return True

    # === НАПОМИНАНИЯ ===

    async def dispatch_reminders(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Напомнить об окончании подписки (не чаще раза за cooldown)"""
        report = ReconciliationReport("Напоминания о подписках")
        if not self.auto_renewal_enabled:
            report.skipped = True
            logger.info(f"📋 {report}")
            return report

        now = now or self._clock()
        cutoff = now - self.reminder_cooldown
        ids = await self._candidate_ids(
            Subscription.status == SubscriptionStatus.EXPIRING_SOON,
            or_(Subscription.last_reminder_at.is_(None), Subscription.last_reminder_at <= cutoff),
        )

        for subscription_id in ids:
            report.processed += 1
            try:
                sent = await self._remind_one(subscription_id, now)
            except Exception as e:
                report.failed += 1
                logger.error(f"Ошибка отправки напоминания по подписке {subscription_id}: {e}")
                continue

            if sent is True:
                report.changed += 1
            elif sent is False:
                report.failed += 1

        logger.info(f"📋 {report}")
        return report

    async def _remind_one(self, subscription_id: int, now: datetime) -> Optional[bool]:
        """
        Returns:
            True — отправлено, False — не доставлено, None — пропущена
        """
        # Блокировка держится и во время отправки: параллельный запуск
        # увидит свежий last_reminder_at и пропустит подписку
        async with self._lock_for(subscription_id):
            async with self._session_factory() as session:
                sub = await session.get(Subscription, subscription_id)
                if sub is None or sub.status != SubscriptionStatus.EXPIRING_SOON:
                    return None
                if sub.last_reminder_at is not None and now - sub.last_reminder_at < self.reminder_cooldown:
                    return None

                user = await session.get(User, sub.user_id)
                if user is None:
                    raise NotFound(f"Пользователь {sub.user_id} не найден")

                message = build_reminder_message(sub.auto_renew, days_left(sub.expires_at, now))
                if not await self.notifier.notify_user(user.telegram_id, message):
                    logger.warning(f"Напоминание по подписке {subscription_id} не доставлено, повтор в следующий запуск")
                    return False

                sub.last_reminder_at = now
                await session.commit()
                logger.info(f"Отправлено напоминание пользователю {user.telegram_id} о подписке {subscription_id}")
                return True

    # === АВТОПРОДЛЕНИЕ ===

    async def process_auto_renewals(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Одна попытка списания на подписку за интервал автопродления"""
        report = ReconciliationReport("Автопродление подписок")
        if not self.auto_renewal_enabled:
            report.skipped = True
            logger.info(f"📋 {report}")
            return report

        now = now or self._clock()
        cutoff = now - self.renewal_interval
        ids = await self._candidate_ids(
            Subscription.auto_renew.is_(True),
            Subscription.auto_renew_failed.is_(False),
            Subscription.status.in_([SubscriptionStatus.EXPIRING_SOON, SubscriptionStatus.EXPIRED]),
            or_(
                Subscription.last_renewal_attempt_at.is_(None),
                Subscription.last_renewal_attempt_at <= cutoff,
            ),
        )
        logger.info(f"Найдено {len(ids)} подписок для автопродления")

        for subscription_id in ids:
            report.processed += 1
            try:
                renewed = await self._renew_one(subscription_id, now)
            except Exception as e:
                report.failed += 1
                logger.error(f"Ошибка при автопродлении подписки {subscription_id}: {e}")
                continue

            if renewed is True:
                report.changed += 1
            elif renewed is False:
                report.failed += 1

        logger.info(f"📋 {report}")
        return report

    async def _charge(self, sub: Subscription, plan: Plan) -> str:
        """
        Raises:
            PaymentFailure: списание не прошло
        """
        try:
            result = await self.payment_gateway.charge_subscription(
                sub, plan.price, f"Автопродление: {plan.description}"
            )
        except Exception as e:
            raise PaymentFailure(f"ошибка платёжного шлюза: {e}") from e

        if not result.success:
            raise PaymentFailure(result.error or "платёж отклонён")
        return result.payment_id

    async def _renew_one(self, subscription_id: int, now: datetime) -> Optional[bool]:
        """
        Returns:
            True — продлена, False — списание не прошло, None — пропущена
        """
        async with self._lock_for(subscription_id):
            async with self._session_factory() as session:
                sub = await session.get(Subscription, subscription_id)
                if sub is None or not sub.auto_renew or sub.auto_renew_failed:
                    return None
                if sub.status not in (SubscriptionStatus.EXPIRING_SOON, SubscriptionStatus.EXPIRED):
                    return None
                if sub.last_renewal_attempt_at is not None and now - sub.last_renewal_attempt_at < self.renewal_interval:
                    return None

                pending = await session.scalar(
                    select(Payment.id).where(
                        Payment.subscription_id == subscription_id,
                        Payment.is_auto_renewal.is_(True),
                        Payment.status == "pending",
                    ).limit(1)
                )
                if pending is not None:
                    # Исход прошлого списания неизвестен: повторно не списываем
                    logger.error(
                        f"Подписка {subscription_id}: платёж {pending} в статусе pending, "
                        f"автопродление пропущено до ручной проверки"
                    )
                    return None

                user = await session.get(User, sub.user_id)
                plan = get_plan(sub.plan)

                # Попытка и платёж фиксируются до списания
                payment = Payment(
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    amount=plan.price_kopecks,
                    currency="RUB",
                    plan=plan.code,
                    provider="yookassa",
                    status="pending",
                    is_auto_renewal=True,
                )
                session.add(payment)
                sub.last_renewal_attempt_at = now
                await session.commit()

                try:
                    payment.provider_payment_id = await self._charge(sub, plan)
                except PaymentFailure as e:
                    payment.status = "failed"
                    sub.last_renewal_status = "failed"
                    sub.last_renewal_error = str(e)
                    sub.auto_renew_failed = True
                    await session.commit()
                    logger.error(f"Автопродление подписки {subscription_id} не удалось: {e}")
                    if user is not None:
                        await self.notifier.notify_user(user.telegram_id, build_renewal_failure_message())
                    return False

                # Истёкшая продлевается от текущего момента, активная — от даты окончания
                base = now if sub.expires_at <= now else sub.expires_at
                sub.expires_at = base + plan.period
                sub.status = SubscriptionStatus.ACTIVE
                sub.last_renewal_status = "succeeded"
                sub.last_renewal_error = None
                sub.last_reminder_at = None
                payment.status = "succeeded"
                payment.paid_at = now
                await session.commit()

                logger.info(f"✅ Подписка {subscription_id} продлена до {sub.expires_at:%d.%m.%Y %H:%M}")
                if user is not None:
                    await self.notifier.notify_user(
                        user.telegram_id, build_renewal_success_message(plan, sub.expires_at)
                    )
                return True

    # === АРХИВАЦИЯ ===

    async def purge_expired(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Архивировать подписки, истёкшие дольше льготного периода, и освободить их слоты"""
        now = now or self._clock()
        report = ReconciliationReport("Архивация истёкших подписок")
        expired_before = now - self.expired_grace
        ids = await self._candidate_ids(
            Subscription.status != SubscriptionStatus.CANCELLED,
            Subscription.expires_at <= expired_before,
        )

        for subscription_id in ids:
            report.processed += 1
            try:
                if await self._archive(subscription_id, now, expired_before=expired_before):
                    report.changed += 1
            except Exception as e:
                report.failed += 1
                logger.error(f"Ошибка архивации подписки {subscription_id}: {e}")

        logger.info(f"📋 {report}")
        return report

    async def _archive(
        self,
        subscription_id: int,
        now: datetime,
        expired_before: Optional[datetime] = None,
    ) -> bool:
        """
        Перевести подписку в cancelled и освободить слот.

        С expired_before архивируется только подписка, истёкшая раньше этого
        момента (продлённая за это время остаётся как есть).
        """
        async with self._lock_for(subscription_id):
            async with self._session_factory() as session:
                sub = await session.get(Subscription, subscription_id)
                if sub is None:
                    raise NotFound(f"Подписка {subscription_id} не найдена")
                if sub.status == SubscriptionStatus.CANCELLED:
                    return False
                if expired_before is not None and sub.expires_at > expired_before:
                    return False

                sub.status = SubscriptionStatus.CANCELLED
                sub.auto_renew = False
                sub.archived_at = now
                server_id = sub.server_id
                await session.commit()

            if server_id is not None:
                await self.registry.release_slot(server_id)

        self._drop_lock(subscription_id)
        reason = "архивирована после истечения" if expired_before is not None else "отменена"
        logger.info(f"🗄 Подписка {subscription_id} {reason} (сервер {server_id})")
        return True

    # === УПРАВЛЕНИЕ ПОДПИСКАМИ ===

    async def create_subscription(
        self,
        user_id: int,
        plan: str,
        server_id: Optional[int] = None,
        payment_method_id: Optional[str] = None,
        auto_renew: bool = False,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Создать подписку и занять слот на сервере.

        Raises:
            ValidationError: неизвестный тариф
            NotFound: пользователь не найден или нет доступных серверов
            CapacityExceeded: на выбранном сервере нет слотов
        """
        if not is_known_plan(plan):
            raise ValidationError(f"Неизвестный тариф: {plan}")

        now = now or self._clock()

        async with self._session_factory() as session:
            if await session.get(User, user_id) is None:
                raise NotFound(f"Пользователь {user_id} не найден")

        if server_id is None:
            node = await self.registry.find_available_node()
            if node is None:
                raise NotFound("Нет активных серверов со свободными слотами")
            server_id = node.id

        reservation = await self.registry.reserve_slot(server_id)

        try:
            async with self._session_factory() as session:
                period = get_plan(plan).period
                sub = Subscription(
                    user_id=user_id,
                    server_id=server_id,
                    plan=plan,
                    status=compute_status(now + period, now, self.warning_window),
                    started_at=now,
                    expires_at=now + period,
                    auto_renew=auto_renew,
                    payment_method_id=payment_method_id,
                )
                session.add(sub)
                await session.commit()
        except Exception:
            await self.registry.release_slot(server_id)
            raise

        logger.info(
            f"Подписка {sub.id} ({plan}) создана для user_id={user_id} на сервере {server_id}, "
            f"свободно слотов: {reservation.free_slots}"
        )
        return sub

    async def cancel_subscription(self, subscription_id: int) -> bool:
        """Отменить подписку и освободить слот. Повторная отмена — no-op."""
        return await self._archive(subscription_id, self._clock())

    async def enable_auto_renewal(
        self,
        subscription_id: int,
        payment_method_id: Optional[str] = None,
    ) -> Subscription:
        """Включить автопродление (сбрасывает флаг неудачного продления)"""
        async with self._lock_for(subscription_id):
            async with self._session_factory() as session:
                sub = await session.get(Subscription, subscription_id)
                if sub is None:
                    raise NotFound(f"Подписка {subscription_id} не найдена")
                if sub.status == SubscriptionStatus.CANCELLED:
                    raise ValidationError(f"Подписка {subscription_id} отменена")

                sub.auto_renew = True
                sub.auto_renew_failed = False
                if payment_method_id:
                    sub.payment_method_id = payment_method_id
                if not sub.payment_method_id:
                    logger.warning(f"⚠️ Подписка {subscription_id}: автопродление без сохранённого способа оплаты")
                await session.commit()

        logger.info(f"Автопродление включено для подписки {subscription_id}")
        return sub

    async def disable_auto_renewal(self, subscription_id: int) -> Subscription:
        async with self._lock_for(subscription_id):
            async with self._session_factory() as session:
                sub = await session.get(Subscription, subscription_id)
                if sub is None:
                    raise NotFound(f"Подписка {subscription_id} не найдена")
                sub.auto_renew = False
                await session.commit()

        logger.info(f"Автопродление отключено для подписки {subscription_id}")
        return sub
