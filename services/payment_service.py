"""
Сервис для работы с ЮKassa.
Рекуррентные списания по сохранённому способу оплаты (автопродление подписок).
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from yookassa import Configuration, Payment

from config import config
from database.models import Subscription

logger = logging.getLogger(__name__)

# Конфигурация ЮKassa
if config.YOOKASSA_SHOP_ID and config.YOOKASSA_SECRET_KEY:
    Configuration.account_id = config.YOOKASSA_SHOP_ID
    Configuration.secret_key = config.YOOKASSA_SECRET_KEY


@dataclass(frozen=True)
class ChargeResult:
    """Результат списания"""
    success: bool
    payment_id: Optional[str] = None
    error: Optional[str] = None


class YookassaGateway:
    """Списания через ЮKassa"""

    def is_configured(self) -> bool:
        return bool(config.YOOKASSA_SHOP_ID and config.YOOKASSA_SECRET_KEY)

    def _create_payment(self, subscription: Subscription, amount: int, description: str):
        idempotence_key = str(uuid.uuid4())
        return Payment.create({
            "amount": {
                "value": f"{amount:.2f}",
                "currency": "RUB"
            },
            "capture": True,  # Автоматическое списание
            "payment_method_id": subscription.payment_method_id,
            "description": description,
            "receipt": {
                "customer": {
                    "email": config.ADMIN_EMAIL
                },
                "items": [
                    {
                        "description": description,
                        "quantity": "1.00",
                        "amount": {
                            "value": f"{amount:.2f}",
                            "currency": "RUB"
                        },
                        "vat_code": 1,  # Без НДС
                        "payment_mode": "full_payment",
                        "payment_subject": "service"
                    }
                ]
            },
            "metadata": {
                "user_id": subscription.user_id,
                "subscription_id": subscription.id,
                "plan": subscription.plan,
                "is_auto_renewal": True,
            }
        }, idempotence_key)

    async def charge_subscription(
        self,
        subscription: Subscription,
        amount: int,
        description: str = "Автопродление VPN-подписки",
    ) -> ChargeResult:
        """
        Списать оплату за продление.

        Args:
            subscription: Подписка с сохранённым payment_method_id
            amount: Сумма в рублях
            description: Описание платежа

        Returns:
            ChargeResult (ошибки ЮKassa не пробрасываются)
        """
        if not self.is_configured():
            return ChargeResult(False, error="ЮKassa не настроена")

        if not subscription.payment_method_id:
            return ChargeResult(False, error="Нет сохранённого способа оплаты")

        try:
            # SDK синхронный — выполняем в отдельном потоке
            payment = await asyncio.to_thread(self._create_payment, subscription, amount, description)
        except Exception as e:
            logger.error(f"Ошибка создания платежа для подписки {subscription.id}: {e}")
            return ChargeResult(False, error=str(e))

        if payment.status == "succeeded":
            logger.info(f"Платёж {payment.id} для подписки {subscription.id} успешно проведён")
            return ChargeResult(True, payment_id=payment.id)

        reason = None
        if getattr(payment, "cancellation_details", None):
            reason = payment.cancellation_details.reason
        error = f"Статус платежа: {payment.status}" + (f" ({reason})" if reason else "")
        logger.warning(f"Платёж {payment.id} для подписки {subscription.id} не прошёл: {error}")
        return ChargeResult(False, payment_id=payment.id, error=error)
