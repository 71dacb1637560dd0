"""
Сервис уведомлений.
Отправляет сообщения пользователям через Telegram бота.
"""
import logging

from aiogram import Bot

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Отправка уведомлений в Telegram"""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def notify_user(self, telegram_id: int, message: str) -> bool:
        """
        Отправить сообщение пользователю.

        Returns:
            True если сообщение доставлено
        """
        try:
            await self.bot.send_message(telegram_id, message, parse_mode="HTML")
            return True
        except Exception as e:
            logger.error(f"Не удалось отправить сообщение пользователю {telegram_id}: {e}")
            return False
