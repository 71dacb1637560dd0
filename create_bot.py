"""
Инициализация бота для уведомлений пользователей.
"""
import logging
from aiogram import Bot

from config import config

# Создаем бота (только отправка сообщений, без диспетчера)
bot = Bot(token=config.BOT_TOKEN)

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
