"""
Конфигурация приложения.
Все секреты загружаются из .env файла.
"""
import os
from dotenv import load_dotenv

# Загружаем переменные из .env
load_dotenv()


def _bool_env(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Основная конфигурация"""

    # Telegram (уведомления пользователям)
    BOT_TOKEN: str = os.getenv("BOT_TOKEN", "")

    # ЮKassa
    YOOKASSA_SHOP_ID: str = os.getenv("YOOKASSA_SHOP_ID", "")
    YOOKASSA_SECRET_KEY: str = os.getenv("YOOKASSA_SECRET_KEY", "")

    # База данных
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///vpn_database.db")

    # Шифрование (SSH пароли серверов в БД)
    ENCRYPTION_KEY: str = os.getenv("ENCRYPTION_KEY", "")

    # Таймзона
    TIMEZONE: str = os.getenv("TIMEZONE", "Europe/Moscow")

    # HTTP API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "3000"))

    # Автопродление (глобальный флаг, гейт для напоминаний и списаний)
    AUTO_RENEWAL_ENABLED: bool = _bool_env("AUTO_RENEWAL_ENABLED")

    # Цены тарифов (в рублях)
    MONTHLY_SUBSCRIPTION_PRICE: int = int(os.getenv("MONTHLY_SUBSCRIPTION_PRICE", "299"))
    QUARTERLY_SUBSCRIPTION_PRICE: int = int(os.getenv("QUARTERLY_SUBSCRIPTION_PRICE", "799"))
    ANNUAL_SUBSCRIPTION_PRICE: int = int(os.getenv("ANNUAL_SUBSCRIPTION_PRICE", "2999"))

    # Интервалы фоновых задач
    STATUS_REFRESH_MINUTES: int = int(os.getenv("STATUS_REFRESH_MINUTES", "30"))
    REMINDER_INTERVAL_MINUTES: int = int(os.getenv("REMINDER_INTERVAL_MINUTES", "60"))
    AUTO_RENEWAL_INTERVAL_HOURS: int = int(os.getenv("AUTO_RENEWAL_INTERVAL_HOURS", "6"))
    DEPLOY_CLEANUP_MINUTES: int = int(os.getenv("DEPLOY_CLEANUP_MINUTES", "5"))
    SUBSCRIPTION_PURGE_MINUTES: int = int(os.getenv("SUBSCRIPTION_PURGE_MINUTES", "60"))

    # Окна подписок
    EXPIRY_WARNING_DAYS: int = int(os.getenv("EXPIRY_WARNING_DAYS", "3"))
    REMINDER_COOLDOWN_HOURS: int = int(os.getenv("REMINDER_COOLDOWN_HOURS", "24"))
    # Сколько истёкшая подписка держит слот до архивации
    EXPIRED_GRACE_DAYS: int = int(os.getenv("EXPIRED_GRACE_DAYS", "3"))

    # Развёртывание серверов
    DEPLOY_TIMEOUT_MINUTES: int = int(os.getenv("DEPLOY_TIMEOUT_MINUTES", "30"))
    DEPLOY_RETENTION_MINUTES: int = int(os.getenv("DEPLOY_RETENTION_MINUTES", "15"))
    DEFAULT_MAX_CLIENTS: int = int(os.getenv("DEFAULT_MAX_CLIENTS", "100"))
    SSH_PRIVATE_KEY_PATH: str = os.getenv(
        "SSH_PRIVATE_KEY_PATH", os.path.join(os.path.expanduser("~"), ".ssh", "id_rsa")
    )
    SSH_CONNECT_TIMEOUT: float = float(os.getenv("SSH_CONNECT_TIMEOUT", "20"))
    SSH_COMMAND_TIMEOUT: float = float(os.getenv("SSH_COMMAND_TIMEOUT", "900"))

    # Xray
    XRAY_IMAGE: str = os.getenv("XRAY_IMAGE", "teddysun/xray:latest")
    XRAY_CONTAINER_NAME: str = os.getenv("XRAY_CONTAINER_NAME", "xray_vpn")
    XRAY_REALITY_DEST: str = os.getenv("XRAY_REALITY_DEST", "www.google.com:443")
    XRAY_START_GRACE_SECONDS: float = float(os.getenv("XRAY_START_GRACE_SECONDS", "5"))
    ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "admin@example.com")

    @classmethod
    def validate(cls) -> bool:
        """Проверка обязательных переменных"""
        errors = []

        if not cls.BOT_TOKEN:
            errors.append("BOT_TOKEN не установлен")
        if cls.AUTO_RENEWAL_ENABLED and not (cls.YOOKASSA_SHOP_ID and cls.YOOKASSA_SECRET_KEY):
            errors.append("AUTO_RENEWAL_ENABLED включён, но ЮKassa не настроена")
        if cls.DEPLOY_TIMEOUT_MINUTES <= 0:
            errors.append("DEPLOY_TIMEOUT_MINUTES должен быть больше 0")

        if errors:
            for error in errors:
                print(f"❌ Ошибка конфигурации: {error}")
            return False

        print("✅ Конфигурация загружена успешно")
        return True


# Создаём экземпляр конфигурации
config = Config()
