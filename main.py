"""
Точка входа приложения.
VPN ядро: HTTP API развёртывания серверов и фоновые сверки подписок.
"""
import asyncio
import logging
import sys
import os
import fcntl
from datetime import timedelta

from config import config

# Путь к PID-файлу
PID_FILE = "/tmp/vpn_core.pid"


def check_already_running():
    """Проверка, что сервис уже не запущен"""
    try:
        # Пробуем получить эксклюзивную блокировку файла
        pid_file = open(PID_FILE, 'w')
        fcntl.flock(pid_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        pid_file.write(str(os.getpid()))
        pid_file.flush()
        # Не закрываем файл — держим блокировку до конца работы
        return pid_file
    except (IOError, OSError):
        print("❌ Сервис уже запущен! Завершаю дубль.")
        sys.exit(1)


from create_bot import bot
from database import async_session, close_db, init_db
from scheduler import TickCoordinator
from services.notify_service import TelegramNotifier
from services.payment_service import YookassaGateway
from services.subscription_service import SubscriptionLifecycle
from vpn import DeploymentStatusStore, ProvisioningOrchestrator, ServerRegistry, SSHClient
from api import create_app

logger = logging.getLogger(__name__)


def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict):
    """Необработанные ошибки задач логируются, процесс продолжает работу"""
    exc = context.get("exception")
    logger.error(f"❌ Необработанная ошибка: {context.get('message')}", exc_info=exc)


async def run_api_server(app):
    """Запустить FastAPI сервер в текущем event loop"""
    import uvicorn

    config_uvicorn = uvicorn.Config(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        log_level="warning",  # Меньше логов
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()


async def main():
    """Главная функция"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    # Проверяем конфигурацию
    if not config.validate():
        raise ValueError("Ошибка конфигурации. Проверьте .env файл.")

    asyncio.get_running_loop().set_exception_handler(handle_loop_exception)

    # Инициализируем базу данных
    await init_db()

    registry = ServerRegistry(async_session)
    store = DeploymentStatusStore(retention=timedelta(minutes=config.DEPLOY_RETENTION_MINUTES))
    orchestrator = ProvisioningOrchestrator(registry, store, SSHClient())

    lifecycle = SubscriptionLifecycle(
        async_session,
        notifier=TelegramNotifier(bot),
        payment_gateway=YookassaGateway(),
        registry=registry,
    )
    coordinator = TickCoordinator(lifecycle, deployment_store=store)
    await coordinator.start(run_catch_up=True)

    logger.info(f"🚀 API запущен на {config.API_HOST}:{config.API_PORT}")
    try:
        await run_api_server(create_app(registry, store, orchestrator))
    finally:
        coordinator.shutdown()
        await orchestrator.shutdown()
        await bot.session.close()
        await close_db()
        logger.info("👋 Сервис остановлен")


if __name__ == "__main__":
    # Проверяем, что сервис не запущен
    _pid_lock = check_already_running()
    asyncio.run(main())
