"""
Подключение к базе данных SQLite.
"""
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from config import config
from .models import Base

logger = logging.getLogger(__name__)

# sqlite:///vpn_core.db -> sqlite+aiosqlite:///vpn_core.db
DATABASE_URL = config.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://")

engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args={"timeout": 30},
)


@event.listens_for(engine.sync_engine, "connect")
def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db():
    """Создание таблиц (миграции колонок — в migrations/)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"✅ База данных инициализирована: {DATABASE_URL}")


async def close_db():
    """Закрыть пул соединений при остановке сервиса"""
    await engine.dispose()
    logger.info("🔌 Соединения с базой данных закрыты")
