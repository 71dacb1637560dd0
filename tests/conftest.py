"""
Pytest fixtures для тестов VPN ядра
"""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from database.models import Base, User
from services.encryption_service import EncryptionService, generate_key
from services.subscription_service import SubscriptionLifecycle
from vpn.deployment_store import DeploymentStatusStore
from vpn.provisioning import ProvisioningOrchestrator
from vpn.registry import ServerRegistry

from helpers import FakeNotifier, FakePaymentGateway, FakeSSHClient


# === БАЗА ДАННЫХ ===

@pytest.fixture
async def async_engine(tmp_path):
    """SQLite во временном файле: у каждой сессии своё соединение"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture
async def session(session_factory):
    """Async session для тестов"""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def test_user(session):
    """Тестовый пользователь"""
    user = User(
        telegram_id=123456789,
        username="test_user",
        first_name="Test",
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


# === ЯДРО ===

@pytest.fixture
def encryption():
    return EncryptionService(key=generate_key())


@pytest.fixture
def registry(session_factory, encryption):
    return ServerRegistry(session_factory, encryption)


@pytest.fixture
def store():
    return DeploymentStatusStore(retention=timedelta(minutes=15))


@pytest.fixture
def ssh_client():
    return FakeSSHClient()


@pytest.fixture
async def orchestrator(registry, store, ssh_client):
    orchestrator = ProvisioningOrchestrator(
        registry,
        store,
        ssh_client=ssh_client,
        deadline=timedelta(seconds=5),
        watchdog_poll_interval=0.01,
        start_grace_seconds=0,
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def lifecycle(session_factory, notifier, gateway, registry):
    return SubscriptionLifecycle(
        session_factory,
        notifier=notifier,
        payment_gateway=gateway,
        registry=registry,
        warning_window=timedelta(days=3),
        reminder_cooldown=timedelta(hours=24),
        renewal_interval=timedelta(hours=6),
        auto_renewal_enabled=True,
    )
