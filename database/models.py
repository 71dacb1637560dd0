"""
Модели базы данных (SQLAlchemy ORM).
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Базовый класс для всех моделей"""
    pass


class User(Base):
    """Пользователи бота"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    telegram_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Отношения
    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="user")


# === VPN СЕРВЕРЫ ===

class VpnNode(Base):
    """VPN сервер (нода)"""
    __tablename__ = "servers"
    __table_args__ = (
        CheckConstraint("current_clients >= 0", name="ck_servers_clients_non_negative"),
        CheckConstraint("current_clients <= max_clients", name="ck_servers_clients_capacity"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    host: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    port: Mapped[int] = mapped_column(Integer, default=443)  # Порт для клиентов

    # SSH доступ
    ssh_username: Mapped[str] = mapped_column(String(50), default="root")
    ssh_port: Mapped[int] = mapped_column(Integer, default=22)
    ssh_password: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Зашифрован Fernet
    ssh_key_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    location: Mapped[str] = mapped_column(String(100), default="N/A")
    provider: Mapped[str] = mapped_column(String(100), default="N/A")

    # Ёмкость
    max_clients: Mapped[int] = mapped_column(Integer, default=100)
    current_clients: Mapped[int] = mapped_column(Integer, default=0)

    # Статус: provisioning, active, failed, disabled
    state: Mapped[str] = mapped_column(String(20), default="provisioning", index=True)
    is_active: Mapped[bool] = mapped_column(default=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Reality (заполняется при развёртывании)
    reality_public_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reality_short_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    initial_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def free_slots(self) -> int:
        return max(0, self.max_clients - self.current_clients)


# === ПОДПИСКИ И ПЛАТЕЖИ ===

class Subscription(Base):
    """Подписки пользователей"""
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    server_id: Mapped[Optional[int]] = mapped_column(ForeignKey("servers.id"), nullable=True, index=True)

    plan: Mapped[str] = mapped_column(String(20))  # 'monthly', 'quarterly', 'annual'
    # 'active', 'expiring_soon', 'expired', 'cancelled'
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)

    # Автопродление
    auto_renew: Mapped[bool] = mapped_column(default=False)
    auto_renew_failed: Mapped[bool] = mapped_column(default=False)
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # Сохранённый способ оплаты ЮKassa

    # Трекинг напоминаний и попыток продления
    last_reminder_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_renewal_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_renewal_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # 'succeeded', 'failed'
    last_renewal_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # Отмена или архивация после истечения

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Отношения
    user: Mapped["User"] = relationship(back_populates="subscriptions")


class Payment(Base):
    """Платежи"""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    subscription_id: Mapped[Optional[int]] = mapped_column(ForeignKey("subscriptions.id"), nullable=True, index=True)

    amount: Mapped[int] = mapped_column(Integer)  # В копейках
    currency: Mapped[str] = mapped_column(String(3), default="RUB")

    plan: Mapped[str] = mapped_column(String(20))  # Какой план оплачен

    provider: Mapped[str] = mapped_column(String(20))  # 'yookassa', 'manual'
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="pending")  # 'pending', 'succeeded', 'failed'
    is_auto_renewal: Mapped[bool] = mapped_column(default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
