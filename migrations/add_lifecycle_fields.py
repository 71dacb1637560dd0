"""
Миграция: поля жизненного цикла серверов и подписок.

servers: state, failure_reason, Reality параметры.
subscriptions: автопродление, напоминания, попытки продления, архивация.

Запускать один раз: python migrations/add_lifecycle_fields.py
"""
import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database import async_session

NEW_COLUMNS = {
    "servers": [
        ("state", "VARCHAR(20) DEFAULT 'provisioning'"),
        ("failure_reason", "TEXT"),
        ("reality_public_key", "VARCHAR(100)"),
        ("reality_short_id", "VARCHAR(32)"),
        ("initial_user_id", "VARCHAR(36)"),
    ],
    "subscriptions": [
        ("auto_renew_failed", "BOOLEAN DEFAULT 0"),
        ("payment_method_id", "VARCHAR(100)"),
        ("last_reminder_at", "DATETIME"),
        ("last_renewal_attempt_at", "DATETIME"),
        ("last_renewal_status", "VARCHAR(20)"),
        ("last_renewal_error", "TEXT"),
        ("archived_at", "DATETIME"),
    ],
    "payments": [
        ("is_auto_renewal", "BOOLEAN DEFAULT 0"),
    ],
}

INDEXES = [
    ("ix_servers_state", "servers", "state"),
    ("ix_subscriptions_status", "subscriptions", "status"),
    ("ix_subscriptions_expires_at", "subscriptions", "expires_at"),
    ("ix_payments_subscription_status", "payments", "subscription_id, status"),
]


async def migrate():
    async with async_session() as session:
        for table, columns in NEW_COLUMNS.items():
            result = await session.execute(text(f"PRAGMA table_info({table})"))
            existing = {row[1] for row in result.fetchall()}

            for col_name, col_type in columns:
                if col_name not in existing:
                    await session.execute(text(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}"))
                    print(f"✅ Поле {table}.{col_name} добавлено")
                else:
                    print(f"ℹ️ Поле {table}.{col_name} уже существует")

        # Существующие активные серверы переводим в active
        await session.execute(text(
            "UPDATE servers SET state = 'active' WHERE is_active = 1 AND state = 'provisioning'"
        ))

        for index_name, table, column in INDEXES:
            await session.execute(text(f"CREATE INDEX IF NOT EXISTS {index_name} ON {table}({column})"))
            print(f"✅ Индекс {index_name}")

        await session.commit()
    print("\n✅ Миграция завершена!")


if __name__ == "__main__":
    asyncio.run(migrate())
