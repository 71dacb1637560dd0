"""
Конфигурация тарифных планов VPN.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from config import config


@dataclass(frozen=True)
class Plan:
    """Тарифный план"""
    code: str
    title: str
    description: str
    days: int  # Продолжительность периода
    price: int  # В рублях

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.days)

    @property
    def price_kopecks(self) -> int:
        return self.price * 100


# Конфигурация тарифов
PLANS = {
    "monthly": Plan(
        code="monthly",
        title="Месяц",
        description="Месячная подписка на VPN сервис",
        days=30,
        price=config.MONTHLY_SUBSCRIPTION_PRICE,
    ),
    "quarterly": Plan(
        code="quarterly",
        title="3 месяца",
        description="Квартальная подписка на VPN сервис (3 месяца)",
        days=90,
        price=config.QUARTERLY_SUBSCRIPTION_PRICE,
    ),
    "annual": Plan(
        code="annual",
        title="Год",
        description="Годовая подписка на VPN сервис (12 месяцев)",
        days=365,
        price=config.ANNUAL_SUBSCRIPTION_PRICE,
    ),
}

DEFAULT_PLAN = "monthly"


def get_plan(code: Optional[str]) -> Plan:
    """Получить план. Неизвестный код — месячный план."""
    return PLANS.get(code or DEFAULT_PLAN, PLANS[DEFAULT_PLAN])


def is_known_plan(code: str) -> bool:
    return code in PLANS


def days_word(days: int) -> str:
    """Склонение слова "день" для числа"""
    n = abs(days) % 100
    if 11 <= n <= 14:
        return "дней"
    last = n % 10
    if last == 1:
        return "день"
    if 2 <= last <= 4:
        return "дня"
    return "дней"
