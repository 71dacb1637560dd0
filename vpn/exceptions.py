"""
Исключения VPN ядра.

Отделяют бизнес-ошибки (валидация, ёмкость, не найдено)
от ошибок развёртывания и платежей.
"""
from typing import Optional


class VPNCoreError(Exception):
    """Базовое исключение ядра"""
    pass


class ValidationError(VPNCoreError):
    """Некорректный запрос на развёртывание или дубликат хоста"""
    pass


class NotFound(VPNCoreError):
    """Неизвестный сервер, подписка или развёртывание (в т.ч. уже очищенное)"""
    pass


class CapacityExceeded(VPNCoreError):
    """На сервере не осталось свободных слотов"""

    def __init__(self, node_id: int, max_clients: int):
        super().__init__(f"Сервер {node_id}: нет свободных слотов ({max_clients}/{max_clients})")
        self.node_id = node_id
        self.max_clients = max_clients


class InvalidStageTransition(VPNCoreError):
    """Попытка пропустить стадию или вернуться назад"""
    pass


class DeploymentError(VPNCoreError):
    """Фатальная ошибка развёртывания (прерывает пайплайн)"""
    pass


class SSHConnectionError(DeploymentError):
    """SSH недоступен"""
    pass


class CommandError(DeploymentError):
    """Удалённая команда завершилась с ненулевым кодом"""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class DeploymentTimeout(DeploymentError):
    """Развёртывание не уложилось в дедлайн (выставляется watchdog)"""
    pass


class PaymentFailure(VPNCoreError):
    """Списание не прошло"""
    pass
