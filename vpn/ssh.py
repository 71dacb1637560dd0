"""
SSH доступ к VPN серверам (asyncssh).

Одно соединение открывается на всё развёртывание и переиспользуется
для всех стадий. Ненулевой код возврата не считается исключением:
решение принимает вызывающий код по CommandResult.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import asyncssh

from config import config

from .exceptions import SSHConnectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSHTarget:
    """Куда подключаться"""
    host: str
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    key_path: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class CommandResult:
    """Результат удалённой команды (stdout + stderr вместе)"""
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteSession:
    """Открытое SSH соединение"""

    def __init__(self, conn: asyncssh.SSHClientConnection, target: SSHTarget, command_timeout: float):
        self._conn = conn
        self.target = target
        self._command_timeout = command_timeout

    async def run(
        self,
        command: str,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Выполнить команду.

        Raises:
            SSHConnectionError: соединение оборвалось или команда зависла
        """
        try:
            result = await asyncio.wait_for(
                self._conn.run(command, input=input, check=False),
                timeout=timeout or self._command_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SSHConnectionError(f"Таймаут команды на {self.target}") from e
        except (asyncssh.Error, OSError) as e:
            raise SSHConnectionError(f"SSH ошибка на {self.target}: {e}") from e

        output = (result.stdout or "") + (result.stderr or "")
        # exit_status = None, если процесс убит сигналом
        exit_code = result.exit_status if result.exit_status is not None else -1
        return CommandResult(exit_code=exit_code, output=output)


class SSHClient:
    """
    Фабрика SSH сессий.

    Использование:
        async with client.open_session(target) as session:
            result = await session.run("docker ps")
    """

    def __init__(
        self,
        connect_timeout: Optional[float] = None,
        command_timeout: Optional[float] = None,
    ):
        self.connect_timeout = connect_timeout or config.SSH_CONNECT_TIMEOUT
        self.command_timeout = command_timeout or config.SSH_COMMAND_TIMEOUT

    def _connect_kwargs(self, target: SSHTarget) -> dict:
        connect_kwargs = {
            "host": target.host,
            "port": target.port,
            "username": target.username,
            "known_hosts": None,  # Свежие серверы, ключ хоста ещё неизвестен
            "connect_timeout": self.connect_timeout,
        }

        if target.password:
            connect_kwargs["password"] = target.password
            connect_kwargs["client_keys"] = None
        elif target.key_path:
            connect_kwargs["client_keys"] = [target.key_path]
        else:
            raise SSHConnectionError(f"Не указан пароль или путь к ключу SSH для {target}")

        return connect_kwargs

    @asynccontextmanager
    async def open_session(self, target: SSHTarget) -> AsyncIterator[RemoteSession]:
        """
        Открыть соединение.

        Raises:
            SSHConnectionError: сервер недоступен или отказал в авторизации
        """
        try:
            conn = await asyncssh.connect(**self._connect_kwargs(target))
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise SSHConnectionError(f"Не удалось подключиться к {target}: {e}") from e

        try:
            yield RemoteSession(conn, target, self.command_timeout)
        finally:
            conn.close()
            await conn.wait_closed()

    async def execute_remote_command(self, target: SSHTarget, command: str) -> CommandResult:
        """Разовая команда в отдельном соединении"""
        async with self.open_session(target) as session:
            return await session.run(command)
