"""
Реестр VPN серверов.

Хранит ноды в БД и следит за ёмкостью: слоты резервируются
и освобождаются только атомарными операциями.
"""

import asyncio
import ipaddress
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from config import config
from database.models import VpnNode
from services.encryption_service import EncryptionService, get_encryption

from .exceptions import CapacityExceeded, NotFound, ValidationError
from .ssh import SSHTarget

logger = logging.getLogger(__name__)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_.-]{0,31}$", re.IGNORECASE)


class NodeState:
    """Жизненный цикл ноды"""
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class NodeSpec:
    """Запрос на регистрацию ноды"""
    name: str
    host: str
    ssh_username: str = "root"
    ssh_port: int = 22
    ssh_password: Optional[str] = None
    ssh_key_path: Optional[str] = None
    location: Optional[str] = None
    provider: Optional[str] = None
    max_clients: Optional[int] = None
    port: int = 443


@dataclass(frozen=True)
class SlotReservation:
    """Результат резервирования слота"""
    node_id: int
    current_clients: int
    max_clients: int

    @property
    def free_slots(self) -> int:
        return self.max_clients - self.current_clients


def is_valid_host(host: str) -> bool:
    """IPv4/IPv6 адрес или доменное имя"""
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    # Строка из одних цифр и точек, не прошедшая ip_address, — битый IP
    if re.fullmatch(r"[\d.]+", host):
        return False
    return bool(_HOSTNAME_RE.match(host))


class ServerRegistry:
    """
    Реестр серверов.

    Основные функции:
    - Регистрация ноды (в состоянии provisioning)
    - Атомарное резервирование/освобождение слотов
    - Переходы provisioning -> active / failed
    - Выбор сервера с наибольшим запасом слотов
    """

    def __init__(self, session_factory, encryption: Optional[EncryptionService] = None):
        self._session_factory = session_factory
        self._encryption = encryption
        # Блокировка на каждую ноду, а не одна глобальная
        self._locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def encryption(self) -> EncryptionService:
        if self._encryption is None:
            self._encryption = get_encryption()
        return self._encryption

    def _lock_for(self, node_id: int) -> asyncio.Lock:
        return self._locks[node_id]

    def _drop_lock(self, node_id: int) -> None:
        # Отключённая нода не меняет состояние, а release_slot атомарен в самом UPDATE
        lock = self._locks.get(node_id)
        if lock is not None and not lock.locked():
            del self._locks[node_id]

    # === РЕГИСТРАЦИЯ ===

    def _validate_spec(self, spec: NodeSpec) -> None:
        errors = []

        if not spec.name or not spec.name.strip():
            errors.append("не указано название сервера")
        if not spec.host or not is_valid_host(spec.host.strip()):
            errors.append(f"некорректный адрес сервера: {spec.host!r}")
        if not spec.ssh_username or not _USERNAME_RE.match(spec.ssh_username):
            errors.append(f"некорректное имя SSH пользователя: {spec.ssh_username!r}")
        if not isinstance(spec.ssh_port, int) or not 1 <= spec.ssh_port <= 65535:
            errors.append(f"некорректный SSH порт: {spec.ssh_port!r}")
        if not spec.ssh_password and not spec.ssh_key_path:
            errors.append("не указан SSH пароль или путь к ключу")
        if spec.max_clients is not None and spec.max_clients < 1:
            errors.append("max_clients должен быть больше 0")

        if errors:
            raise ValidationError("; ".join(errors))

    async def register_node(self, spec: NodeSpec) -> int:
        """
        Зарегистрировать ноду в состоянии provisioning.

        Raises:
            ValidationError: некорректные данные или хост уже зарегистрирован
        """
        self._validate_spec(spec)
        host = spec.host.strip()

        async with self._session_factory() as session:
            existing = await session.execute(select(VpnNode.id).where(VpnNode.host == host))
            if existing.scalar_one_or_none() is not None:
                raise ValidationError(f"Сервер с адресом {host} уже существует")

            node = VpnNode(
                name=spec.name.strip(),
                host=host,
                port=spec.port,
                ssh_username=spec.ssh_username,
                ssh_port=spec.ssh_port,
                ssh_password=self.encryption.encrypt(spec.ssh_password),
                ssh_key_path=spec.ssh_key_path,
                location=spec.location or "N/A",
                provider=spec.provider or "N/A",
                max_clients=spec.max_clients or config.DEFAULT_MAX_CLIENTS,
                current_clients=0,
                state=NodeState.PROVISIONING,
                is_active=False,
            )
            session.add(node)
            try:
                await session.commit()
            except IntegrityError as e:
                # Параллельный запрос успел занять тот же хост
                await session.rollback()
                raise ValidationError(f"Сервер с адресом {host} уже существует") from e

            logger.info(f"Сервер {node.name} ({host}) добавлен в базу данных с ID: {node.id}")
            return node.id

    # === ЧТЕНИЕ ===

    async def get_node(self, node_id: int) -> VpnNode:
        async with self._session_factory() as session:
            node = await session.get(VpnNode, node_id)
            if node is None:
                raise NotFound(f"Сервер {node_id} не найден")
            return node

    async def list_nodes(self, state: Optional[str] = None) -> list[VpnNode]:
        async with self._session_factory() as session:
            query = select(VpnNode).order_by(VpnNode.id)
            if state:
                query = query.where(VpnNode.state == state)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_available_node(self) -> Optional[VpnNode]:
        """Активный сервер с наибольшим числом свободных слотов"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(VpnNode)
                .where(
                    VpnNode.state == NodeState.ACTIVE,
                    VpnNode.current_clients < VpnNode.max_clients,
                )
                .order_by((VpnNode.max_clients - VpnNode.current_clients).desc(), VpnNode.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_ssh_target(self, node_id: int) -> SSHTarget:
        """SSH параметры ноды (пароль расшифровывается)"""
        node = await self.get_node(node_id)
        return SSHTarget(
            host=node.host,
            port=node.ssh_port,
            username=node.ssh_username,
            password=self.encryption.decrypt(node.ssh_password),
            key_path=node.ssh_key_path,
        )

    # === СЛОТЫ ===

    async def reserve_slot(self, node_id: int) -> SlotReservation:
        """
        Занять слот на сервере.

        Проверка и инкремент выполняются одним условным UPDATE,
        поэтому из N параллельных вызовов на последний слот проходит ровно один.

        Raises:
            NotFound: сервер не найден
            ValidationError: сервер не активен
            CapacityExceeded: свободных слотов нет
        """
        async with self._lock_for(node_id):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(VpnNode)
                    .where(
                        VpnNode.id == node_id,
                        VpnNode.state == NodeState.ACTIVE,
                        VpnNode.current_clients < VpnNode.max_clients,
                    )
                    .values(current_clients=VpnNode.current_clients + 1)
                    .execution_options(synchronize_session=False)
                )
                reserved = result.rowcount == 1
                if reserved:
                    await session.commit()
                else:
                    await session.rollback()

                node = await session.get(VpnNode, node_id, populate_existing=True)
                if node is None:
                    raise NotFound(f"Сервер {node_id} не найден")
                if not reserved:
                    if node.state != NodeState.ACTIVE:
                        raise ValidationError(f"Сервер {node_id} не активен (состояние: {node.state})")
                    raise CapacityExceeded(node_id, node.max_clients)

                return SlotReservation(node.id, node.current_clients, node.max_clients)

    async def release_slot(self, node_id: int) -> int:
        """
        Освободить слот. Счётчик не опускается ниже 0.

        Returns:
            Текущее число клиентов после освобождения

        Raises:
            NotFound: сервер не найден
        """
        async with self._lock_for(node_id):
            async with self._session_factory() as session:
                node = await session.get(VpnNode, node_id)
                if node is None:
                    raise NotFound(f"Сервер {node_id} не найден")

                if node.current_clients <= 0:
                    logger.warning(f"⚠️ Повторное освобождение слота на сервере {node_id}: счётчик уже 0")
                    return 0

                await session.execute(
                    update(VpnNode)
                    .where(VpnNode.id == node_id, VpnNode.current_clients > 0)
                    .values(current_clients=VpnNode.current_clients - 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                node = await session.get(VpnNode, node_id, populate_existing=True)
                return node.current_clients

    # === ПЕРЕХОДЫ СОСТОЯНИЙ ===

    async def _leave_provisioning(self, node_id: int, new_state: str, reason: Optional[str] = None) -> bool:
        async with self._lock_for(node_id):
            async with self._session_factory() as session:
                node = await session.get(VpnNode, node_id)
                if node is None:
                    raise NotFound(f"Сервер {node_id} не найден")

                if node.state != NodeState.PROVISIONING:
                    logger.warning(
                        f"Сервер {node_id}: переход {node.state} -> {new_state} пропущен "
                        f"(ожидалось состояние {NodeState.PROVISIONING})"
                    )
                    return False

                node.state = new_state
                node.is_active = new_state == NodeState.ACTIVE
                node.failure_reason = reason
                await session.commit()
                return True

    async def mark_active(self, node_id: int) -> bool:
        """provisioning -> active"""
        changed = await self._leave_provisioning(node_id, NodeState.ACTIVE)
        if changed:
            logger.info(f"✅ Сервер {node_id} активен")
        return changed

    async def mark_failed(self, node_id: int, reason: str) -> bool:
        """provisioning -> failed. Запись не удаляется, чтобы можно было посмотреть логи."""
        changed = await self._leave_provisioning(node_id, NodeState.FAILED, reason)
        if changed:
            logger.error(f"❌ Сервер {node_id} помечен как failed: {reason}")
        return changed

    async def disable_node(self, node_id: int) -> None:
        """Отключение сервера оператором"""
        async with self._lock_for(node_id):
            async with self._session_factory() as session:
                node = await session.get(VpnNode, node_id)
                if node is None:
                    raise NotFound(f"Сервер {node_id} не найден")
                node.state = NodeState.DISABLED
                node.is_active = False
                await session.commit()
        self._drop_lock(node_id)
        logger.info(f"🔒 Сервер {node_id} отключён оператором")

    async def update_reality_keys(
        self,
        node_id: int,
        public_key: str,
        short_id: str,
        initial_user_id: Optional[str] = None,
    ) -> None:
        """Сохранить Reality параметры, сгенерированные при развёртывании"""
        async with self._lock_for(node_id):
            async with self._session_factory() as session:
                node = await session.get(VpnNode, node_id)
                if node is None:
                    raise NotFound(f"Сервер {node_id} не найден")
                node.reality_public_key = public_key
                node.reality_short_id = short_id
                node.initial_user_id = initial_user_id
                await session.commit()
