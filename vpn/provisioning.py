"""
Оркестратор развёртывания VPN серверов.

Превращает голый хост в работающую ноду Xray (Docker):
    pending -> installing_docker -> pulling_image -> creating_config -> starting_xray -> completed
Любая ошибка переводит развёртывание в failed, оставшиеся стадии не выполняются.

Каждое развёртывание — отдельная asyncio задача плюс независимый watchdog,
который по дедлайну переводит зависшее развёртывание в failed.
Изменения на удалённом хосте при ошибке не откатываются.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from config import config

from .deployment_store import DeploymentStage, DeploymentStatusStore
from .exceptions import CommandError, DeploymentError, DeploymentTimeout, NotFound
from .key_generator import RealityKeys, build_xray_config, generate_reality_keys, render_config
from .registry import NodeSpec, ServerRegistry
from .ssh import CommandResult, RemoteSession, SSHClient

logger = logging.getLogger(__name__)

REMOTE_CONFIG_DIR = "/etc/xray"
REMOTE_LOG_DIR = "/var/log/xray"

DOCKER_INSTALL_SCRIPT = (
    "export DEBIAN_FRONTEND=noninteractive; "
    "if ! command -v docker >/dev/null 2>&1; then "
    "echo 'Установка Docker...'; "
    "apt-get update -qq >/dev/null && "
    "apt-get install -y -qq curl ca-certificates gnupg lsb-release >/dev/null && "
    "install -m 0755 -d /etc/apt/keyrings && "
    "curl -fsSL https://download.docker.com/linux/$(. /etc/os-release; echo \"$ID\")/gpg "
    "| gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg && "
    "echo \"deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] "
    "https://download.docker.com/linux/$(. /etc/os-release; echo \"$ID\") $(lsb_release -cs) stable\" "
    "> /etc/apt/sources.list.d/docker.list && "
    "apt-get update -qq >/dev/null && "
    "apt-get install -y -qq docker-ce docker-ce-cli containerd.io >/dev/null && "
    "echo 'Docker успешно установлен.' || exit 1; "
    "else echo 'Docker уже установлен.'; fi; "
    "systemctl is-active --quiet docker || systemctl start docker; "
    "systemctl is-enabled --quiet docker || systemctl enable docker; "
    "if systemctl is-active --quiet docker; then echo 'Docker активен.'; "
    "else echo 'Ошибка Docker!'; exit 1; fi"
)


@dataclass
class DeployRequest:
    """Запрос оператора на развёртывание"""
    name: str
    host: str
    ssh_username: str = "root"
    ssh_port: int = 22
    ssh_password: Optional[str] = None
    ssh_key_path: Optional[str] = None
    location: Optional[str] = None
    provider: Optional[str] = None
    max_clients: Optional[int] = None


class _PipelineAborted(Exception):
    """Развёртывание уже завершено извне (watchdog), продолжать нельзя"""


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class ProvisioningOrchestrator:
    """
    Оркестратор развёртываний.

    Основные функции:
    - Приём запроса: регистрация ноды + создание записи статуса
    - Фоновый пайплайн по SSH (одно соединение на развёртывание)
    - Watchdog с жёстким дедлайном
    """

    def __init__(
        self,
        registry: ServerRegistry,
        store: DeploymentStatusStore,
        ssh_client: Optional[SSHClient] = None,
        deadline: Optional[timedelta] = None,
        watchdog_poll_interval: float = 5.0,
        xray_image: Optional[str] = None,
        container_name: Optional[str] = None,
        reality_dest: Optional[str] = None,
        start_grace_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.store = store
        self.ssh = ssh_client or SSHClient()
        self.deadline = deadline or timedelta(minutes=config.DEPLOY_TIMEOUT_MINUTES)
        self.watchdog_poll_interval = watchdog_poll_interval
        self.xray_image = xray_image or config.XRAY_IMAGE
        self.container_name = container_name or config.XRAY_CONTAINER_NAME
        self.reality_dest = reality_dest or config.XRAY_REALITY_DEST
        self.start_grace_seconds = (
            config.XRAY_START_GRACE_SECONDS if start_grace_seconds is None else start_grace_seconds
        )

        self._pipelines: dict[str, asyncio.Task] = {}
        self._watchdogs: dict[str, asyncio.Task] = {}

    # === ПРИЁМ ЗАПРОСА ===

    async def start_deployment(self, request: DeployRequest) -> tuple[str, int]:
        """
        Зарегистрировать ноду и запустить развёртывание в фоне.

        Returns:
            (deployment_id, server_id)

        Raises:
            ValidationError: некорректный запрос или хост уже зарегистрирован
        """
        key_path = request.ssh_key_path
        if not request.ssh_password and not key_path:
            key_path = config.SSH_PRIVATE_KEY_PATH

        server_id = await self.registry.register_node(NodeSpec(
            name=request.name,
            host=request.host,
            ssh_username=request.ssh_username,
            ssh_port=request.ssh_port,
            ssh_password=request.ssh_password,
            ssh_key_path=key_path,
            location=request.location,
            provider=request.provider,
            max_clients=request.max_clients,
        ))

        deployment_id = self.store.create(
            server_id,
            f"Начало развертывания Xray Docker на {request.host} (ID: {server_id})...",
        )

        pipeline = asyncio.create_task(
            self._run_pipeline(deployment_id, server_id),
            name=f"deploy-{deployment_id}",
        )
        watchdog = asyncio.create_task(
            self._watchdog(deployment_id, server_id),
            name=f"deploy-watchdog-{deployment_id}",
        )
        self._pipelines[deployment_id] = pipeline
        self._watchdogs[deployment_id] = watchdog
        pipeline.add_done_callback(lambda _: self._pipelines.pop(deployment_id, None))
        watchdog.add_done_callback(lambda _: self._watchdogs.pop(deployment_id, None))

        logger.info(f"🚀 [Deployment {deployment_id}] Запущено развёртывание {request.host} (сервер {server_id})")
        return deployment_id, server_id

    async def wait(self, deployment_id: str) -> None:
        """Дождаться окончания пайплайна и watchdog (для тестов и CLI)"""
        tasks = [
            t for t in (self._pipelines.get(deployment_id), self._watchdogs.get(deployment_id))
            if t is not None
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Остановить все незавершённые развёртывания"""
        in_flight = list(self._pipelines.items())
        for task in list(self._pipelines.values()) + list(self._watchdogs.values()):
            task.cancel()
        await asyncio.gather(
            *self._pipelines.values(), *self._watchdogs.values(), return_exceptions=True
        )

        for deployment_id, _ in in_flight:
            try:
                server_id = self.store.get(deployment_id).server_id
            except NotFound:
                continue
            await self._fail(deployment_id, server_id, "Развертывание прервано остановкой сервиса")

    # === ПАЙПЛАЙН ===

    async def _run_pipeline(self, deployment_id: str, server_id: int) -> None:
        try:
            target = await self.registry.get_ssh_target(server_id)
            keys = generate_reality_keys()

            async with self.ssh.open_session(target) as session:
                await self._install_docker(deployment_id, session, target.host)
                await self._pull_image(deployment_id, session)
                initial_user_id = await self._create_config(deployment_id, session, target.host, keys)
                await self._start_xray(deployment_id, session)

            await self.registry.update_reality_keys(server_id, keys.public_key, keys.short_id, initial_user_id)
            if self.store.complete(deployment_id):
                await self.registry.mark_active(server_id)

        except _PipelineAborted:
            logger.warning(f"[Deployment {deployment_id}] Пайплайн остановлен: развёртывание уже завершено")
        except DeploymentError as e:
            await self._fail(deployment_id, server_id, str(e))
        except Exception as e:
            # Ошибка одного развёртывания не должна ронять процесс
            logger.exception(f"[Deployment {deployment_id}] Непредвиденная ошибка")
            await self._fail(deployment_id, server_id, f"Внутренняя ошибка: {e}")

    def _enter_stage(self, deployment_id: str, stage: DeploymentStage, message: str) -> None:
        if not self.store.advance(deployment_id, stage, message):
            raise _PipelineAborted()

    async def _run(
        self,
        deployment_id: str,
        session: RemoteSession,
        command: str,
        error_message: str,
        input: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        """Выполнить команду, записать вывод в лог развёртывания"""
        result = await session.run(command, input=input)

        if result.output.strip():
            if not self.store.append_log(deployment_id, result.output):
                raise _PipelineAborted()
            level = logging.INFO if result.ok else logging.WARNING
            logger.log(level, f"[Deployment {deployment_id}] SSH: {_tail(result.output, 5)}")

        if check and not result.ok:
            raise CommandError(
                f"{error_message} (код {result.exit_code}): {_tail(result.output) or 'нет вывода'}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return result

    async def _install_docker(self, deployment_id: str, session: RemoteSession, host: str) -> None:
        self._enter_stage(deployment_id, DeploymentStage.INSTALLING_DOCKER, f"--- Установка Docker на {host} ---")
        await self._run(deployment_id, session, DOCKER_INSTALL_SCRIPT, "Ошибка установки Docker")
        self.store.append_log(deployment_id, "Установка/проверка Docker завершена.")

    async def _pull_image(self, deployment_id: str, session: RemoteSession) -> None:
        self._enter_stage(deployment_id, DeploymentStage.PULLING_IMAGE, f"--- Скачивание образа {self.xray_image} ---")
        await self._run(deployment_id, session, f"docker pull {self.xray_image}", "Ошибка скачивания образа Xray")
        self.store.append_log(deployment_id, f"Скачивание/проверка образа {self.xray_image} завершено.")

    async def _create_config(
        self,
        deployment_id: str,
        session: RemoteSession,
        host: str,
        keys: RealityKeys,
    ) -> str:
        self._enter_stage(deployment_id, DeploymentStage.CREATING_CONFIG, "--- Генерация и копирование конфигурации Xray ---")

        xray_config, initial_user_id = build_xray_config(
            domain=host,
            keys=keys,
            initial_user_email=f"user-{deployment_id[:8]}@{host}",
            reality_dest=self.reality_dest,
        )
        self.store.append_log(deployment_id, f"Конфигурация сгенерирована (пользователь: {initial_user_id}).")

        await self._run(
            deployment_id, session,
            f"mkdir -p {REMOTE_CONFIG_DIR} {REMOTE_LOG_DIR}",
            "Не удалось создать директории на сервере",
        )
        await self._run(
            deployment_id, session,
            f"cat > {REMOTE_CONFIG_DIR}/config.json && chmod 600 {REMOTE_CONFIG_DIR}/config.json",
            "Ошибка копирования конфигурации",
            input=render_config(xray_config),
        )
        self.store.append_log(deployment_id, "Конфигурация скопирована на сервер.")
        return initial_user_id

    async def _start_xray(self, deployment_id: str, session: RemoteSession) -> None:
        name = self.container_name
        self._enter_stage(deployment_id, DeploymentStage.STARTING_XRAY, f"--- Запуск контейнера Xray ({name}) ---")

        run_command = (
            f"docker rm -f {name} >/dev/null 2>&1 || true; "
            f"docker run -d --name {name} --network host --restart always "
            f"-v {REMOTE_CONFIG_DIR}/config.json:/etc/xray/config.json:ro "
            f"-v {REMOTE_LOG_DIR}:/var/log/xray {self.xray_image}"
        )
        started = await self._run(deployment_id, session, run_command, "Ошибка запуска контейнера Xray", check=False)
        if not started.ok:
            logs = await session.run(f"docker logs {name} --tail 20")
            raise CommandError(
                f"Ошибка запуска контейнера Xray: {_tail(started.output)}\nDocker Logs:\n{logs.output}",
                exit_code=started.exit_code,
                output=started.output,
            )

        if self.start_grace_seconds:
            await asyncio.sleep(self.start_grace_seconds)

        status = await self._run(
            deployment_id, session,
            f"docker ps -f name={name} --format '{{{{.Status}}}}'",
            "Не удалось получить статус контейнера",
            check=False,
        )
        if not status.ok or "Up" not in status.output:
            logs = await session.run(f"docker logs {name} --tail 50")
            raise CommandError(
                f"Контейнер Xray не запустился или работает некорректно. "
                f"Статус: {status.output.strip() or 'нет'}\nDocker Logs:\n{logs.output}",
                exit_code=status.exit_code,
                output=status.output,
            )

        self.store.append_log(
            deployment_id,
            f"Контейнер {name} успешно запущен и работает ({status.output.strip()}).",
        )

    # === ОШИБКИ И WATCHDOG ===

    async def _fail(self, deployment_id: str, server_id: int, error: str) -> None:
        if not self.store.fail(deployment_id, error):
            return
        try:
            await self.registry.mark_failed(server_id, error)
        except Exception as e:
            logger.error(f"[Deployment {deployment_id}] Не удалось обновить статус сервера {server_id}: {e}")

    async def _watchdog(self, deployment_id: str, server_id: int) -> None:
        """
        Следит только за записью в хранилище, а не за задачей пайплайна:
        зависшая SSH команда не должна скрывать развёртывание навсегда.
        """
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + self.deadline.total_seconds()

        while True:
            try:
                if self.store.get(deployment_id).is_terminal:
                    return
            except NotFound:
                return

            remaining = deadline_at - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.watchdog_poll_interval, remaining))

        minutes = self.deadline.total_seconds() / 60
        error = DeploymentTimeout(f"Превышено время развертывания ({minutes:g} мин)")
        logger.error(f"⏰ [Deployment {deployment_id}] {error}")
        await self._fail(deployment_id, server_id, str(error))

        pipeline = self._pipelines.get(deployment_id)
        if pipeline is not None and not pipeline.done():
            pipeline.cancel()
