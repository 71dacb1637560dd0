"""
Двойники внешних систем и хелперы для тестов VPN ядра
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from database.models import User, Subscription
from services.payment_service import ChargeResult
from vpn.exceptions import SSHConnectionError
from vpn.provisioning import DeployRequest
from vpn.registry import NodeSpec, ServerRegistry
from vpn.ssh import CommandResult, SSHTarget


# === ДВОЙНИКИ ВНЕШНИХ СИСТЕМ ===

class FakeRemoteSession:
    def __init__(self, client: "FakeSSHClient", target: SSHTarget):
        self.client = client
        self.target = target

    async def run(self, command: str, input: Optional[str] = None, timeout: Optional[float] = None) -> CommandResult:
        self.client.commands.append(command)
        if input is not None:
            self.client.uploads[command] = input

        for marker in self.client.hang_on:
            if marker in command:
                # Команда "зависла" навсегда
                await asyncio.Event().wait()

        for marker, result in self.client.fail_on.items():
            if marker in command:
                return result

        if "docker ps" in command:
            return CommandResult(0, "Up 3 seconds\n")
        return CommandResult(0, f"ok: {command[:30]}\n")


class FakeSSHClient:
    """SSH клиент без сети: записывает команды, отвечает по правилам"""

    def __init__(
        self,
        fail_on: Optional[dict[str, CommandResult]] = None,
        hang_on: tuple[str, ...] = (),
        connect_error: Optional[str] = None,
    ):
        self.fail_on = fail_on or {}
        self.hang_on = hang_on
        self.connect_error = connect_error
        self.commands: list[str] = []
        self.uploads: dict[str, str] = {}
        self.targets: list[SSHTarget] = []

    @asynccontextmanager
    async def open_session(self, target: SSHTarget):
        self.targets.append(target)
        if self.connect_error:
            raise SSHConnectionError(self.connect_error)
        yield FakeRemoteSession(self, target)

    async def execute_remote_command(self, target: SSHTarget, command: str) -> CommandResult:
        async with self.open_session(target) as session:
            return await session.run(command)


class FakePaymentGateway:
    """Платёжный шлюз: успешные списания, кроме fail_for / raise_for"""

    def __init__(self, success: bool = True, fail_for: tuple[int, ...] = (), raise_for: tuple[int, ...] = ()):
        self.success = success
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.calls: list[tuple[int, int]] = []

    async def charge_subscription(self, subscription, amount: int, description: str = "") -> ChargeResult:
        self.calls.append((subscription.id, amount))
        await asyncio.sleep(0)
        if subscription.id in self.raise_for:
            raise ConnectionError("gateway unavailable")
        if not self.success or subscription.id in self.fail_for:
            return ChargeResult(False, payment_id=f"pay_{subscription.id}", error="card_declined")
        return ChargeResult(True, payment_id=f"pay_{subscription.id}")


class FakeNotifier:
    def __init__(self, deliver: bool = True, delay: float = 0):
        self.deliver = deliver
        self.delay = delay
        self.sent: list[tuple[int, str]] = []

    async def notify_user(self, telegram_id: int, message: str) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.deliver:
            return False
        self.sent.append((telegram_id, message))
        return True


# === ХЕЛПЕРЫ ===

def deploy_request(host: str = "10.0.0.5", **kwargs) -> DeployRequest:
    return DeployRequest(
        name=kwargs.pop("name", f"node-{host}"),
        host=host,
        ssh_username="root",
        ssh_port=22,
        ssh_password=kwargs.pop("ssh_password", "s3cret"),
        **kwargs,
    )


async def make_active_node(registry: ServerRegistry, host: str = "10.0.0.10", max_clients: int = 100) -> int:
    node_id = await registry.register_node(NodeSpec(
        name=f"node-{host}",
        host=host,
        ssh_password="s3cret",
        max_clients=max_clients,
    ))
    await registry.mark_active(node_id)
    return node_id


async def make_subscription(
    session_factory,
    user: User,
    expires_at: datetime,
    status: str = "active",
    auto_renew: bool = False,
    plan: str = "monthly",
    payment_method_id: Optional[str] = "pm_saved",
    server_id: Optional[int] = None,
) -> Subscription:
    async with session_factory() as session:
        sub = Subscription(
            user_id=user.id,
            server_id=server_id,
            plan=plan,
            status=status,
            started_at=expires_at - timedelta(days=30),
            expires_at=expires_at,
            auto_renew=auto_renew,
            payment_method_id=payment_method_id,
        )
        session.add(sub)
        await session.commit()
        return sub


async def load_subscription(session_factory, subscription_id: int) -> Subscription:
    async with session_factory() as session:
        return await session.get(Subscription, subscription_id)
