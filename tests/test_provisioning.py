"""
Тесты оркестратора развёртывания — пайплайн, ошибки, watchdog
"""
import json
from datetime import timedelta

import pytest

from vpn.deployment_store import PIPELINE_ORDER, DeploymentStage
from vpn.exceptions import CapacityExceeded, ValidationError
from vpn.provisioning import ProvisioningOrchestrator
from vpn.registry import NodeState
from vpn.ssh import CommandResult

from helpers import FakeSSHClient, deploy_request


def assert_valid_history(history):
    """История стадий — префикс пайплайна, возможно оканчивающийся failed"""
    if history[-1] == DeploymentStage.FAILED:
        history = history[:-1]
    assert history == PIPELINE_ORDER[:len(history)]


def make_orchestrator(registry, store, ssh_client, **kwargs) -> ProvisioningOrchestrator:
    kwargs.setdefault("deadline", timedelta(seconds=5))
    return ProvisioningOrchestrator(
        registry,
        store,
        ssh_client=ssh_client,
        watchdog_poll_interval=0.01,
        start_grace_seconds=0,
        **kwargs,
    )


class TestSuccessfulDeployment:

    @pytest.mark.asyncio
    async def test_deploy_and_fill_node(self, orchestrator, registry, store):
        """Развёртывание 10.0.0.5 -> completed, 100 слотов, 101-й отклонён"""
        deployment_id, server_id = await orchestrator.start_deployment(deploy_request("10.0.0.5"))
        await orchestrator.wait(deployment_id)

        snapshot = store.get(deployment_id)
        assert snapshot.stage == DeploymentStage.COMPLETED
        assert snapshot.error is None
        assert snapshot.stage_history == PIPELINE_ORDER

        node = await registry.get_node(server_id)
        assert node.state == NodeState.ACTIVE
        assert node.max_clients == 100
        assert node.current_clients == 0

        for _ in range(100):
            await registry.reserve_slot(server_id)
        with pytest.raises(CapacityExceeded):
            await registry.reserve_slot(server_id)

    @pytest.mark.asyncio
    async def test_stages_run_in_order_over_one_session(self, orchestrator, ssh_client):
        deployment_id, _ = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        assert len(ssh_client.targets) == 1
        assert ssh_client.targets[0].password == "s3cret"

        commands = ssh_client.commands
        docker_install = next(i for i, c in enumerate(commands) if "command -v docker" in c)
        pull = next(i for i, c in enumerate(commands) if c.startswith("docker pull"))
        upload = next(i for i, c in enumerate(commands) if "config.json &&" in c)
        run = next(i for i, c in enumerate(commands) if "docker run" in c)
        assert docker_install < pull < upload < run

    @pytest.mark.asyncio
    async def test_config_uploaded_and_keys_saved(self, orchestrator, ssh_client, registry):
        deployment_id, server_id = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        upload = next(body for cmd, body in ssh_client.uploads.items() if "/etc/xray/config.json" in cmd)
        xray_config = json.loads(upload)
        inbound = xray_config["inbounds"][0]
        assert inbound["protocol"] == "vless"
        reality = inbound["streamSettings"]["realitySettings"]

        node = await registry.get_node(server_id)
        assert reality["shortIds"] == [node.reality_short_id]
        assert node.reality_public_key
        assert inbound["settings"]["clients"][0]["id"] == node.initial_user_id
        # Приватный ключ остаётся только на сервере
        assert reality["privateKey"] != node.reality_public_key


class TestFailures:

    @pytest.mark.asyncio
    async def test_command_failure_stops_pipeline(self, registry, store):
        ssh = FakeSSHClient(fail_on={"docker pull": CommandResult(1, "manifest unknown")})
        orchestrator = make_orchestrator(registry, store, ssh)

        deployment_id, server_id = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        snapshot = store.get(deployment_id)
        assert snapshot.stage == DeploymentStage.FAILED
        assert "manifest unknown" in snapshot.error
        assert snapshot.stage_history[-2] == DeploymentStage.PULLING_IMAGE
        assert_valid_history(snapshot.stage_history)
        assert not any("docker run" in c for c in ssh.commands)

        node = await registry.get_node(server_id)
        assert node.state == NodeState.FAILED
        assert "manifest unknown" in node.failure_reason

    @pytest.mark.asyncio
    async def test_ssh_unreachable(self, registry, store):
        ssh = FakeSSHClient(connect_error="Connection refused")
        orchestrator = make_orchestrator(registry, store, ssh)

        deployment_id, server_id = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        snapshot = store.get(deployment_id)
        assert snapshot.stage == DeploymentStage.FAILED
        assert "Connection refused" in snapshot.error
        assert snapshot.stage_history == (DeploymentStage.PENDING, DeploymentStage.FAILED)
        assert (await registry.get_node(server_id)).state == NodeState.FAILED

    @pytest.mark.asyncio
    async def test_container_not_running(self, registry, store):
        ssh = FakeSSHClient(fail_on={
            "docker ps": CommandResult(0, "Exited (1) 2 seconds ago"),
            "docker logs": CommandResult(0, "failed to parse config"),
        })
        orchestrator = make_orchestrator(registry, store, ssh)

        deployment_id, _ = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        snapshot = store.get(deployment_id)
        assert snapshot.stage == DeploymentStage.FAILED
        assert snapshot.stage_history[-2] == DeploymentStage.STARTING_XRAY
        assert "failed to parse config" in snapshot.error

    @pytest.mark.asyncio
    async def test_duplicate_host_creates_no_job(self, orchestrator, store):
        deployment_id, _ = await orchestrator.start_deployment(deploy_request("10.0.0.5"))
        await orchestrator.wait(deployment_id)

        with pytest.raises(ValidationError):
            await orchestrator.start_deployment(deploy_request("10.0.0.5"))

        assert store.list_active() == []

    @pytest.mark.asyncio
    async def test_invalid_request_creates_no_job(self, orchestrator, store, registry):
        with pytest.raises(ValidationError):
            await orchestrator.start_deployment(deploy_request("not a host"))

        assert store.list_active() == []
        assert await registry.list_nodes() == []


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_hung_deployment_times_out(self, registry, store):
        """Зависшая команда — failed по дедлайну, хотя ни одна стадия не сообщила об ошибке"""
        ssh = FakeSSHClient(hang_on=("docker pull",))
        orchestrator = make_orchestrator(registry, store, ssh, deadline=timedelta(seconds=0.2))

        deployment_id, server_id = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        snapshot = store.get(deployment_id)
        assert snapshot.stage == DeploymentStage.FAILED
        assert "Превышено время" in snapshot.error
        assert_valid_history(snapshot.stage_history)
        assert (await registry.get_node(server_id)).state == NodeState.FAILED

    @pytest.mark.asyncio
    async def test_completed_deployment_not_touched_by_watchdog(self, registry, store, ssh_client):
        orchestrator = make_orchestrator(registry, store, ssh_client, deadline=timedelta(seconds=0.3))

        deployment_id, server_id = await orchestrator.start_deployment(deploy_request())
        await orchestrator.wait(deployment_id)

        assert store.get(deployment_id).stage == DeploymentStage.COMPLETED
        assert (await registry.get_node(server_id)).state == NodeState.ACTIVE

    @pytest.mark.asyncio
    async def test_shutdown_fails_in_flight_deployments(self, registry, store):
        ssh = FakeSSHClient(hang_on=("command -v docker",))
        orchestrator = make_orchestrator(registry, store, ssh, deadline=timedelta(minutes=30))

        deployment_id, server_id = await orchestrator.start_deployment(deploy_request())
        await orchestrator.shutdown()

        snapshot = store.get(deployment_id)
        assert snapshot.stage == DeploymentStage.FAILED
        assert (await registry.get_node(server_id)).state == NodeState.FAILED
