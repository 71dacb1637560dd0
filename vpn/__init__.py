"""
Ядро VPN: реестр серверов, развёртывание нод, статусы развёртываний.

Компоненты:
- ServerRegistry: ноды и атомарный учёт слотов
- DeploymentStatusStore: прогресс развёртываний для поллинга
- ProvisioningOrchestrator: установка Xray (Docker) на сервер по SSH
- SSHClient: удалённое выполнение команд (asyncssh)
"""

from .deployment_store import DeploymentSnapshot, DeploymentStage, DeploymentStatusStore
from .exceptions import (
    CapacityExceeded,
    CommandError,
    DeploymentError,
    DeploymentTimeout,
    InvalidStageTransition,
    NotFound,
    PaymentFailure,
    SSHConnectionError,
    ValidationError,
    VPNCoreError,
)
from .provisioning import DeployRequest, ProvisioningOrchestrator
from .registry import NodeSpec, NodeState, ServerRegistry, SlotReservation
from .ssh import CommandResult, SSHClient, SSHTarget

__all__ = [
    "DeploymentSnapshot",
    "DeploymentStage",
    "DeploymentStatusStore",
    "DeployRequest",
    "ProvisioningOrchestrator",
    "NodeSpec",
    "NodeState",
    "ServerRegistry",
    "SlotReservation",
    "CommandResult",
    "SSHClient",
    "SSHTarget",
    "VPNCoreError",
    "ValidationError",
    "NotFound",
    "CapacityExceeded",
    "InvalidStageTransition",
    "DeploymentError",
    "SSHConnectionError",
    "CommandError",
    "DeploymentTimeout",
    "PaymentFailure",
]
