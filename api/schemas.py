"""
Pydantic схемы HTTP API серверов.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vpn.provisioning import DeployRequest


class DeployServerRequest(BaseModel):
    """Запрос на развёртывание сервера"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    ip: str
    ssh_username: str = Field("root", alias="sshUsername")
    ssh_port: int = Field(22, alias="sshPort")
    ssh_password: Optional[str] = Field(None, alias="sshPassword")
    ssh_key_path: Optional[str] = Field(None, alias="sshKeyPath")
    location: Optional[str] = None
    provider: Optional[str] = None
    max_clients: Optional[int] = Field(None, alias="maxClients")

    @field_validator("name", "ip", "ssh_username")
    @classmethod
    def not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Поле не может быть пустым")
        return v

    @field_validator("ssh_port")
    @classmethod
    def port_valid(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("SSH порт должен быть от 1 до 65535")
        return v

    @field_validator("max_clients")
    @classmethod
    def max_clients_valid(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("maxClients должен быть больше 0")
        return v

    def to_request(self) -> DeployRequest:
        return DeployRequest(
            name=self.name,
            host=self.ip,
            ssh_username=self.ssh_username,
            ssh_port=self.ssh_port,
            ssh_password=self.ssh_password or None,
            ssh_key_path=self.ssh_key_path or None,
            location=self.location,
            provider=self.provider,
            max_clients=self.max_clients,
        )


class DeployServerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deployment_id: str = Field(alias="deploymentId")
    server_id: int = Field(alias="serverId")


class DeploymentStatusResponse(BaseModel):
    """Статус развёртывания для поллинга"""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    server_id: int = Field(alias="serverId")
    logs: str
    error: Optional[str] = None


class ServerResponse(BaseModel):
    """Сервер с ёмкостью"""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int
    name: str
    host: str
    port: int
    location: str
    provider: str
    state: str
    max_clients: int = Field(alias="maxClients")
    current_clients: int = Field(alias="currentClients")
    free_slots: int = Field(alias="freeSlots")
    failure_reason: Optional[str] = Field(None, alias="failureReason")
    reality_public_key: Optional[str] = Field(None, alias="realityPublicKey")
    reality_short_id: Optional[str] = Field(None, alias="realityShortId")
    created_at: datetime = Field(alias="createdAt")
