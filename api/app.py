"""
FastAPI приложение: развёртывание и статус VPN серверов.
"""
import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from vpn.deployment_store import DeploymentStatusStore
from vpn.exceptions import CapacityExceeded, NotFound, ValidationError
from vpn.provisioning import ProvisioningOrchestrator
from vpn.registry import ServerRegistry

from .schemas import (
    DeploymentStatusResponse,
    DeployServerRequest,
    DeployServerResponse,
    ServerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _registry(request: Request) -> ServerRegistry:
    return request.app.state.registry


def _store(request: Request) -> DeploymentStatusStore:
    return request.app.state.deployment_store


def _orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


# === РАЗВЁРТЫВАНИЕ ===

@router.post("/servers/deploy", status_code=201, response_model=DeployServerResponse)
async def deploy_server(body: DeployServerRequest, request: Request):
    """Зарегистрировать сервер и запустить развёртывание в фоне"""
    deployment_id, server_id = await _orchestrator(request).start_deployment(body.to_request())
    return DeployServerResponse(deployment_id=deployment_id, server_id=server_id)


@router.get(
    "/servers/deploy/{deployment_id}/status",
    response_model=DeploymentStatusResponse,
    response_model_exclude_none=True,
)
async def deployment_status(deployment_id: str, request: Request):
    """Статус развёртывания (404 — неизвестное или уже очищенное)"""
    snapshot = _store(request).get(deployment_id)
    return DeploymentStatusResponse(
        status=snapshot.stage.value,
        server_id=snapshot.server_id,
        logs=snapshot.log_text,
        error=snapshot.error,
    )


# === СЕРВЕРЫ ===

@router.get("/servers", response_model=list[ServerResponse])
async def list_servers(request: Request, state: Optional[str] = None):
    nodes = await _registry(request).list_nodes(state=state)
    return [ServerResponse.model_validate(node) for node in nodes]


@router.get("/servers/{server_id}", response_model=ServerResponse)
async def get_server(server_id: int, request: Request):
    node = await _registry(request).get_node(server_id)
    return ServerResponse.model_validate(node)


@router.post("/servers/{server_id}/disable", response_model=ServerResponse)
async def disable_server(server_id: int, request: Request):
    """Отключить сервер (новые подписки на него не выдаются)"""
    registry = _registry(request)
    await registry.disable_node(server_id)
    return ServerResponse.model_validate(await registry.get_node(server_id))


@router.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "activeDeployments": len(_store(request).list_active()),
    }


# === ОШИБКИ ===

async def _validation_error(request: Request, exc: ValidationError):
    logger.warning(f"Отклонён запрос {request.url.path}: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def _not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _capacity_exceeded(request: Request, exc: CapacityExceeded):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(
    registry: ServerRegistry,
    deployment_store: DeploymentStatusStore,
    orchestrator: ProvisioningOrchestrator,
) -> FastAPI:
    """Собрать приложение с уже созданными компонентами ядра"""
    app = FastAPI(
        title="VPN Core",
        description="Развёртывание и учёт VPN серверов",
        version="1.0.0",
    )
    app.state.registry = registry
    app.state.deployment_store = deployment_store
    app.state.orchestrator = orchestrator

    app.include_router(router)
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(NotFound, _not_found)
    app.add_exception_handler(CapacityExceeded, _capacity_exceeded)
    return app
