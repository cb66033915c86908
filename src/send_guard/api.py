"""FastAPI application factory and HTTP schemas for the send guard service.

This module provides the REST control surface of the dispatch core:

- Pydantic models defining request/response schemas
- A factory function to create and configure the FastAPI application
- Authentication via API token in the ``X-API-Token`` header, with an
  optional separate admin token for destructive or tuning operations
- Endpoints for enqueueing, queue and account status, health reporting,
  warm-up, configuration, scheduler control and Prometheus metrics

Every endpoint delegates to :meth:`DispatchCore.handle_command`. Command
failures are mapped by their ``code``: ``not_found`` becomes 404,
``validation_error`` and ``config_error`` become 400.

Example:
    Creating and running the API application::

        from send_guard.core import DispatchCore
        from send_guard.api import create_app

        core = DispatchCore(client=client, db_path="/data/send_guard.db")
        app = create_app(core, api_token="secret-token", admin_token="admin-secret")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import logging
from typing import Any, AsyncContextManager, Callable, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .core import DispatchCore

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    The admin token is accepted too. When no token is configured the
    dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    admin = getattr(request.app.state, "admin_token", None)
    if expected is None:
        return
    if not api_token or api_token not in {expected, admin}:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


async def require_admin_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the admin token, falling back to the API token when none is set."""
    expected = getattr(request.app.state, "admin_token", None) or getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin token required")


auth_dependency = Depends(require_token)
admin_dependency = Depends(require_admin_token)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class CommandStatus(_CamelModel):
    """Base schema shared by most responses produced by the service.

    Envelope fields are serialised in camelCase (``messageId``,
    ``clearedMessages``); the records they carry keep their own keys.
    """

    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    active: Optional[bool] = None


class MediaBody(_CamelModel):
    data: str
    mimetype: Optional[str] = None
    filename: Optional[str] = None


class LocationBody(_CamelModel):
    latitude: float
    longitude: float
    description: Optional[str] = None


class EnqueuePayload(_CamelModel):
    """Send request accepted by ``POST /queue``.

    Field presence rules (non-empty recipient, body for text, data for media)
    are enforced by the queue so they surface as 400 validation errors.
    """

    account_id: Optional[str] = None
    to: Optional[str] = None
    kind: Optional[Literal["text", "media", "location"]] = None
    text: Optional[str] = None
    media: Optional[MediaBody] = None
    location: Optional[LocationBody] = None
    priority: Optional[Literal["high", "normal", "low"]] = None
    quoted_message_id: Optional[str] = None
    mentions: Optional[List[str]] = None
    max_attempts: Optional[int] = None


class EnqueueResponse(CommandStatus):
    message_id: str
    status: str


class QueueStatusResponse(CommandStatus):
    pending: int
    processing: int
    total_queued: int
    active: bool


class ClearQueueResponse(CommandStatus):
    cleared_messages: int


class ConfigResponse(CommandStatus):
    config: Dict[str, Any]


class MessageResponse(CommandStatus):
    message: Dict[str, Any]


class MessagesResponse(CommandStatus):
    messages: List[Dict[str, Any]]


class HealthResponse(CommandStatus):
    health: Dict[str, Any]


class DevicesResponse(CommandStatus):
    devices: List[Dict[str, Any]]


class DeviceEventPayload(BaseModel):
    """Lifecycle event reported by the device manager."""

    type: Literal["disconnected", "reconnected"]
    timestamp: Optional[int] = Field(default=None, ge=0)
    detail: Optional[str] = None


def _checked(result: Dict[str, Any]) -> Dict[str, Any]:
    if result.get("ok") is True:
        return result
    code = result.get("code")
    status_code = status.HTTP_404_NOT_FOUND if code == "not_found" else status.HTTP_400_BAD_REQUEST
    detail = {key: result[key] for key in ("error", "code", "field") if result.get(key)}
    raise HTTPException(status_code=status_code, detail=detail)


def create_app(
    svc: DispatchCore | None,
    api_token: str | None = None,
    admin_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`send_guard.core.DispatchCore` serving every command.
    api_token:
        Optional secret protecting every endpoint except ``GET /health``.
    admin_token:
        Optional secret required by admin endpoints (clear, config update,
        warm-up). Defaults to ``api_token``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Send Guard", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.admin_token = admin_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    def service() -> DispatchCore:
        if not svc:
            raise HTTPException(500, "Service not initialized")
        return svc

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_():
        result = await service().handle_command("queueStatus", {})
        return BasicOkResponse(ok=True, active=result.get("active"))

    # Queue -------------------------------------------------------------------
    @api.post(
        "/queue",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=EnqueueResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def enqueue(payload: EnqueuePayload):
        """Queue a message; delivery happens asynchronously."""
        data = payload.model_dump(exclude_none=True)
        return EnqueueResponse.model_validate(_checked(await service().handle_command("enqueue", data)))

    @api.get("/queue/status", response_model=QueueStatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_status():
        return QueueStatusResponse.model_validate(_checked(await service().handle_command("queueStatus", {})))

    @api.get("/queue/messages", response_model=MessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_messages(
        account_id: Optional[str] = None,
        status: Optional[Literal["pending", "processing", "sent", "failed"]] = None,
    ):
        result = await service().handle_command("listMessages", {"account_id": account_id, "status": status})
        return MessagesResponse.model_validate(_checked(result))

    @api.get("/queue/messages/{message_id}", response_model=MessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_message(message_id: str):
        result = await service().handle_command("getMessage", {"id": message_id})
        return MessageResponse.model_validate(_checked(result))

    @api.post("/queue/clear", response_model=ClearQueueResponse, response_model_exclude_none=True, dependencies=[admin_dependency])
    async def clear_queue():
        """Emergency stop: drop every pending and processing message."""
        return ClearQueueResponse.model_validate(_checked(await service().handle_command("clearQueue", {})))

    @api.get("/queue/config", response_model=ConfigResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_config():
        return ConfigResponse.model_validate(_checked(await service().handle_command("getConfig", {})))

    @api.put("/queue/config", response_model=ConfigResponse, response_model_exclude_none=True, dependencies=[admin_dependency])
    async def update_config(payload: Dict[str, Any] = Body(...)):
        """Apply a partial queue configuration (snake_case or camelCase keys)."""
        result = await service().handle_command("updateConfig", {"config": payload})
        return ConfigResponse.model_validate(_checked(result))

    # Accounts ----------------------------------------------------------------
    @api.get("/accounts/{account_id}/health", response_model=HealthResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def account_health(account_id: str):
        result = await service().handle_command("deviceHealth", {"account_id": account_id})
        return HealthResponse.model_validate(_checked(result))

    @api.get("/accounts/{account_id}/queue-status", dependencies=[auth_dependency])
    async def account_queue_status(account_id: str):
        """Queue, health, safety decision and recommended delay for one account."""
        return _checked(await service().handle_command("deviceQueueStatus", {"account_id": account_id}))

    @api.post("/accounts/{account_id}/warmup", response_model=HealthResponse, response_model_exclude_none=True, dependencies=[admin_dependency])
    async def start_warmup(account_id: str):
        result = await service().handle_command("startWarmup", {"account_id": account_id})
        return HealthResponse.model_validate(_checked(result))

    @api.post("/accounts/{account_id}/events", response_model=HealthResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def record_event(account_id: str, payload: DeviceEventPayload):
        data = {"account_id": account_id, **payload.model_dump(exclude_none=True)}
        return HealthResponse.model_validate(_checked(await service().handle_command("recordEvent", data)))

    @api.get("/health/accounts", response_model=DevicesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def all_health():
        return DevicesResponse.model_validate(_checked(await service().handle_command("allHealth", {})))

    @api.get("/health/attention", response_model=DevicesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def attention():
        """Accounts whose status is not healthy, worst first."""
        return DevicesResponse.model_validate(_checked(await service().handle_command("attention", {})))

    @api.get("/dashboard", dependencies=[auth_dependency])
    async def dashboard():
        return _checked(await service().handle_command("dashboard", {}))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # Scheduler control -------------------------------------------------------
    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        return BasicOkResponse.model_validate(await service().handle_command("run now", {}))

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Pause the dispatch loop; queued messages are kept."""
        return BasicOkResponse.model_validate(await service().handle_command("suspend", {}))

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        return BasicOkResponse.model_validate(await service().handle_command("activate", {}))

    api.include_router(router)
    return api
