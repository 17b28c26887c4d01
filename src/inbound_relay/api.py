# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the inbound relay.

This module provides the REST API of the relay service. It includes:

- Pydantic models defining request/response schemas
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- Mapping of relay errors to HTTP status codes

The API supports operations including:
- Accepting raw inbound email (``POST /inbound``)
- Managing webhook and forward endpoints and recipient routes
- Scheduling, listing, cancelling and processing deferred sends
- Thread reconstruction for stored emails
- Health checks and Prometheus metrics exposure

Example:
    Creating and running the API application::

        from inbound_relay.core import InboundRelayCore
        from inbound_relay.api import create_app

        core = InboundRelayCore(db_path="/data/inbound_relay.db")
        app = create_app(core, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager
import logging

from fastapi import FastAPI, HTTPException, APIRouter, Depends, status, Request
from fastapi.responses import Response, JSONResponse
from fastapi.security import APIKeyHeader
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError

from .core import InboundRelayCore
from .errors import InvalidInput, InvalidState, NotFound, ParseError, RelayError, StorageConflict, TooSoon
from .models import ScheduleRequest, ScheduleStatus, WebhookFormat

logger = logging.getLogger(__name__)

app = FastAPI(title="Inbound Relay")
service: InboundRelayCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    ParseError: status.HTTP_400_BAD_REQUEST,
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    TooSoon: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidState: status.HTTP_409_CONFLICT,
    StorageConflict: status.HTTP_409_CONFLICT,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` the dependency is
    bypassed; otherwise a missing or different value yields ``401``.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


def _service() -> InboundRelayCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class EndpointsResponse(CommandStatus):
    endpoints: List[Dict[str, Any]]


class RoutePayload(BaseModel):
    """Recipient route; ``address`` may be ``@domain`` for a catch-all."""
    address: str
    endpoint_id: str


class RoutesResponse(CommandStatus):
    routes: List[Dict[str, Any]]


class ScheduledListResponse(CommandStatus):
    scheduled: List[Dict[str, Any]]


def create_app(
    svc: InboundRelayCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`inbound_relay.core.InboundRelayCore` that
        implements the business logic.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Inbound Relay", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError):
        detail = [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()]
        logger.warning(f"Rejected payload on {request.method} {request.url.path}: {detail}")
        return JSONResponse(status_code=422, content={"detail": detail})

    @api.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        code = next(
            (value for cls, value in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        content: Dict[str, Any] = {"ok": False, "error": str(exc)}
        if isinstance(exc, InvalidState) and exc.status:
            content["status"] = exc.status
        if isinstance(exc, TooSoon) and exc.earliest is not None:
            content["earliest"] = str(exc.earliest)
        return JSONResponse(status_code=code, content=content)

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @router.post("/inbound")
    async def inbound(request: Request, recipient: Optional[str] = None):
        """Accept one raw RFC 2822 message, store it and deliver it to its route."""
        core = _service()
        raw = await request.body()
        if not raw.strip():
            raise HTTPException(400, "Empty message body")
        result = await core.receive(raw, recipient=recipient)
        return result.model_dump()

    @router.post("/endpoints")
    async def add_endpoint(payload: Dict[str, Any]):
        """Register or replace a webhook, email or email_group endpoint."""
        endpoint = await _service().add_endpoint(payload)
        return endpoint.model_dump(mode="json")

    @router.get("/endpoints", response_model=EndpointsResponse, response_model_exclude_none=True)
    async def list_endpoints():
        endpoints = await _service().list_endpoints()
        return EndpointsResponse(ok=True, endpoints=[item.model_dump(mode="json") for item in endpoints])

    @router.delete("/endpoints/{endpoint_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_endpoint(endpoint_id: str):
        """Remove an endpoint and the routes pointing to it."""
        await _service().delete_endpoint(endpoint_id)
        return BasicOkResponse(ok=True)

    @router.post("/endpoints/{endpoint_id}/test")
    async def test_endpoint(endpoint_id: str, format: Optional[WebhookFormat] = None):
        """Send a synthetic email to a webhook endpoint, once, without retry."""
        result = await _service().test_endpoint(endpoint_id, format)
        return result.model_dump(mode="json")

    @router.post("/routes", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_route(payload: RoutePayload):
        await _service().add_route(payload.address, payload.endpoint_id)
        return BasicOkResponse(ok=True)

    @router.get("/routes", response_model=RoutesResponse, response_model_exclude_none=True)
    async def list_routes():
        return RoutesResponse(ok=True, routes=await _service().list_routes())

    @router.delete("/routes/{address}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_route(address: str):
        await _service().delete_route(address)
        return BasicOkResponse(ok=True)

    @router.post("/scheduled", status_code=status.HTTP_201_CREATED)
    async def create_scheduled(payload: ScheduleRequest):
        """Schedule a send; a known ``idempotency_key`` returns the existing record."""
        record = await _service().scheduler.create(payload)
        return record.model_dump(mode="json", by_alias=True)

    @router.get("/scheduled", response_model=ScheduledListResponse, response_model_exclude_none=True)
    async def list_scheduled(status: Optional[ScheduleStatus] = None, limit: int = 50, offset: int = 0):
        records = await _service().scheduler.list_by_status(status, limit=limit, offset=offset)
        return ScheduledListResponse(
            ok=True,
            scheduled=[record.model_dump(mode="json", by_alias=True) for record in records],
        )

    # Registered before /scheduled/{schedule_id} so "process" is not read as an id.
    @router.post("/scheduled/process")
    async def process_scheduled():
        """Send every due item; meant for an external cron."""
        result = await _service().scheduler.process_due_sends()
        return result.model_dump()

    @router.get("/scheduled/{schedule_id}")
    async def get_scheduled(schedule_id: str):
        record = await _service().scheduler.get(schedule_id)
        return record.model_dump(mode="json", by_alias=True)

    @router.delete("/scheduled/{schedule_id}")
    async def cancel_scheduled(schedule_id: str):
        """Cancel a send that is still ``scheduled``; 409 otherwise."""
        record = await _service().scheduler.cancel(schedule_id)
        return record.model_dump(mode="json", by_alias=True)

    @router.get("/emails/{email_id}")
    async def get_email(email_id: str):
        email = await _service().get_email(email_id)
        return email.to_wire()

    @router.get("/emails/{email_id}/thread")
    async def email_thread(email_id: str):
        """Rebuild the conversation containing a stored email."""
        thread = await _service().thread_for(email_id)
        return thread.to_wire()

    @router.get("/emails/{email_id}/deliveries")
    async def email_deliveries(email_id: str):
        return {"ok": True, "deliveries": await _service().list_deliveries(email_id=email_id)}

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
