"""FastAPI application exposing the gateway over HTTP."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from capgate import __version__
from capgate.bridge.dispatcher import Dispatcher, parse_timeout_hint
from capgate.bridge.errors import GatewayError
from capgate.bridge.publisher import CapabilityPublisher
from capgate.bridge.supervisor import Supervisor
from capgate.validation.config import BackendConfig, GatewayConfig

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
TIMEOUT_HEADER = "X-Capgate-Timeout"
DURATION_HEADER = "X-Capgate-Duration-Ms"


def create_app(
    config: GatewayConfig,
    supervisor: Optional[Supervisor] = None,
    manage_supervisor: bool = True,
) -> FastAPI:
    """
    Build the gateway application.

    With ``manage_supervisor`` the application lifespan starts and stops
    every backend session; pass False when the caller drives the
    supervisor itself.
    """
    supervisor = supervisor or Supervisor(config)
    dispatcher = Dispatcher(supervisor.registry)
    publisher = CapabilityPublisher(supervisor.registry, title=config.server.title)
    server = config.server

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_supervisor:
            logger.info("Starting %d backend session(s)", len(config.enabled_backends()))
            await supervisor.start()
        yield
        if manage_supervisor:
            logger.info("Stopping backend sessions")
            await supervisor.stop()

    app = FastAPI(
        title=server.title,
        version=__version__,
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.supervisor = supervisor
    app.state.dispatcher = dispatcher
    app.state.publisher = publisher

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        headers = {REQUEST_ID_HEADER: request_id} if request_id else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(request_id), headers=headers)

    async def describe():
        return publisher.render()

    async def health():
        return supervisor.health()

    app.add_api_route(server.discovery_path, describe, methods=["GET"], include_in_schema=False)
    app.add_api_route(server.health_path, health, methods=["GET"], include_in_schema=False)

    if server.admin_enabled:
        app.include_router(admin_router(supervisor), prefix="/admin", tags=["admin"])

    async def call_route(request: Request) -> JSONResponse:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        body = await request.body() if request.method == "POST" else None
        # raw path keeps %2F inside an operation name from splitting the segment
        raw_path = request.scope.get("raw_path")
        path = raw_path.decode("latin-1") if raw_path else request.url.path
        result = await dispatcher.dispatch(
            request.method,
            path,
            body=body,
            query=request.query_params.multi_items(),
            timeout_hint=parse_timeout_hint(request.headers.get(TIMEOUT_HEADER)),
            request_id=request_id,
            disconnected=request.is_disconnected,
        )
        return JSONResponse(
            result.payload,
            headers={REQUEST_ID_HEADER: result.request_id, DURATION_HEADER: str(result.duration_ms)},
        )

    prefix = server.route_prefix.rstrip("/")
    app.add_api_route(
        prefix + "/{route_path:path}", call_route, methods=["GET", "POST"], include_in_schema=False
    )
    return app


def admin_router(supervisor: Supervisor) -> APIRouter:
    """Endpoints for adding, removing and refreshing backends at runtime."""
    router = APIRouter()

    @router.get("/backends")
    async def list_backends():
        backends = {}
        for backend_id, session in supervisor.sessions().items():
            backend = supervisor.backend_config(backend_id)
            backends[backend_id] = {
                "address": backend.address if backend else session.address,
                "status": session.status(),
                "operations": [op.name for op in session.operations],
            }
        return {"backends": backends}

    @router.put("/backends/{backend_id}", status_code=202)
    async def put_backend(backend_id: str, backend: BackendConfig):
        try:
            session = await supervisor.add_backend(backend_id, backend)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"backend": backend_id, "status": session.status()}

    @router.delete("/backends/{backend_id}")
    async def delete_backend(backend_id: str):
        if not await supervisor.remove_backend(backend_id):
            raise HTTPException(status_code=404, detail=f"unknown backend: {backend_id}")
        return {"backend": backend_id, "removed": True}

    @router.post("/backends/{backend_id}/refresh", status_code=202)
    async def refresh_backend(backend_id: str):
        if not supervisor.refresh(backend_id):
            raise HTTPException(status_code=404, detail=f"unknown backend: {backend_id}")
        return {"backend": backend_id, "refresh": "requested"}

    return router


def serve(config: GatewayConfig, host: Optional[str] = None, port: Optional[int] = None, log_level: str = "info") -> None:
    """Run the gateway under uvicorn until interrupted."""
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=log_level.lower(),
        log_config=None,
    )
