"""
Swarm Gateway API Server.

Provides an OpenAI-style REST API:
- Model listing and text / chat completions routed to cluster services
- Cluster status, activation and service management
- Cache health and pruning
- Two-phase shutdown

Usage:
    python -m swarm_gateway.api.server
    # or
    uvicorn swarm_gateway.api.server:app --port 8083
"""

from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from swarm_gateway import __version__
from swarm_gateway.api.gateway import Gateway, GatewayContext
from swarm_gateway.api.schemas import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    CompletionRequest,
    CompletionResponse,
    ErrorEnvelope,
    HealthResponse,
    ObjectList,
    ServiceCreateRequest,
    ShutdownResponse,
    SwarmInitResponse,
    SwarmStatus,
)
from swarm_gateway.config import GatewayConfig, load_config
from swarm_gateway.errors import GatewayError
from swarm_gateway.utils import (
    LoggingConfig,
    clear_context,
    get_request_id,
    set_context,
    set_request_id,
    setup_logging,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_HTTP_ERROR_TYPES = {
    404: "not_found_error",
    405: "method_not_allowed",
}


def _error_response(status_code: int, message: str, error_type: str,
                    details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    envelope = ErrorEnvelope(error=message, type=error_type, details=details or None)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump(exclude_none=True)),
    )


def _describe_validation_errors(errors: List[Dict[str, Any]]) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


# ============================================================================
# FastAPI Application
# ============================================================================

def create_app(context: Optional[GatewayContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        context: Pre-built collaborators. Built from configuration at
            startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("[Gateway] Swarm Gateway starting...")
        gateway = Gateway(context or GatewayContext.from_config())
        app.state.gateway = gateway
        await gateway.start()
        yield
        logger.info("[Gateway] Swarm Gateway shutting down...")
        await gateway.stop()

    app = FastAPI(
        title="Swarm Gateway",
        description="OpenAI-compatible gateway for cluster-hosted models",
        version=__version__,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------------
    # Middleware and error handling
    # ------------------------------------------------------------------------

    gateway_config = context.config.gateway if context else GatewayConfig()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=gateway_config.cors_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        set_request_id(request_id)
        set_context(method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error(f"[Gateway] {request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"[Gateway] {request.method} {request.url.path} rejected: {exc.message}")
        return _error_response(exc.status_code, exc.message, exc.error_type, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        error_type = _HTTP_ERROR_TYPES.get(exc.status_code, "http_error")
        return _error_response(exc.status_code, str(exc.detail), error_type)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        message = _describe_validation_errors(errors)
        logger.info(f"[Gateway] {request.url.path} rejected: {message}")
        return _error_response(400, message, "invalid_request_error", {"errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            f"[Gateway] Unhandled error on {request.method} {request.url.path} "
            f"(request {get_request_id()})"
        )
        return _error_response(500, f"Internal server error: {exc}", "internal_error")

    # ------------------------------------------------------------------------
    # Health & Status Endpoints
    # ------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Liveness. Always healthy once the listener is up."""
        return HealthResponse(status="healthy", timestamp=datetime.now().isoformat())

    @app.get("/v1/status")
    async def get_status(gateway: Gateway = Depends(get_gateway)):
        return await gateway.status()

    # ------------------------------------------------------------------------
    # Model Endpoints
    # ------------------------------------------------------------------------

    @app.get("/v1/models", response_model=ObjectList)
    async def list_models(gateway: Gateway = Depends(get_gateway)):
        return gateway.list_models()

    @app.post("/v1/completions", response_model=CompletionResponse)
    async def create_completion(
        body: CompletionRequest,
        gateway: Gateway = Depends(get_gateway),
    ):
        return await gateway.complete(body)

    @app.post("/v1/chat/completions", response_model=ChatCompletionResponse)
    async def create_chat_completion(
        body: ChatCompletionRequest,
        gateway: Gateway = Depends(get_gateway),
    ):
        return await gateway.chat_complete(body)

    # ------------------------------------------------------------------------
    # Cluster Endpoints
    # ------------------------------------------------------------------------

    @app.get("/v1/swarm/status", response_model=SwarmStatus, response_model_exclude_none=True)
    async def swarm_status(gateway: Gateway = Depends(get_gateway)):
        return await gateway.swarm_status()

    @app.post("/v1/swarm/init", response_model=SwarmInitResponse)
    async def swarm_init(gateway: Gateway = Depends(get_gateway)):
        return await gateway.swarm_init()

    @app.get("/v1/services", response_model=ObjectList)
    async def list_services(gateway: Gateway = Depends(get_gateway)):
        return await gateway.list_services()

    @app.post("/v1/services")
    async def create_service(
        body: ServiceCreateRequest,
        gateway: Gateway = Depends(get_gateway),
    ):
        return await gateway.create_service(body)

    @app.delete("/v1/services/{name}")
    async def remove_service(name: str, gateway: Gateway = Depends(get_gateway)):
        return await gateway.remove_service(name)

    # ------------------------------------------------------------------------
    # Cache Endpoints
    # ------------------------------------------------------------------------

    @app.get("/v1/cache/health")
    async def cache_health(gateway: Gateway = Depends(get_gateway)):
        return (await gateway.cache_health()).to_dict()

    @app.post("/v1/cache/prune")
    async def prune_cache(gateway: Gateway = Depends(get_gateway)):
        return await gateway.prune_cache()

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    @app.post("/shutdown", response_model=ShutdownResponse)
    async def shutdown(
        background_tasks: BackgroundTasks,
        gateway: Gateway = Depends(get_gateway),
    ):
        """Respond first; the process stops after the response is sent."""
        background_tasks.add_task(gateway.finish_shutdown)
        return gateway.shutdown()

    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Run the API server."""
    import uvicorn

    config = load_config(os.getenv("SWARM_GATEWAY_CONFIG") or None)
    setup_logging(LoggingConfig(level="DEBUG") if config.verbose else LoggingConfig())

    context = GatewayContext.from_config(config)
    server = uvicorn.Server(uvicorn.Config(
        create_app(context),
        host=config.gateway.host,
        port=config.gateway.port,
        log_config=None,
    ))

    def stop_listening() -> None:
        server.should_exit = True

    if config.gateway.exit_on_shutdown:
        context.shutdown_hook = stop_listening

    port = config.gateway.port
    logger.info("=" * 60)
    logger.info("Swarm Gateway")
    logger.info("=" * 60)
    logger.info(f"Listening: http://{config.gateway.host}:{port}")
    logger.info("")
    logger.info("Endpoints:")
    logger.info(f"  GET  http://localhost:{port}/health")
    logger.info(f"  GET  http://localhost:{port}/v1/models")
    logger.info(f"  POST http://localhost:{port}/v1/completions")
    logger.info(f"  POST http://localhost:{port}/v1/chat/completions")
    logger.info(f"  GET  http://localhost:{port}/v1/swarm/status")
    logger.info(f"  POST http://localhost:{port}/shutdown")
    logger.info("=" * 60)

    server.run()


if __name__ == "__main__":
    main()
