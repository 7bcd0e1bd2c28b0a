"""
FastAPI Gateway Application Factory
===================================

This is the main entry point for the gateway that sits between browser
clients and the upstream real-time voice agent API.

Architecture:
    Browser → Gateway (this service) → Upstream Voice Agent API

Routers:
    - GET /api/session      : Issue a short-lived signed session token
    - WS  /api/voice-agent  : Relay to the upstream agent (token required)
    - GET /api/metadata     : Project metadata from deepgram.toml
    - GET /health           : Health check endpoint

Environment Variables:
    - DEEPGRAM_API_KEY: Upstream API key (required; startup fails without it)
    - SESSION_SECRET: Secret for signing session tokens (random if unset)
    - HOST / PORT: Bind address (default 0.0.0.0:8081)
    - ALLOWED_ORIGINS: Comma-separated CORS origins (default "*")
    - LOG_LEVEL: Logging level (default: INFO)
    See config.py for the relay and upstream tuning knobs.

Running the Service:
    Development:
        uvicorn agent_gateway.app.main:create_app --factory --reload --port 8081

    Production:
        python -m agent_gateway.app.main
"""

import logging
import sys
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from agent_gateway import __version__
from agent_gateway.app.auth import auth_router
from agent_gateway.app.config import Settings, get_settings
from agent_gateway.app.metadata import metadata_router
from agent_gateway.app.models import HealthResponse
from agent_gateway.app.realtime import realtime_router
from agent_gateway.app.upstream import UpstreamConnector


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Log the route banner and non-sensitive configuration
        - Warn when the signing secret is ephemeral

    Shutdown tasks:
        - Log shutdown information (open sessions are closed by the server
          closing their client sockets, which the relay propagates upstream)
    """
    settings: Settings = app.state.settings
    logger = logging.getLogger("agent_gateway.main")

    if settings.signing_secret_is_ephemeral:
        logger.warning(
            "SESSION_SECRET not set; using a random per-process secret. "
            "Issued session tokens will not survive a restart."
        )

    separator = "=" * 70
    logger.info(separator)
    logger.info(f"Gateway running at http://localhost:{settings.PORT}")
    logger.info("GET  /api/session")
    logger.info("WS   /api/voice-agent (auth required)")
    logger.info("GET  /api/metadata")
    logger.info("GET  /health")
    logger.info(separator)

    yield

    logger.info("Gateway service shutdown complete")


# Create FastAPI application
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Shared read-only settings and upstream connector on app.state
        - CORS middleware
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings to use; loaded from the environment when omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Agent Gateway",
        description="Session gateway and relay for the real-time voice agent API",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.upstream_connector = UpstreamConnector(settings)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount routers
    app.include_router(auth_router)
    app.include_router(metadata_router)
    app.include_router(realtime_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> Dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Render HTTP errors as {"error": ..., "message": ...}."""
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {
                "error": HTTPStatus(exc.status_code).name,
                "message": str(exc.detail),
            }
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response with no
        stack detail.
        """
        logger = logging.getLogger("agent_gateway.main")
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
            extra={
                "path": request.url.path,
                "method": request.method,
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
            }
        )

    return app


if __name__ == "__main__":
    """
    Direct execution entry point: python -m agent_gateway.app.main
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        missing = ", ".join(".".join(map(str, err["loc"])) or "settings" for err in e.errors())
        print(f"ERROR: invalid or missing configuration: {missing}", file=sys.stderr)
        print("Please copy sample.env to .env and add your API key", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
