"""
FastAPI Gateway Application Factory
===================================

This is the main entry point for the gateway service that forwards REST
calls from callers to a single upstream API (Microsoft Graph by default).

Architecture:
    Callers -> Gateway (this service) -> Upstream API (with app-only token)

Routers:
    - /api/proxy/*  : Catch-all forwarding to the upstream API
    - /health       : Health check endpoint

Environment Variables:
    - UPSTREAM_BASE_URL: Versioned upstream endpoint (default: https://graph.microsoft.com/v1.0)
    - UPSTREAM_SCOPES: Space-separated token scopes
    - AZURE_TENANT_ID, AZURE_CLIENT_ID, AZURE_CLIENT_SECRET: Client credentials
    - ALLOWED_ORIGINS: Comma-separated CORS origins
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn gateway.app.main:app --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn gateway.app.main:app --host 0.0.0.0 --port 8080 --workers 4
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings, validate_configuration
from .models import HealthResponse
from .proxy import PROXY_PREFIX, ProxyGateway, proxy_router
from .upstream import UpstreamClient, build_upstream_client

SERVICE_NAME = "graph-proxy-gateway"
SERVICE_VERSION = "1.0.0"


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
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


class AppState:
    """
    Application state container.

    Holds the shared upstream client and the gateway built on top of it.
    Both are created once at startup and only read afterwards.
    """
    def __init__(self):
        self.settings: Optional[Settings] = None
        self.upstream_client: Optional[UpstreamClient] = None
        self.proxy_gateway: Optional[ProxyGateway] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Validate configuration and log the report
        - Build the credentialed upstream client and the ProxyGateway

    Shutdown tasks:
        - Close the upstream client's connection pool
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("gateway.main")

    report = validate_configuration(settings)
    for error in report["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    app_state: AppState = app.state.app_state
    app_state.settings = settings
    app_state.upstream_client = build_upstream_client(settings)
    app_state.proxy_gateway = ProxyGateway(
        app_state.upstream_client,
        disconnect_poll_seconds=settings.DISCONNECT_POLL_SECONDS,
    )

    logger.info(
        "Gateway service started",
        extra={
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "upstream_base_url": settings.upstream_base_url_str,
        }
    )

    yield

    logger.info("Shutting down gateway service")

    if app_state.upstream_client:
        await app_state.upstream_client.aclose()
        logger.info("Closed upstream client")

    app_state.proxy_gateway = None
    app_state.upstream_client = None


def create_app() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - CORS middleware
        - Proxy routes
        - Exception handlers

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title="Graph Proxy Gateway",
        description="Forwards REST calls to the upstream API with an app-only credential",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.app_state = AppState()

    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["*"]
        )

    app.include_router(
        proxy_router,
        prefix=PROXY_PREFIX,
        tags=["Upstream Proxy"]
    )

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Service status and the upstream requests are forwarded to."""
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            upstream=settings.upstream_base_url_str,
        )

    @app.get("/", tags=["System"])
    async def root() -> Dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "description": "Forwards REST calls to the upstream API",
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "proxy": f"{PROXY_PREFIX}/{{path}}"
            }
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a JSON 500 in the same envelope the
        proxy uses for its own failures.
        """
        logger = logging.getLogger("gateway.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "internalServerError",
                    "message": str(exc) if settings.LOG_LEVEL == "DEBUG" else "An unexpected error occurred",
                }
            }
        )

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "gateway.app.main:app",
        host=settings.GATEWAY_HOST,
        port=settings.GATEWAY_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
