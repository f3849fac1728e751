"""
CallSync - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.api import health, routes
from app.api.errors import register_error_handling
from app.config import Settings, get_settings
from app.core.logging import setup_structured_logging
from app.services.analysis import create_analysis_service
from app.services.call_service import create_call_service
from app.telephony.gateway import SessionGateway, create_gateway

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[SessionGateway] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Settings to use (environment-derived when omitted)
        gateway: Pre-built gateway; when given, no upstream HTTP client is
            created at startup (used by tests)
    """
    settings = settings or get_settings()
    setup_structured_logging(level=settings.app_log_level, json_format=settings.log_json_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
            - Create the shared upstream HTTP client
            - Build call, analysis and admission components
            - Wire them into the session gateway

        Shutdown:
            - Close the upstream HTTP client
        """
        # === Startup ===
        logger.info("CallSync starting in %s mode", settings.app_env)
        app.state.settings = settings

        client = None
        if gateway is not None:
            app.state.gateway = gateway
        else:
            client = httpx.AsyncClient(follow_redirects=True)
            app.state.gateway = create_gateway(
                settings,
                call_service=create_call_service(settings, client),
                analysis_service=create_analysis_service(settings),
            )

        logger.info(
            "   Upstream: %s, analysis=%s, rate_limit=%s",
            settings.upstream_base_url,
            app.state.gateway.analysis_backend,
            "on" if settings.rate_limit_enabled else "off",
        )

        yield

        # === Shutdown ===
        logger.info("CallSync shutting down")
        if client is not None:
            await client.aclose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="CallSync",
        description="Session synchronization API for AI phone calls",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    # --- Errors ---
    register_error_handling(app)

    # --- Routes ---
    app.include_router(health.router)
    app.include_router(routes.router, prefix="/api")

    @app.get("/")
    async def root():
        """Root health check."""
        return {
            "service": "CallSync",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()
