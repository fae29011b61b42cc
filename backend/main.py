"""
SilentLine - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.config import Settings, get_settings
from app.api import health, routes, websocket
from app.api.schemas import ErrorResponse
from app.core.exceptions import DispatchHubError
from app.core.hub import create_hub
from app.core.logging import setup_structured_logging
from app.services.triage_analyzer import TriageAnalyzer

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    analyzer: Optional[TriageAnalyzer] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Settings override (defaults to environment-derived settings)
        analyzer: Analyzer override (defaults to the configured backend)
    """
    settings = settings or get_settings()

    setup_structured_logging(
        level=settings.app_log_level,
        json_format=settings.log_json or settings.is_production,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
            - Create the dispatch hub and its analyzer
        Shutdown:
            - End every live call so no analysis task outlives the process
        """
        # === Startup ===
        logger.info("SilentLine starting in %s mode", settings.app_env)

        hub = create_hub(settings, analyzer=analyzer)

        # Stored in app state for dependency injection
        app.state.hub = hub
        app.state.settings = settings

        await hub.startup()
        logger.info(
            "Hub ready: analysis=%s every %.1fs, turn=%s",
            hub.analyzer.model_id,
            settings.analysis_interval_seconds,
            "configured" if settings.turn_secret else "disabled",
        )

        yield

        # === Shutdown ===
        logger.info("SilentLine shutting down")
        await hub.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="SilentLine",
        description="Real-time orchestration hub for silent emergency calls",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    @app.exception_handler(DispatchHubError)
    async def dispatch_hub_error_handler(request: Request, exc: DispatchHubError):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.code, message=exc.message).model_dump(),
        )

    # --- Routes ---
    app.include_router(routes.router, prefix="/api")
    app.include_router(health.router)
    app.include_router(websocket.router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "service": "SilentLine",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "main:app",
        host=_settings.backend_host,
        port=_settings.backend_port,
        reload=_settings.app_debug,
    )
