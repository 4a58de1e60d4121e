"""
FastAPI Main Application
========================

Main entry point for the AI Todo Builder feature API.

Run with:
    python -m server.main
    uvicorn server.main:app --port 8888
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.builder_settings import BuilderSettings

from .exceptions import register_exception_handlers
from .routers import feature_generation_router, features_router
from .services import ServiceContainer, build_services

_logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container on startup, release it on shutdown."""
    services: ServiceContainer | None = getattr(app.state, "services", None)
    owned = services is None

    if owned:
        settings = BuilderSettings.from_env()
        _configure_logging(settings.log_level)
        services = build_services(settings)
        app.state.services = services

    _logger.info("Feature API started (project root %s)", services.settings.project_root)

    yield

    if owned:
        services.close()
        app.state.services = None


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    A prebuilt container (tests) is used as-is and not closed on shutdown.
    """
    app = FastAPI(
        title="AI Todo Builder",
        description="Feature registry and code generation pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # {"success": false, "error": "...", "error_code": "...", "details": {...}}
    register_exception_handlers(app)

    # CORS - allow all origins when remote access is enabled, otherwise localhost only
    allow_remote = os.environ.get("TODO_BUILDER_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_remote else [
            "http://localhost:3000",      # Next.js dev server
            "http://127.0.0.1:3000",
            "http://localhost:5173",      # Vite dev server
            "http://127.0.0.1:5173",
        ],
        allow_credentials=not allow_remote,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Generation routes first: /api/features/generate must not match /{feature_id}
    app.include_router(feature_generation_router)
    app.include_router(features_router)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"success": True, "data": {"status": "healthy"}}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "server.main:app",
        host=os.environ.get("TODO_BUILDER_HOST", "127.0.0.1"),
        port=int(os.environ.get("TODO_BUILDER_PORT", "8888")),
        reload=False,
    )
