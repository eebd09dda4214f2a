"""FastAPI application entry point.

Run with `uvicorn knowledge_engine.api.main:create_app --factory`.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from knowledge_engine.api.routes import health, rag
from knowledge_engine.core.config import Settings, get_settings
from knowledge_engine.rag.service import KnowledgeEngine

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    engine: KnowledgeEngine = app.state.engine
    settings = engine.settings

    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")
    await engine.init()
    logger.info("Startup complete - ready to accept requests")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await engine.shutdown()
    logger.info("Shutdown complete")


def create_app(
    settings: Settings | None = None,
    engine: KnowledgeEngine | None = None,
) -> FastAPI:
    """Build the application around a knowledge engine.

    The engine is initialized by the lifespan, not here.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Retrieval-augmented knowledge engine API",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.engine = engine or KnowledgeEngine.from_settings(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check routes
    app.include_router(health.router, tags=["Health"])

    # API routes
    app.include_router(rag.router, prefix=settings.api_prefix, tags=["RAG"])

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs" if settings.debug else None,
            "health": "/health/ready",
        }

    return app

