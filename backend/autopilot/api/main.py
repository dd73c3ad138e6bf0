"""
Autopilot - FastAPI Application
===============================

Main application factory with routers and middleware.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from autopilot.api import auto
from autopilot.core import repository
from autopilot.core.config import settings
from autopilot.core.database import AsyncSessionLocal, close_db, get_db_session, init_db
from autopilot.core.engine.cycle_engine import CycleEngine
from autopilot.core.engine.seed_agents import seed_builtin_agents
from autopilot.core.event_hub import EventHub
from autopilot.core.schemas import ErrorResponse, HealthResponse

# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables, seed default settings and built-in agents
    - Build the cycle engine

    Shutdown:
    - Stop any running session
    - Close database connections
    """
    logger.info("Starting Autopilot", version=settings.APP_VERSION)

    await init_db()
    async with get_db_session() as db:
        settings_added = await repository.seed_default_settings(db)
        agents_added = await seed_builtin_agents(db)
    logger.info("Database initialized", settings_seeded=settings_added, agents_seeded=agents_added)

    app.state.engine = CycleEngine(
        session_factory=AsyncSessionLocal,
        hub=EventHub(settings.EVENT_BUFFER_SIZE),
    )

    yield

    logger.info("Shutting down Autopilot")
    await app.state.engine.shutdown()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Autonomous agent orchestration engine",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """
        Check application health.

        Returns status of:
        - Application
        - Database connection
        - Cycle engine
        """
        try:
            async with get_db_session() as db:
                await db.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            engine_state = "not_initialized"
        else:
            engine_state = (await engine.get_status()).status

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            engine=engine_state,
        )

    app.include_router(auto.router)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()
