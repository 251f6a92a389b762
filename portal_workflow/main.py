"""Studio Portal Workflow: Main FastAPI Application.

Phase tracking, requirement gating and the automation engine for the
client portal.
"""

import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .api import api_router
from .core import Clock, Settings, close_db, get_session_factory, get_settings, init_db, utc_now
from .jobs.scheduler import AutomationScheduler
from .schemas import ErrorResponse
from .services.automation_engine import AutomationConfig, AutomationEngine
from .services.catalog import PhaseCatalog
from .services.notification_dispatcher import NotificationDispatcher, OutboxDispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    # Skip init_db in production (tables come from migrations)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    scheduler: AutomationScheduler = app.state.scheduler
    if settings.automation_enabled:
        await scheduler.start()

    yield

    await scheduler.stop()
    await close_db()


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    dispatcher: NotificationDispatcher | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """Build the API with its catalog, automation engine and scheduler."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        ## Studio Portal Workflow API

        Moves client projects through their phase workflow.

        ### Key Features

        - **Phase Sets**: Each project gets the phases its services need, always starting at onboarding and ending at launch.
        - **Requirement Gating**: A phase only advances once every required client action is complete.
        - **Automation**: A periodic sweep auto-advances, flags stuck projects and reminds clients about pending actions.
        - **Audit Trail**: Every transition records who moved the project and why.

        ### Authentication

        Requests carry the upstream-verified identity in the `X-User-ID` and
        `X-User-Role` (`client` or `operator`) headers.
        """,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=lifespan,
    )

    catalog = PhaseCatalog(
        session_factory,
        first_phase_key=settings.first_phase_key,
        last_phase_key=settings.last_phase_key,
        cache_ttl_seconds=settings.catalog_cache_ttl_seconds,
    )
    engine = AutomationEngine(
        session_factory,
        dispatcher or OutboxDispatcher(session_factory, settings.realtime_gateway_url),
        catalog=catalog,
        config=AutomationConfig.from_settings(settings),
        clock=clock,
    )

    app.state.settings = settings
    app.state.phase_catalog = catalog
    app.state.clock = clock
    app.state.automation_engine = engine
    app.state.scheduler = AutomationScheduler(engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        error_detail = str(exc)
        if settings.debug or settings.environment != "production":
            error_detail = f"{str(exc)}\n{traceback.format_exc()}"

        logger.error(f"Unhandled exception on {request.url.path}: {error_detail}")

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="internal_error",
                message=f"An unexpected error occurred: {str(exc)[:200]}",
                details=[],
            ).model_dump(),
        )

    @app.get("/health", tags=["health"])
    async def health_check():
        """Health check endpoint."""
        scheduler: AutomationScheduler = app.state.scheduler
        return {
            "status": "healthy",
            "version": settings.app_version,
            "automation_running": scheduler.running,
        }

    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "portal_workflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
    )
