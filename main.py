"""
CallTriage - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calltriage import __version__
from calltriage.api import health, routes
from calltriage.config import Settings, get_settings
from calltriage.core.dispatcher import EventDispatcher, create_dispatcher
from calltriage.core.exceptions import CallTriageError
from calltriage.core.logging import setup_structured_logging
from calltriage.telephony import router as telephony

logger = logging.getLogger(__name__)


async def _build_sql_dispatcher(settings: Settings) -> EventDispatcher:
    """Dispatcher backed by the SQL tenant directory and event log."""
    from calltriage.core.database import create_tables, get_session_maker, init_database
    from calltriage.core.sql_store import SQLEventLog, SQLTenantDirectory
    from calltriage.core.tenant_directory import load_tenants_from_yaml

    init_database(settings)
    await create_tables()

    session_maker = get_session_maker()
    directory = SQLTenantDirectory(session_maker)
    if settings.tenant_seed_path:
        tenants = load_tenants_from_yaml(settings.tenant_seed_path)
        for tenant in tenants:
            await directory.add_tenant(tenant)
        logger.info("Seeded %d tenant(s) into SQL datastore", len(tenants))

    return create_dispatcher(settings, directory=directory, event_log=SQLEventLog(session_maker))


def create_app(
    settings: Optional[Settings] = None,
    dispatcher: Optional[EventDispatcher] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Defaults to the environment-derived settings
        dispatcher: Pre-built dispatcher (tests); built in the lifespan otherwise
    """
    settings = settings or get_settings()
    setup_structured_logging(settings.app_log_level, json_format=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
            - Build the datastore adapters (memory or SQL)
            - Build the dispatcher and its collaborators

        Shutdown:
            - Dispose of the database engine when SQL is used
        """
        # === Startup ===
        logger.info("CallTriage starting in %s mode", settings.app_env)
        uses_sql = False

        if getattr(app.state, "dispatcher", None) is None:
            if settings.datastore_backend.lower() == "sql":
                app.state.dispatcher = await _build_sql_dispatcher(settings)
                uses_sql = True
            else:
                app.state.dispatcher = create_dispatcher(settings)

        logger.info("Dispatcher initialized and ready")
        logger.info(
            "   Privacy: anonymize_logs=%s, store_transcripts=%s",
            settings.anonymize_logs,
            settings.store_raw_transcripts,
        )
        if not settings.webhook_secret:
            logger.warning("   WEBHOOK_SECRET is not set; webhooks are accepted unsigned")

        yield

        # === Shutdown ===
        logger.info("CallTriage shutting down")
        if uses_sql:
            from calltriage.core.database import close_database
            await close_database()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="CallTriage",
        description="Multi-tenant call-event ingestion and emergency triage",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if dispatcher is not None:
        app.state.dispatcher = dispatcher

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    @app.exception_handler(CallTriageError)
    async def calltriage_error_handler(request: Request, exc: CallTriageError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Unhandled %s on %s: %s", exc.code, request.url.path, exc.message)
            message = "internal error"
        else:
            message = exc.message
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": message, "code": exc.code},
        )

    # --- Routes ---
    app.include_router(telephony.router)
    app.include_router(routes.router, prefix="/api")
    app.include_router(health.router)

    # --- Service info at root ---
    @app.get("/")
    async def root():
        """Root health check."""
        return {
            "service": "CallTriage",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()
