from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orgquota.app.api.members import router as members_router
from orgquota.app.api.quotas import router as quotas_router
from orgquota.app.core.config import settings
from orgquota.app.core.logging import get_logger, setup_logging
from orgquota.app.db import models  # noqa: F401 - import to register models
from orgquota.app.db.async_session import close_async_engine, get_async_session
from orgquota.app.db.init_db import init_database, verify_connection
from orgquota.app.exceptions import QuotaLedgerException
from orgquota.app.middleware.request_id import RequestIdMiddleware, get_request_id
from orgquota.app.services.catalog import get_test_type_catalog


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Creates tables, seeds the master test types and loads the catalog
        on startup; disposes the database engine on shutdown.
        """
        if not await verify_connection():
            logger.error("Database connection failed!")
            raise RuntimeError("Cannot connect to database")

        await init_database()

        # An empty catalog for a test kind is a deployment error
        catalog = get_test_type_catalog()
        async with get_async_session() as session:
            labels = await catalog.load(session)
        catalog.validate()

        logger.info(
            "Application startup complete",
            extra={
                "test_types_loaded": sum(len(ids) for ids in labels.values()),
                "debug_mode": settings.debug,
            },
        )

        yield

        await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Organization Quota Ledger",
        description="Allocation, revocation and auditing of prepaid test quota for B2B organizations",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(quotas_router)
    app.include_router(members_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with database status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            from orgquota.app.db.async_session import get_async_engine
            from sqlalchemy import text

            engine = get_async_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "ok"}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }

        return health_status

    @app.exception_handler(QuotaLedgerException)
    async def ledger_exception_handler(request: Request, exc: QuotaLedgerException) -> JSONResponse:
        """Render ledger errors as {"error": code, "message": ..., "request_id": ...}."""
        content = exc.to_response()
        content["request_id"] = get_request_id(request)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_ERROR",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
