from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from sqlalchemy.exc import OperationalError as SAOperationalError

from api.router import api_router
from core.config import settings
from core.database import DatabaseUnavailableError, is_transient_db_connectivity_error, validate_db_connection
from core.errors import TimetableError
from core.logging import setup_logging
from services.container import Services


logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    setup_logging(environment=settings.environment)
    is_production = settings.is_production

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or Services.from_settings()
        svc.start()
        app.state.services = svc
        try:
            yield
        finally:
            svc.shutdown(drain=True)

    app = FastAPI(
        title="Timetable Scheduling API",
        version="0.1.0",
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
        lifespan=lifespan,
    )

    @app.exception_handler(TimetableError)
    def _domain_error(_request, exc: TimetableError):
        if exc.status_code >= 500:
            logger.error("Domain error %s", exc.code)
        else:
            logger.info("Request rejected: %s", exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(DatabaseUnavailableError)
    def _db_unavailable(_request, _exc: DatabaseUnavailableError):
        logger.warning("Database unavailable (503)", exc_info=_exc)
        return JSONResponse(
            status_code=503,
            content={
                "code": "database_unavailable",
                "message": "Database temporarily unavailable. Please retry.",
                "details": {},
            },
        )

    @app.exception_handler(SAOperationalError)
    def _sqlalchemy_operational_error(_request, exc: SAOperationalError):
        if is_transient_db_connectivity_error(exc):
            logger.warning("Database transient connectivity error (503)", exc_info=exc)
            return JSONResponse(
                status_code=503,
                content={
                    "code": "database_unavailable",
                    "message": "Database temporarily unavailable. Please retry.",
                    "details": {},
                },
            )
        logger.error("Database operation failed", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"code": "database_error", "message": "Database operation failed.", "details": {}},
        )

    allow_origins = [settings.frontend_origin]
    allow_origin_regex = None
    if not is_production:
        # Dev-friendly: allow the configured origin and any localhost port.
        allow_origins.extend(["http://localhost:5173", "http://127.0.0.1:5173"])
        allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> dict:
        # Always respond; reflect DB availability without crashing.
        svc = getattr(app.state, "services", None)
        db_status = "down"
        if svc is not None:
            try:
                db_status = "ok" if validate_db_connection(svc.engine) else "down"
            except SAOperationalError:
                logger.warning("Health check could not reach the database", exc_info=True)
        return {"app": "ok", "database": db_status}

    app.include_router(api_router, prefix="/api/timetable")
    return app


app = create_app()
