import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from section_studio.config import settings
from section_studio.db.base import engine, init_db
from section_studio.routers import regenerate, sections
from section_studio.services.media_storage import MediaStorageConfigurationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="Section Studio API",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(set(settings.BACKEND_CORS_ORIGINS)),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MediaStorageConfigurationError)
    async def media_storage_configuration_error_handler(
        _request: Request, exc: MediaStorageConfigurationError
    ) -> ORJSONResponse:
        logger.error("media_storage.not_configured", extra={"error": str(exc)})
        return ORJSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(_request: Request, exc: SQLAlchemyError) -> ORJSONResponse:
        logger.exception("Database error", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Database query failed."})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return {"db": "ok"}
        except SQLAlchemyError as exc:
            return {"db": f"error: {exc}"}

    app.include_router(regenerate.router)
    app.include_router(sections.router)

    return app


app = create_app()
