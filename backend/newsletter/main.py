from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from newsletter.api.subscriptions import router as subscriptions_router
from newsletter.db.base import Base
from newsletter.db.session import database_url_from_env, get_engine
from newsletter.services.errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="Newsletter API", version="0.1.0")
    cors_origins_raw = os.getenv(
        "CORS_ORIGINS", "http://localhost:4321,http://127.0.0.1:4321"
    )
    cors_origins = [origin.strip() for origin in cors_origins_raw.split(",") if origin]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def handle_service_error(_: Request, exc: ServiceError) -> JSONResponse:
        if exc.kind is ErrorKind.internal:
            logger.error(
                "request_failed_internal",
                extra={"error_code": exc.code, "error_message": exc.message},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {"code": exc.code, "kind": exc.kind.value, "message": exc.message},
                "message": exc.message,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        _: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "REQUEST_VALIDATION_ERROR",
                    "kind": ErrorKind.validation.value,
                    "message": "Request validation failed",
                    "details": exc.errors(),
                },
                "message": "Request validation failed",
            },
        )

    @app.on_event("startup")
    def init_schema() -> None:
        auto_create_schema = os.getenv("AUTO_CREATE_SCHEMA")
        should_create = auto_create_schema == "1" or (
            auto_create_schema is None and database_url_from_env().startswith("sqlite")
        )
        if should_create:
            Base.metadata.create_all(bind=get_engine())

    @app.get("/health", tags=["system"])
    def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(subscriptions_router)
    return app


app = create_app()
