from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from license_authority.api import router as licenses_router
from license_authority.clock import Clock
from license_authority.db import init_db
from license_authority.errors import LicenseAuthorityError
from license_authority.services import build_services
from license_authority.settings import Settings, configure_logging, get_settings
from license_authority.web_admin import router as admin_router

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_503_SERVICE_UNAVAILABLE: "ADMIN_DISABLED",
}


def create_app(settings: Settings | None = None, clock: Clock | None = None) -> FastAPI:
    settings = settings or get_settings()
    services = build_services(settings, clock)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        init_db(settings.db_path)
        services.start()
        logger.info("License authority ready (db=%s)", settings.db_path)
        try:
            yield
        finally:
            services.stop()

    app = FastAPI(title="License Authority", lifespan=lifespan)
    app.state.services = services
    app.include_router(licenses_router)
    app.include_router(admin_router)

    @app.exception_handler(LicenseAuthorityError)
    async def authority_error_handler(_: Request, exc: LicenseAuthorityError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.message, "code": exc.code},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "message": str(exc.detail),
                "code": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            },
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "message": f"{location}: {message}" if location else message,
                "code": "VALIDATION_ERROR",
            },
        )

    return app


if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        reload=False,
    )
