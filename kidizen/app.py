"""
FastAPI application entry point for the Kidizen Science API.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kidizen.config import get_settings
from kidizen.errors import INVALID_PROPERTIES, SERVER_ERROR, KidizenError, StorageError
from kidizen.routes import router

logger = logging.getLogger(__name__)

AUTHENTICATE_REALM = 'Basic realm="Access to protected endpoints"'
INVALID_JSON = "Unable to parse JSON in request body."


def _error_response(status_code: int, detail: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": detail}, headers=headers)


async def handle_kidizen_error(request: Request, exc: KidizenError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    headers = None
    if exc.status_code == 401:
        headers = {"WWW-Authenticate": AUTHENTICATE_REALM}
    return _error_response(exc.status_code, exc.detail, headers)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    if any(error.get("type") == "json_invalid" for error in exc.errors()):
        return _error_response(400, INVALID_JSON)
    return _error_response(400, INVALID_PROPERTIES)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, SERVER_ERROR)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Kidizen Science API", version="0.1.0")
    app.add_exception_handler(KidizenError, handle_kidizen_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router, prefix=settings.api_prefix)
    return app


logging.basicConfig(level=logging.INFO)
app = create_app()
