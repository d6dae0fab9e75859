"""Mapping of engine errors onto HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .errors import (
    ChatEngineError,
    ConcurrencyViolation,
    ConfigurationError,
    ContentError,
    MessageNotFound,
    ProviderError,
    SessionNotFound,
)

logger = logging.getLogger(__name__)


def status_for(exc: ChatEngineError) -> int:
    if isinstance(exc, (MessageNotFound, SessionNotFound)):
        return 404
    if isinstance(exc, ContentError):
        return 400
    if isinstance(exc, ConfigurationError):
        return 422
    if isinstance(exc, ConcurrencyViolation):
        return 409
    if isinstance(exc, ProviderError):
        return 502
    return 500


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatEngineError)
    async def _chat_engine_error(request: Request, exc: ChatEngineError) -> JSONResponse:
        status = status_for(exc)
        if status == 500:
            logger.error("Request %s failed", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status,
            content={"detail": exc.user_message, "error": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Request %s failed", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Request failed", "error": "InternalError"})
