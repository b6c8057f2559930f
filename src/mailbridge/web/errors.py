"""Map mail-layer failures onto structured FastAPI error responses."""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import MailError

LOGGER = logging.getLogger(__name__)


def error_response(exc: MailError) -> JSONResponse:
    """Render ``exc`` as ``{"error": {...}}`` with its mapped status code."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def _handle_mail_error(request: Request, exc: Exception) -> JSONResponse:
    error = cast(MailError, exc)
    if error.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, error)
    else:
        LOGGER.info("%s %s rejected: %s", request.method, request.url.path, error)
    return error_response(error)


def install_exception_handlers(app: FastAPI) -> None:
    """Register the handler for every :class:`MailError` subclass."""
    app.add_exception_handler(MailError, _handle_mail_error)


__all__ = ["error_response", "install_exception_handlers"]
