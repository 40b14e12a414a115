from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import CreditError, InvalidInputError, http_status_for, sanitize_error


logger = logging.getLogger(__name__)


def error_response(exc: object, status_code: int | None = None) -> JSONResponse:
    body = sanitize_error(exc)
    return JSONResponse(
        status_code=status_code or http_status_for(exc),
        content=body.model_dump(),
    )


def install_error_handlers(app: FastAPI) -> None:
    """Every failure leaves the service as a sanitized `{error, code}` body."""

    @app.exception_handler(CreditError)
    async def credit_error_handler(request: Request, exc: CreditError) -> JSONResponse:
        status_code = http_status_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "%s on %s: %s",
            type(exc).__name__,
            request.url.path,
            exc,
            extra={"code": exc.code, "details": exc.details},
        )
        return error_response(exc, status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Rejected request to %s: %s", request.url.path, exc.errors())
        return error_response(InvalidInputError())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unexpected error on %s", request.url.path, exc_info=exc)
        return error_response(exc, 500)
