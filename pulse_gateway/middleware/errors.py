from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pulse_gateway.models.errors import GatewayError, InvalidRequestError, RateLimitError
from pulse_gateway.utils.redaction import redact_secrets

logger = logging.getLogger(__name__)


def serialize_error(exc: GatewayError) -> dict[str, object]:
    body: dict[str, object] = {
        "message": exc.message,
        "type": exc.error_type,
        "param": getattr(exc, "param", None),
        "code": getattr(exc, "code", None),
    }
    body.update(exc.details())
    return {"error": body}


def error_headers(exc: GatewayError) -> dict[str, str]:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitError) and getattr(exc, "retry_after", None):
        headers["Retry-After"] = str(exc.retry_after)
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=serialize_error(exc), headers=error_headers(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = [str(part) for part in first.get("loc", ()) if part != "body"]
        error = InvalidRequestError(
            message=redact_secrets(first.get("msg") or "Invalid request body"),
            param=".".join(location) or None,
        )
        return JSONResponse(status_code=error.status_code, content=serialize_error(error))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled exception", exc_info=exc)
        error = GatewayError()
        return JSONResponse(status_code=error.status_code, content=serialize_error(error))
