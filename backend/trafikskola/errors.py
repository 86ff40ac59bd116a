# backend/trafikskola/errors.py
"""
Error rendering.

Every error leaves the API as ``{"error": <message>, "code": <code>, ...}``;
booking rejections add their flags (``conflict``, ``userExists``, ...) at
the top level. Unhandled exceptions are logged and answered with a generic
500 that does not leak internals.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.enums import RejectionReason
from .core.exceptions import DomainException

logger = logging.getLogger(__name__)


def _title_from_status(status_code: int) -> str:
    mapping = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        422: "Unprocessable Entity",
        429: "Too Many Requests",
        500: "Internal Server Error",
    }
    return mapping.get(status_code, "Error")


def _payload_from_detail(status_code: int, detail: Any) -> Dict[str, Any]:
    if isinstance(detail, dict):
        payload = dict(detail)
        message = payload.pop("message", None)
        payload.setdefault("error", message or _title_from_status(status_code))
        payload.setdefault("code", _title_from_status(status_code).lower().replace(" ", "-"))
        return payload
    return {
        "error": detail if isinstance(detail, str) and detail else _title_from_status(status_code),
        "code": _title_from_status(status_code).lower().replace(" ", "-"),
    }


def _validation_code(errors: list) -> Optional[str]:
    if errors and all(err.get("type") == "missing" for err in errors):
        return RejectionReason.MISSING_FIELDS.value
    return None


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"Service error on {request.url.path}: {exc.message}",
                extra={"code": exc.code},
            )
        return JSONResponse(jsonable_encoder(exc.to_payload()), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            jsonable_encoder(_payload_from_detail(exc.status_code, exc.detail)),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        return JSONResponse(
            {
                "error": "Invalid request",
                "code": _validation_code(errors) or "invalid-request",
                "details": jsonable_encoder(errors),
            },
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            {"error": "An error occurred processing your request", "code": "internal-error"},
            status_code=500,
        )
