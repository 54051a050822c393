"""Error types and the HTTP error envelope."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class LiveActivityError(Exception):
    """Base class for errors raised by this service."""


class ValidationError(LiveActivityError):
    """Malformed registration or control request."""

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []


class StoreUnavailable(LiveActivityError):
    """The token database could not be reached."""


class PushGatewayError(LiveActivityError):
    """Hard gateway failure that is not tied to a single token."""


class FatalConfigurationError(PushGatewayError):
    """Push credentials are missing or rejected by the transport."""


class PayloadError(PushGatewayError):
    """The transport rejected the message itself."""


def _error_body(request: Request, message: str) -> dict:
    return {
        "success": False,
        "error": {"message": message},
        "timestamp": datetime.utcnow().isoformat(),
        "path": request.url.path,
    }


def _validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    details = []
    for err in exc.errors():
        details.append({
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        })
    return details


def register_exception_handlers(app: FastAPI):
    """Attach the JSON error envelope handlers to an app."""

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation failed",
                "details": _validation_details(exc),
            },
        )

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation failed",
                "details": exc.details or [{"field": "", "message": str(exc), "type": "value_error"}],
            },
        )

    @app.exception_handler(LiveActivityError)
    async def service_error_handler(request: Request, exc: LiveActivityError):
        logger.error(f"Request error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content=_error_body(request, str(exc)))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            message = f"Not Found - {request.url.path}"
        else:
            message = str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"Request error on {request.method} {request.url.path}: {exc}",
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content=_error_body(request, str(exc)))
