"""
CandleScan — Global Exception Handlers

Consistent, structured error responses for the entire API. Domain errors
map to status codes here so routes never translate them by hand:

  ConfigurationError   → 400
  DataQualityError     → 422
  TransientStoreError  → 503
"""

from __future__ import annotations

import traceback

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from candlescan.errors import ConfigurationError, DataQualityError, TransientStoreError

log = structlog.get_logger(__name__)


def _error_body(status_code: int, detail, **extra) -> dict:
    return {"error": True, "status_code": status_code, "detail": detail, **extra}


def register_error_handlers(app: FastAPI) -> None:
    """Attach the status-code mapping for domain and framework errors."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.status_code, exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Request body or query failed validation → 422 listing each field."""
        errors = [
            {
                "field": " → ".join(str(loc) for loc in err.get("loc", [])),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        log.warning("validation_error", path=str(request.url.path), errors=errors)
        return JSONResponse(status_code=422, content=_error_body(422, "Validation error", errors=errors))

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        log.info("request.rejected", path=str(request.url.path), error=str(exc))
        return JSONResponse(status_code=400, content=_error_body(400, str(exc)))

    @app.exception_handler(DataQualityError)
    async def data_quality_error_handler(request: Request, exc: DataQualityError):
        log.warning("request.bad_data", path=str(request.url.path), error=str(exc))
        return JSONResponse(status_code=422, content=_error_body(422, str(exc)))

    @app.exception_handler(TransientStoreError)
    async def transient_error_handler(request: Request, exc: TransientStoreError):
        log.error("request.store_unavailable", path=str(request.url.path), operation=exc.operation, error=exc.detail)
        return JSONResponse(
            status_code=503,
            content=_error_body(503, "Storage temporarily unavailable", operation=exc.operation),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Anything unmapped → 500; the traceback goes to the log only."""
        log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(status_code=500, content=_error_body(500, "Internal server error"))
