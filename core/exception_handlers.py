import logging
from typing import Iterable

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import TrackingError, ValidationError
from .response import error as resp_error

logger = logging.getLogger(__name__)


def summarize_validation_errors(errors: Iterable[dict]) -> str:
    """
    One-line description of pydantic errors.
    Only `loc` and `msg` are used: the rejected `input` may hold NaN/inf, which JSON cannot carry.
    """
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts) or "Invalid payload"


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(TrackingError)
    async def tracking_exception_handler(request: Request, exc: TrackingError):
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=resp_error(code=exc.code, message=exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = summarize_validation_errors(exc.errors())
        logger.info("%s %s rejected: %s", request.method, request.url.path, message)
        return JSONResponse(status_code=422, content=resp_error(code=ValidationError.code, message=message))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content=resp_error(code=str(exc.status_code), message=str(exc.detail)))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=resp_error(code="internal_error", message="Internal server error"))
