"""
API error types and the FastAPI handlers that render them.

Every error response has the shape {status, message, error: {statusCode, status}}.
Non-production responses for unexpected errors also carry the stack.
"""
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str = "Something went wrong", status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def status(self) -> str:
        return "fail" if str(self.status_code).startswith("4") else "error"


class ValidationError(ApiError):
    status_code = 400

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message)


class Unauthorized(ApiError):
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class Forbidden(ApiError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFound(ApiError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


def _body(status_code: int, status: str, message: str) -> dict:
    return {
        "status": status,
        "message": message,
        "error": {"statusCode": status_code, "status": status},
    }


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form"))
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request"


def register_error_handlers(app: FastAPI, debug: bool):
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
        elif not debug:
            logger.warning("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_body(exc.status_code, exc.status, exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=_body(400, "fail", _describe_validation(exc)))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        status = "fail" if exc.status_code < 500 else "error"
        return JSONResponse(status_code=exc.status_code, content=_body(exc.status_code, status, str(exc.detail)))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        if not debug:
            return JSONResponse(status_code=500, content=_body(500, "error", "Something went wrong"))
        content = _body(500, "error", str(exc) or "Something went wrong")
        content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=content)
