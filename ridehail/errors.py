"""Categorised failures raised by the cancellation core.

Each category carries the HTTP status the transport maps it to. Handlers
registered by :func:`register_exception_handlers` render every failure in the
``{"success": false, "error": {"message": ...}}`` envelope.
"""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from .responses import error_body


class ServiceError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "not found"


class Forbidden(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "forbidden"


class BadRequest(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "bad request"


class Unauthorized(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "unauthorized"


class Internal(ServiceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "internal error"


class DuplicateCancellation(Exception):
    """A cancellation record already exists for the ride."""

    def __init__(self, ride_id):
        self.ride_id = ride_id
        super().__init__(f"cancellation already recorded for ride {ride_id}")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message))

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "request failed"
        return JSONResponse(status_code=exc.status_code, content=error_body(message), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error_body("invalid request body"))
