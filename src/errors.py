import logging
from typing import Any, Callable

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.requests import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base class for all errors raised by the export service."""
    pass


class UnAuthenticated(AppException):
    """No usable credentials were sent with the request."""
    pass


class InvalidToken(AppException):
    """The access token is expired or malformed."""
    pass


class ExportJobNotFound(AppException):
    """The export job does not exist or its status record has expired."""
    pass


class ExportAccessDenied(AppException):
    """The caller is not the owner of the export job (or of the data requested)."""
    pass


class ExportNotReady(AppException):
    """The export job has not completed, so there is nothing to download."""
    pass


class ExportGone(AppException):
    """The export completed but its archive is no longer on disk."""
    pass


class ExportJobError(AppException):
    """Fatal failure inside a running export. Recorded on the job, never raised to HTTP callers."""
    pass


class InvalidJobTransition(AppException):
    """Attempt to move an export job out of a terminal state."""
    pass


def create_exception_handler(
    status_code: int, initial_detail: Any
) -> Callable[[Request, Exception], JSONResponse]:

    async def exception_handler(request: Request, exc: AppException):
        return JSONResponse(content=initial_detail, status_code=status_code)

    return exception_handler


def register_all_errors(app: FastAPI):
    app.add_exception_handler(
        UnAuthenticated,
        create_exception_handler(
            status_code=status.HTTP_401_UNAUTHORIZED,
            initial_detail={
                "error": "User not authenticated",
                "error_code": "not_authenticated",
            },
        ),
    )

    app.add_exception_handler(
        InvalidToken,
        create_exception_handler(
            status_code=status.HTTP_401_UNAUTHORIZED,
            initial_detail={
                "error": "Token is invalid or expired",
                "error_code": "invalid_token",
            },
        ),
    )

    app.add_exception_handler(
        ExportJobNotFound,
        create_exception_handler(
            status_code=status.HTTP_404_NOT_FOUND,
            initial_detail={
                "error": "Export job not found",
                "error_code": "export_job_not_found",
            },
        ),
    )

    app.add_exception_handler(
        ExportAccessDenied,
        create_exception_handler(
            status_code=status.HTTP_403_FORBIDDEN,
            initial_detail={
                "error": "Cannot access another user's export",
                "error_code": "export_forbidden",
            },
        ),
    )

    app.add_exception_handler(
        ExportNotReady,
        create_exception_handler(
            status_code=status.HTTP_400_BAD_REQUEST,
            initial_detail={
                "error": "Export is not ready for download",
                "error_code": "export_not_ready",
            },
        ),
    )

    app.add_exception_handler(
        ExportGone,
        create_exception_handler(
            status_code=status.HTTP_410_GONE,
            initial_detail={
                "error": "Export file no longer exists",
                "error_code": "export_gone",
            },
        ),
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            content={
                "error": "Invalid request format",
                "error_code": "invalid_request",
                "detail": jsonable_errors(exc),
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(500)
    async def internal_server_error(request: Request, exc):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            content={
                "error": "Oops! Something went wrong",
                "error_code": "server_error",
            },
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
