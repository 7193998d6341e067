import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

ALREADY_RESOLVED_MESSAGE = "A response has already been submitted. Only one response is allowed per entry."


class AppException(Exception):
    kind = "AppError"

    def __init__(self, message: str, status_code: int = 400, extra: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.extra = extra or {}
        super().__init__(message)


class NotFoundError(AppException):
    kind = "NotFound"

    def __init__(self, message: str = "Not found", extra: dict | None = None):
        super().__init__(message, status_code=404, extra=extra)


class AlreadyResolvedError(AppException):
    kind = "AlreadyResolved"

    def __init__(self, message: str = ALREADY_RESOLVED_MESSAGE, extra: dict | None = None):
        super().__init__(message, status_code=409, extra=extra)


class OutsideValidityWindowError(AppException):
    """Raised when a check-in code is used outside its start/expiry window.

    ``reason`` is ``not_yet_valid`` or ``expired``; both boundary times are
    carried pre-formatted in 12-hour local time.
    """

    kind = "OutsideValidityWindow"

    def __init__(self, message: str, reason: str, valid_from: str | None, valid_until: str):
        self.reason = reason
        self.valid_from = valid_from
        self.valid_until = valid_until
        super().__init__(
            message,
            status_code=403,
            extra={"reason": reason, "validFrom": valid_from, "validUntil": valid_until},
        )


class CodeExhaustedError(AppException):
    kind = "CodeExhausted"

    def __init__(self, message: str = "No check-in code is available for this society"):
        super().__init__(message, status_code=503)


class InvalidTransitionError(AppException):
    kind = "InvalidTransition"

    def __init__(self, message: str, extra: dict | None = None):
        super().__init__(message, status_code=409, extra=extra)


class DependencyFailureError(AppException):
    kind = "DependencyFailure"

    def __init__(self, message: str = "A backing service is unavailable"):
        super().__init__(message, status_code=503)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def _app_exception_handler(_: Request, exc: AppException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.message, "kind": exc.kind, **exc.extra},
        )

    @app.exception_handler(SQLAlchemyError)
    async def _storage_exception_handler(_: Request, exc: SQLAlchemyError):
        logger.exception("storage failure: %s", exc.__class__.__name__)
        failure = DependencyFailureError("Storage is unavailable")
        return JSONResponse(
            status_code=failure.status_code,
            content={"message": failure.message, "kind": failure.kind},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(_: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content={"message": "Internal server error", "detail": str(exc)},
        )
