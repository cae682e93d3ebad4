"""Typed application errors.

Domain violations are raised as `AppError` subclasses carrying the HTTP
status and a machine-readable code; the FastAPI handlers in `main` render
them unchanged. Everything else is converted into `InternalError` by
`service_guard` so raw driver messages never reach a client.
"""

import enum
import functools
import logging

logger = logging.getLogger("schoollib.errors")


class ErrorCode(str, enum.Enum):
    GEN_INTERNAL_ERROR = "GEN-001"
    VAL_MISSING_REQUIRED_FIELD = "VAL-001"
    VAL_INVALID_FORMAT = "VAL-002"
    VAL_EXCEEDS_LIMIT = "VAL-003"
    RES_NOT_FOUND = "RES-001"
    RES_ALREADY_EXISTS = "RES-002"
    RES_CONFLICT = "RES-003"
    DB_QUERY_FAILED = "DB-002"


class AppError(Exception):
    status_code = 500
    default_code = ErrorCode.GEN_INTERNAL_ERROR

    def __init__(self, message: str, code: ErrorCode = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code.value}


class NotFoundError(AppError):
    status_code = 404
    default_code = ErrorCode.RES_NOT_FOUND


class ConflictError(AppError):
    status_code = 409
    default_code = ErrorCode.RES_CONFLICT


class BadRequestError(AppError):
    status_code = 400
    default_code = ErrorCode.VAL_INVALID_FORMAT


class InternalError(AppError):
    status_code = 500
    default_code = ErrorCode.GEN_INTERNAL_ERROR


def service_guard(message: str):
    """Let `AppError`s through, log and wrap anything else as `InternalError(message)`."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except AppError:
                raise
            except Exception as exc:
                logger.exception("%s in %s", message, fn.__qualname__)
                raise InternalError(message) from exc
        return wrapper
    return decorator
