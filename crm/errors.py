import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


class ValidationError(HTTPException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=400, detail=detail)


class AuthError(HTTPException):
    def __init__(self, detail: str = "Authentication required", status_code: int = 401):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str, code: str = "CONCURRENT_UPDATE"):
        super().__init__(status_code=409, detail=detail)
        self.code = code


class DuplicateEntryError(HTTPException):
    def __init__(self, detail: str = "Duplicate entry"):
        super().__init__(status_code=400, detail=detail)


class InvalidReferenceError(HTTPException):
    def __init__(self, detail: str = "Referenced record does not exist"):
        super().__init__(status_code=400, detail=detail)


class UnsupportedFormatError(ValidationError):
    pass


class EmptyFileError(ValidationError):
    pass


class PayloadTooLargeError(HTTPException):
    def __init__(self, detail: str = "Payload too large"):
        super().__init__(status_code=413, detail=detail)


class ServerError(HTTPException):
    def __init__(self, detail: str = "Server error"):
        super().__init__(status_code=500, detail=detail)


def translate_db_error(exc: SQLAlchemyError, action: str) -> HTTPException:
    """Map a database exception raised while doing ``action`` to an API error."""
    if isinstance(exc, IntegrityError):
        pgcode = getattr(exc.orig, "pgcode", None)
        message = str(exc.orig).lower()
        if pgcode == UNIQUE_VIOLATION or "unique" in message:
            return DuplicateEntryError(f"Could not {action}: duplicate entry.")
        if pgcode == FOREIGN_KEY_VIOLATION or "foreign key" in message:
            return InvalidReferenceError(f"Could not {action}: referenced record does not exist.")
        return ValidationError(f"Could not {action}. Check field values.")
    if isinstance(exc, DataError):
        return ValidationError(f"Could not {action}. Check field values.")
    logger.exception("Unexpected database error while trying to %s", action)
    return ServerError(f"Unexpected server error while trying to {action}.")


async def conflict_error_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"detail": "; ".join(errors) or "Invalid request"})
