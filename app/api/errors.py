"""Map workflow errors onto HTTP responses."""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.services.errors import (
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    NotificationError,
    PersistenceError,
    PreconditionError,
    StorageError,
    ValidationError,
    VerificationError,
    WebsiteCheckError,
)

STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    # Refusal - the work is not ready
    PreconditionError: 403,
    InvalidTokenError: 400,
    StorageError: 502,
    NotificationError: 502,
    WebsiteCheckError: 502,
    PersistenceError: 503,
}


def status_code_for(exc: VerificationError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return 500


async def verification_error_handler(request: Request, exc: VerificationError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "missing": getattr(exc, "missing", []),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(VerificationError, verification_error_handler)
