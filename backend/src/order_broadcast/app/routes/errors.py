"""Translate domain errors into HTTP responses."""

from fastapi import HTTPException

from order_broadcast.domain.errors import (
    BroadcastError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    RaceLostError,
    StaleQuoteError,
)

_STATUS_BY_ERROR = [
    (PreconditionError, 422),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (StaleQuoteError, 409),
    (RaceLostError, 409),
]


def to_http_exception(exc: BroadcastError) -> HTTPException:
    status_code = 400
    for error_class, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_class):
            status_code = code
            break
    detail = {"code": exc.code, "message": exc.message}
    current_status = getattr(exc, "current_status", None)
    if current_status:
        detail["current_status"] = current_status
    return HTTPException(status_code=status_code, detail=detail)
