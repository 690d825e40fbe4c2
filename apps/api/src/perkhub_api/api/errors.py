"""Translate engine errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from perkhub_api.services.errors import (
    EngineError,
    IdentityUnresolvableError,
    InvalidStateError,
    MalformedEventError,
    NotFoundError,
    ThrottledError,
    TransactionConflictError,
)


def http_error_from(exc: EngineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"reason": "not_found", "entity": exc.entity, "message": str(exc)},
        )
    if isinstance(exc, InvalidStateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": exc.reason, "message": str(exc)},
        )
    if isinstance(exc, ThrottledError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "throttled", "nextAvailableAt": exc.next_available_at.isoformat()},
        )
    if isinstance(exc, IdentityUnresolvableError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"reason": "identity_unresolvable", "message": str(exc)},
        )
    if isinstance(exc, TransactionConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": "transaction_conflict", "message": exc.detail},
        )
    if isinstance(exc, MalformedEventError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": "malformed_event", "message": exc.detail},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
