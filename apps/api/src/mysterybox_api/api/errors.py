"""Translate box engine errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from mysterybox_api.services.boxes.errors import (
    BoxAlreadyOpenedError,
    BoxEngineError,
    BoxExpiredError,
    BoxNotFoundError,
    BoxNotOwnedError,
    BoxNotProcessableError,
    CatalogMisconfiguredError,
    InsufficientCreditError,
    InvalidTierError,
    MemberNotFoundError,
    RewardNotFoundError,
    TransientConflictError,
    ValidationFailedError,
)

_STATUS_BY_ERROR: dict[type[BoxEngineError], int] = {
    InvalidTierError: status.HTTP_400_BAD_REQUEST,
    InsufficientCreditError: status.HTTP_402_PAYMENT_REQUIRED,
    BoxNotOwnedError: status.HTTP_403_FORBIDDEN,
    BoxNotFoundError: status.HTTP_404_NOT_FOUND,
    MemberNotFoundError: status.HTTP_404_NOT_FOUND,
    RewardNotFoundError: status.HTTP_404_NOT_FOUND,
    BoxAlreadyOpenedError: status.HTTP_409_CONFLICT,
    BoxNotProcessableError: status.HTTP_409_CONFLICT,
    BoxExpiredError: status.HTTP_410_GONE,
    ValidationFailedError: 422,
    CatalogMisconfiguredError: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransientConflictError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(error: BoxEngineError) -> HTTPException:
    """Body is ``{"code", "message", **details}``; the message is user-presentable."""

    status_code = _STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST)
    headers = {"Retry-After": "1"} if isinstance(error, TransientConflictError) else None
    return HTTPException(
        status_code=status_code,
        detail={"code": error.code, "message": str(error), **error.details()},
        headers=headers,
    )


__all__ = ["to_http_exception"]
