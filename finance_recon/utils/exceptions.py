"""Common exception utilities for FastAPI routers."""

from typing import NoReturn

from fastapi import HTTPException, status

from finance_recon.services.errors import (
    AuthorizationError,
    BusinessRuleViolationError,
    DuplicateScanCancelledError,
    InvalidStateError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)

_DOMAIN_STATUS: dict[type[ReconciliationError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    BusinessRuleViolationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    DuplicateScanCancelledError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_unauthorized(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    ) from cause


def raise_for_domain_error(exc: ReconciliationError) -> NoReturn:
    """Translate a service error into an HTTP error with a stable code."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type in type(exc).__mro__:
        if error_type in _DOMAIN_STATUS:
            status_code = _DOMAIN_STATUS[error_type]
            break
    raise HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
    ) from exc
