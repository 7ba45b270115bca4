"""Map agreement engine errors onto HTTP responses."""

from fastapi import HTTPException, status

from sublease_platform.domain.exceptions import (
    AgreementError,
    ConcurrentModificationError,
    DependencyError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

STATUS_CODES: dict[type[AgreementError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    DependencyError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http(exc: AgreementError) -> HTTPException:
    """HTTPException carrying the error code, reason and (for transitions) current status."""
    code = STATUS_CODES.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=exc.to_dict())
