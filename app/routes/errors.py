"""
Translation of service errors into HTTP responses.
"""

from fastapi import HTTPException, status

from app.infrastructure.observability.logging import get_logger
from app.services.errors import (
    ConflictError,
    MatchServiceError,
    NotFoundError,
    PermissionDenied,
    TransientChannelError,
    ValidationError,
)

logger = get_logger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    # upstream provider failed or had no answer
    (TransientChannelError, status.HTTP_502_BAD_GATEWAY),
)


def to_http_exception(error: Exception, operation: str, **context) -> HTTPException:
    """Map a service error to an HTTPException; unknown errors are logged and become 500."""
    if isinstance(error, HTTPException):
        return error

    if isinstance(error, MatchServiceError):
        for error_type, status_code in _STATUS_BY_ERROR:
            if isinstance(error, error_type):
                logger.info(
                    "Request rejected",
                    operation=operation,
                    status_code=status_code,
                    error_type=type(error).__name__,
                    detail=str(error),
                    **context,
                )
                return HTTPException(status_code=status_code, detail=str(error))

    logger.error(
        "Unhandled error",
        operation=operation,
        error=str(error),
        error_type=type(error).__name__,
        **context,
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {operation.replace('_', ' ')}",
    )
