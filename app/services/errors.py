"""
Error taxonomy shared by the matching core.

Routes translate these into HTTP responses; the dispatch pipeline recovers
TransientChannelError locally and records ExhaustionError on the job.
"""


class MatchServiceError(Exception):
    """Base exception for matching, offer and dispatch operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ValidationError(MatchServiceError):
    """Malformed input rejected before any state change."""


class InvalidCoordinate(ValidationError):
    """Latitude/longitude outside the valid range."""

    def __init__(self, latitude, longitude, operation: str | None = None):
        super().__init__(
            f"Invalid coordinates: latitude={latitude}, longitude={longitude}",
            operation=operation,
        )
        self.latitude = latitude
        self.longitude = longitude


class NotFoundError(MatchServiceError):
    """Unknown request, offer or donor id."""


class PermissionDenied(MatchServiceError):
    """Caller does not own the resource it tried to act on."""


class ConflictError(MatchServiceError):
    """Illegal state transition on a request or offer."""


class RequestAlreadyFulfilled(ConflictError):
    """The blood request already has an accepted offer."""


class DuplicateOffer(ConflictError):
    """The donor already has a pending or accepted offer on the request."""


class OfferNotPending(ConflictError):
    """The offer already reached a terminal status."""


class TransientChannelError(MatchServiceError):
    """Delivery or collaborator failure that is worth retrying."""


class ExhaustionError(MatchServiceError):
    """A dispatch job failed on every allowed attempt."""

    def __init__(self, job_id: str, attempts: int, last_error: str | None = None):
        super().__init__(
            f"Job {job_id} exhausted after {attempts} attempts: {last_error or 'unknown error'}",
            operation="dispatch",
            recoverable=False,
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
