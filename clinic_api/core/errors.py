from fastapi import status


class ClinicError(Exception):
    """Base class for errors surfaced to API callers.

    Every error carries a stable machine-readable ``code`` plus a human
    ``message``; ``status_code`` is the HTTP status the API layer maps it to.
    """

    code: str = "clinic_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ClinicError):
    """Referenced patient or appointment does not exist."""

    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class ConflictError(ClinicError):
    """Requested slot is already at capacity or outside business hours."""

    code = "slot_unavailable"
    status_code = status.HTTP_409_CONFLICT


class ValidationError(ClinicError):
    """Malformed input rejected before any availability check runs."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidTransitionError(ClinicError):
    """Status change not permitted from the appointment's current status."""

    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class RateLimitError(ClinicError):
    code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
