"""
Scheduling error taxonomy.

Every failure the scheduling core reports to a caller is a SchedulingError
carrying a human-readable message, a machine-readable code and the HTTP
status the API layer answers with. Views only have to do:

    except SchedulingError as e:
        return Response({"detail": e.message, "code": e.code}, status=e.http_status)
"""

from rest_framework import status


class SchedulingError(Exception):
    """Base exception for scheduling failures."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message, code="scheduling_error"):
        self.message = message
        self.code = code
        super().__init__(self.message)

    def as_dict(self):
        return {"detail": self.message, "code": self.code}


class ValidationError(SchedulingError):
    """Malformed or out-of-range input (interval, rule, payload)."""

    def __init__(self, message="Invalid scheduling request.", code="invalid"):
        super().__init__(message, code=code)


class ConflictError(SchedulingError):
    """Raised when a candidate interval collides with a committed one."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message="This time slot conflicts with an existing commitment.", conflict_with=None):
        self.conflict_with = conflict_with
        super().__init__(message, code="conflict")

    def as_dict(self):
        data = super().as_dict()
        if self.conflict_with is not None:
            data["conflict_with"] = self.conflict_with.as_dict()
        return data


class CapacityExceededError(SchedulingError):
    """Raised when a group session is already full."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message="This session is full."):
        super().__init__(message, code="capacity_exceeded")


class AlreadyRegisteredError(SchedulingError):
    """Raised when the client already holds a live registration for the session."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message="You are already registered for this session."):
        super().__init__(message, code="already_registered")


class StateTransitionError(SchedulingError):
    """Raised when an action is not allowed from the entity's current status."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, current, attempted, message=None):
        self.current = current
        self.attempted = attempted
        if message is None:
            message = f"Cannot {attempted} from status {current}."
        super().__init__(message, code="invalid_transition")

    def as_dict(self):
        data = super().as_dict()
        data["current_status"] = self.current
        return data


class NotFoundError(SchedulingError):
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, message="Not found."):
        super().__init__(message, code="not_found")


class StorageUnavailableError(SchedulingError):
    """Persistence stayed unavailable after the bounded retries."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message="Scheduling storage is temporarily unavailable. Please retry."):
        super().__init__(message, code="storage_unavailable")
