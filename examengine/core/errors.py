"""
Engine error taxonomy.

Every failure the lifecycle manager reports is one of these. The API layer maps
them to HTTP responses through the handlers registered in ``examengine.main``.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for errors reported synchronously to the caller."""

    status_code: int = 400
    error_type: str = "engine_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"message": self.message, "type": self.error_type, "status_code": self.status_code}
        body.update(self.extra)
        return body


class ConflictError(EngineError):
    """An open session already exists for this candidate and configuration."""

    status_code = 409
    error_type = "conflict"

    def __init__(self, message: str, session_id: Optional[int] = None, **extra: Any):
        if session_id is not None:
            extra["session_id"] = session_id
        super().__init__(message, **extra)
        self.session_id = session_id


class SessionFinishedError(ConflictError):
    """Mutation attempted on a session that is already FINISHED."""

    error_type = "session_finished"


class ExpiredError(EngineError):
    """The session ran out of time. The session is finalized when this is raised."""

    status_code = 410
    error_type = "expired"


class NotFoundError(EngineError):
    status_code = 404
    error_type = "not_found"


class ForbiddenError(EngineError):
    status_code = 403
    error_type = "forbidden"


class InvalidInputError(EngineError):
    status_code = 400
    error_type = "invalid_input"


class InsufficientInventoryError(EngineError):
    status_code = 422
    error_type = "insufficient_inventory"

    def __init__(self, message: str, requested: int, available: int, **extra: Any):
        super().__init__(message, requested=requested, available=available, **extra)
        self.requested = requested
        self.available = available
