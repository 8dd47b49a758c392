"""
Domain exceptions shared by the storage layer, services and API handlers.
"""


class CopyTradeError(Exception):
    """Base exception for all domain failures"""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CopyTradeError):
    """Malformed input or a rule violation. Never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class RecordConflict(ValidationError):
    """A unique key already exists"""

    status_code = 409
    code = "CONFLICT"


class NotFound(CopyTradeError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransition(CopyTradeError):
    """A transition was requested from a state that does not allow it.

    The lifecycle turns this into an idempotent success, it never reaches
    an HTTP response.
    """

    status_code = 409
    code = "INVALID_TRANSITION"


class BackendUnavailable(CopyTradeError):
    """The relational store could not be reached or rejected the statement"""

    status_code = 503
    code = "BACKEND_UNAVAILABLE"


class StorageUnavailable(CopyTradeError):
    """Neither the relational store nor the JSON fallback accepted the write"""

    status_code = 503
    code = "STORAGE_UNAVAILABLE"
