"""Custom exception classes.

Four kinds of failure are distinguished:

- validation errors: bad identifiers or out-of-range inputs, raised before
  any store access and never retried
- store-unavailable errors: connectivity or timeout failures, recovered
  locally by the component that hit them
- script-execution errors: an atomic script did not run; the caller treats
  the operation as having had no effect
- data corruption: a stored value has an unexpected shape; treated as absent
"""

from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Validation error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{message}: {identifier}"
        super().__init__(message, {"resource": resource, "id": identifier})


class StoreUnavailableError(AppException):
    """The key-value store could not be reached or timed out."""

    def __init__(self, operation: str, message: str = "Store unavailable"):
        super().__init__(f"{message} during {operation}", {"operation": operation})


class ScriptExecutionError(AppException):
    """An atomic script failed; no mutation is assumed to have happened."""

    def __init__(self, script: str, message: str = "Script execution failed"):
        super().__init__(f"{message}: {script}", {"script": script})


class DataCorruptionError(AppException):
    """A stored value did not match the expected structure."""

    def __init__(self, kind: str, message: str = "Malformed stored value"):
        super().__init__(f"{message} ({kind})", {"kind": kind})


class RateLimitError(AppException):
    """Rate limit exceeded."""

    def __init__(self, retry_after: int = 60):
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            {"retry_after": retry_after},
        )
        self.retry_after = retry_after
