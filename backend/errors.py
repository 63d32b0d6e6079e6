"""
Domain errors for the WBS engine.

Every error is terminal for the operation that raised it and is surfaced to
the caller unchanged. The HTTP layer maps each class to a status code via
the ``status_code`` attribute; batch operations report ``code`` per item.
"""


class WBSError(Exception):
    """Base class for all engine errors."""

    code = "ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(WBSError):
    """Referenced task, dependency or project is missing or soft-deleted."""

    code = "NOT_FOUND"
    status_code = 404


class ValidationError(WBSError):
    """Input is structurally invalid (range, self-reference, empty batch, non-leaf progress)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ConflictError(WBSError):
    """Version mismatch or duplicate dependency tuple."""

    code = "CONFLICT"
    status_code = 409


class CycleError(WBSError):
    """The hierarchy or the dependency graph would contain a cycle."""

    code = "CYCLE"
    status_code = 409


class DepthExceeded(WBSError):
    """The hierarchy would exceed the configured maximum depth."""

    code = "DEPTH_EXCEEDED"
    status_code = 422


class PreconditionRequiredError(WBSError):
    """An expected-version token is required but was not supplied."""

    code = "PRECONDITION_REQUIRED"
    status_code = 428
