"""Error taxonomy for SignFlow operations.

Every failure a caller can act on maps to one of five kinds. The REST
layer turns ``status_code`` into the HTTP status; the CLI and MCP server
print the message.
"""

from typing import Optional


class SignFlowError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(SignFlowError):
    """A document, field, request or token does not exist."""

    status_code = 404


class ForbiddenError(SignFlowError):
    """The caller is not allowed to perform this action now."""

    status_code = 403


class ConflictError(SignFlowError):
    """The target is in a state that does not allow this action."""

    status_code = 409


class GoneError(SignFlowError):
    """The signing request has expired."""

    status_code = 410


class ValidationError(SignFlowError):
    """Input or preconditions are invalid.

    Args:
        message: Human-readable explanation.
        count: Number of offending items, when one applies
            (e.g. unfilled required fields).
    """

    status_code = 400

    def __init__(self, message: str, count: Optional[int] = None) -> None:
        super().__init__(message)
        self.count = count
