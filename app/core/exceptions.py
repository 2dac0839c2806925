"""Domain errors raised by the service layer.

Services raise these and let them propagate; the exception handlers in
``app.main`` translate each one to an HTTP status code.
"""


class TaskboardError(Exception):
    """Base class for errors the API maps to a client-facing status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(TaskboardError):
    """Resource is absent, or the actor cannot even see it."""

    status_code = 404


class ForbiddenError(TaskboardError):
    """Resource is visible but the actor lacks the specific permission."""

    status_code = 403


class ValidationFailedError(TaskboardError):
    """Input is well-formed JSON but semantically invalid."""

    status_code = 400


class UnauthenticatedError(TaskboardError):
    """Missing, invalid or expired credential."""

    status_code = 401
