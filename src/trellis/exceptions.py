"""
Domain exceptions raised by the service layer.

The API layer translates these into HTTP responses; the CLI and batch jobs
report them through the console.
"""


class TrellisError(Exception):
    """Base class for all Trellis domain errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TrellisError):
    """Input failed a business rule."""

    status_code = 400


class NotFoundError(TrellisError):
    """Requested record does not exist in the caller's scope."""

    status_code = 404


class PermissionDeniedError(TrellisError):
    """Caller is not allowed to perform the action."""

    status_code = 403


class PlanLimitError(PermissionDeniedError):
    """Action requires a higher plan or exceeds a plan limit."""


class ConflictError(TrellisError):
    status_code = 409


class AuthenticationError(TrellisError):
    """Missing or invalid credentials (cron secret, webhook signature)."""

    status_code = 401


class IntegrationError(TrellisError):
    """A third-party API (email, billing, LLM) failed."""

    status_code = 502


class AiResponseError(IntegrationError):
    """The LLM replied with something that could not be parsed."""

    status_code = 500
