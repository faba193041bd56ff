"""Custom exceptions for the MPI mediator."""

from typing import Any


class MediatorError(Exception):
    """Base exception for mediator errors."""

    pass


class ConfigError(MediatorError):
    """Required configuration is missing or invalid."""

    pass


class AuthError(MediatorError):
    """OAuth2 token exchange or refresh failed."""

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class ValidationError(MediatorError):
    """Bundle was rejected by the datastore's $validate operation."""

    def __init__(self, message: str, status: int, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class UpstreamError(MediatorError):
    """Unexpected status, transport failure or timeout from an upstream."""

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class MissingIdError(MediatorError):
    """MPI response lacks the patient id needed to link a bundle entry."""

    pass


class PublishError(MediatorError):
    """Event queue unavailable or rejected the message."""

    pass


def error_status(error: MediatorError) -> int:
    """HTTP status reported for an error: its own status, else 502 for upstream
    failures and 500 for everything else."""
    status = getattr(error, "status", None)
    if status:
        return status
    if isinstance(error, UpstreamError):
        return 502
    return 500


def error_body(error: MediatorError) -> Any:
    """Upstream body carried by an error, else ``{"error": <message>}``."""
    body = getattr(error, "body", None)
    return body if body is not None else {"error": str(error)}
