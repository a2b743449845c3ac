"""
Error taxonomy shared by every component of the clinical gateway.

Each operation surfaces exactly one of these to its caller. Nothing here is
retried internally.
"""

from __future__ import annotations

from dataclasses import dataclass


class ClinicalGatewayError(Exception):
    """Base class for all errors raised by the clinical gateway."""


class ConfigurationError(ClinicalGatewayError):
    """Raised when settings or required collaborators are missing or invalid."""


class ValidationError(ClinicalGatewayError):
    """
    Raised for malformed caller input.

    Always raised before any network call is made.
    """


class AuthError(ClinicalGatewayError):
    """
    Raised when a bearer credential cannot be obtained or an OTP fails to verify.

    The attempted operation leaves no partial state behind.
    """


class StateError(ClinicalGatewayError):
    """Raised when an episode or encounter is in the wrong state for an operation."""


class ServerContractError(ClinicalGatewayError):
    """
    Raised when a response decodes as JSON but does not have the expected shape.

    Distinct from :class:`RemoteError`: the HTTP layer reported success while the
    payload is unusable.
    """


class RequestTimeoutError(ClinicalGatewayError, TimeoutError):
    """Raised when an operation is aborted after its deadline."""


@dataclass
class RemoteError(ClinicalGatewayError):
    """
    Raised when a remote service answers with a status above 299.

    :param status_code: HTTP status returned by the remote service, or ``0`` when no
        response was received.
    :param operation: Short name of the attempted operation, e.g. ``"create"``.
    :param text: Human-readable error text decoded from the remote error body.
    :param diagnostics: Diagnostics decoded from the remote error body.
    :param body: Raw response body, kept for diagnostics.
    """

    status_code: int
    operation: str
    text: str | None = None
    diagnostics: str | None = None
    body: str = ""

    def __str__(self) -> str:
        if self.text or self.diagnostics:
            return (
                f"{self.operation}: status {self.status_code}: "
                f"{self.text or ''}: {self.diagnostics or ''}"
            )
        return f"{self.operation}: status {self.status_code}: {self.body}"


class NotFoundError(RemoteError):
    """A :class:`RemoteError` for a resource that does not exist (status 404)."""


@dataclass
class ResponseParseError(ClinicalGatewayError):
    """
    Raised when a response body (success or error) cannot be decoded.

    :param operation: Short name of the attempted operation.
    :param status_code: HTTP status of the undecodable response.
    :param body: Raw response body.
    """

    operation: str
    status_code: int
    body: str = ""

    def __str__(self) -> str:
        return (
            f"{self.operation}: could not decode response with status "
            f"{self.status_code}: {self.body}"
        )
