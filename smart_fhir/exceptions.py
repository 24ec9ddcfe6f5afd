"""
Exception hierarchy for the FHIR client and the SMART launch helper.

Every error raised by the SDK derives from `FhirError`, so callers can catch a
single base class.
"""

from __future__ import annotations

from typing import Any


class FhirError(Exception):
    """Base class for all SDK errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Request building
# =============================================================================


class LinearizationError(FhirError, ValueError):
    """A query value has a type the linearizer cannot turn into a URL parameter."""

    def __init__(self, value_type: str) -> None:
        super().__init__(f"Could not linearize query value of type {value_type!r}")
        self.value_type = value_type


class MissingParameterError(FhirError):
    """A required URL path segment did not resolve against the request descriptor."""

    def __init__(self, expression: str, descriptor: dict[str, Any]) -> None:
        keys = ", ".join(sorted(str(k) for k in descriptor))
        super().__init__(
            f"Parameter {expression!r} is required to build the URL (descriptor keys: {keys})"
        )
        self.expression = expression
        self.descriptor = descriptor


class ContainedResourceNotFoundError(FhirError):
    """A `#id` reference did not match anything in the owning resource's `contained`."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Contained resource not found: {reference}")
        self.reference = reference


class MissingLinkError(FhirError):
    """A bundle has no navigation link for the requested relation."""

    def __init__(self, relation: str) -> None:
        super().__init__(f"No {relation} link found in bundle")
        self.relation = relation


class AdapterMisconfiguredError(FhirError):
    """The request descriptor reached the error trap without a `defer` collaborator."""


# =============================================================================
# Transport
# =============================================================================


class TransportError(FhirError):
    """
    Failure reported by the HTTP transport.

    Attributes:
        error: Underlying exception or message from the transport
        data: Decoded response body, when the server answered
        status: HTTP status code, when the server answered
        config: The request descriptor that was sent
    """

    def __init__(
        self,
        message: str,
        *,
        error: Any = None,
        data: Any = None,
        status: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.data = data
        self.status = status
        self.config = config if config is not None else {}


# =============================================================================
# SMART launch
# =============================================================================


class AuthorizationFlowError(FhirError):
    """The SMART/OAuth2 launch sequence could not be completed."""

    def __init__(self, message: str, *, detail: Any = None) -> None:
        super().__init__(message)
        self.detail = detail


# =============================================================================
# Observation helpers
# =============================================================================


class UnitConversionError(FhirError, ValueError):
    """A quantity carries a unit the converter does not recognize."""

    def __init__(self, kind: str, code: Any) -> None:
        super().__init__(f"Unrecognized {kind} unit: {code}")
        self.kind = kind
        self.code = code
