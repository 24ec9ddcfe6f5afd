from __future__ import annotations

from typing import Any


class CLIError(Exception):
    """
    A failure the CLI reports itself.

    Subclasses pick the exit code and the `error.type` of the JSON envelope.
    """

    exit_code = 1
    error_type = "error"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details


class CLIUsageError(CLIError):
    """Bad flags, arguments or missing configuration (exit 2)."""

    exit_code = 2
    error_type = "usage_error"


class OptionalDependencyError(CLIUsageError):
    """An opt-in feature needs a package that is not installed."""


def usage_error(message: str, *, hint: str | None = None) -> CLIUsageError:
    return CLIUsageError(message, hint=hint)
