"""
Error types for the toolkit upgrade procedure.

This module defines the UpgradeError base class and its subclasses. Failures are
expressed with these types and converted to a FATAL upgrade outcome at the
orchestrator boundary. An operator declining a prompt is not an error and is
never raised as one.
"""

from __future__ import annotations

from typing import Any


class UpgradeError(Exception):
    """
    Base exception class for upgrade failures.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_config",
            "collaborator_failed", "unacknowledged_risk", "internal").
        message: Human-readable error message, shown to the operator verbatim.
        details: Optional structured details (e.g., the offending version text).

    Example:
        >>> raise UpgradeError(
        ...     error_code="invalid_config",
        ...     message="Invalid version in config/version: '5.0'",
        ...     details={"version": "5.0"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpgradeError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(UpgradeError):
    """
    Error raised when deployment configuration is unusable.

    Covers malformed version strings and missing version records. The run
    aborts immediately; nothing is retried.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConfigError."""
        super().__init__(error_code="invalid_config", message=message, details=details)


class CollaboratorError(UpgradeError):
    """
    Error raised when an external command (git, docker) fails.

    The command's own output is carried in the message unchanged.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CollaboratorError."""
        super().__init__(
            error_code="collaborator_failed", message=message, details=details
        )


class UnacknowledgedRiskError(UpgradeError):
    """Error raised when the operator does not acknowledge a retracted version."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnacknowledgedRiskError."""
        super().__init__(
            error_code="unacknowledged_risk", message=message, details=details
        )


class InternalError(UpgradeError):
    """
    Error raised for unexpected internal errors.

    Used for programming errors such as an out-of-order stage transition.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
