"""
Dunning system exceptions.

Custom exceptions for dunning operations with clear error messages.
Every error carries a machine-readable code, context and a recovery hint.
"""

from typing import Any


class DunningError(Exception):
    """
    Base dunning error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "DUNNING_ERROR"
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class DunningConfigurationError(DunningError):
    """Invalid dunning configuration. Fatal, never retried."""

    def __init__(
        self,
        message: str,
        sequence_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        if sequence_id:
            context["sequence_id"] = sequence_id

        super().__init__(
            message,
            "DUNNING_CONFIGURATION_ERROR",
            context=context,
            recovery_hint="Fix the dunning sequence configuration and restart the service",
        )


class SequenceNotFoundError(DunningError):
    """Dunning sequence not registered in the catalog."""

    def __init__(self, message: str, sequence_id: str) -> None:
        super().__init__(
            message,
            "SEQUENCE_NOT_FOUND",
            context={"sequence_id": sequence_id},
            recovery_hint="Register the sequence in the manager configuration",
        )


class DuplicateActiveDunningError(DunningError):
    """A customer already has an active dunning process."""

    def __init__(self, message: str, customer_id: str, existing_state_id: str) -> None:
        super().__init__(
            message,
            "DUPLICATE_ACTIVE_DUNNING",
            context={"customer_id": customer_id, "existing_state_id": existing_state_id},
            recovery_hint="Add the failure to the existing process instead of starting a new one",
        )
