"""Error types for lab orchestration.

Orchestrators never let these escape to their caller: every failure is
converted into a terminal run outcome plus a log trail. The exception classes
exist so the individual steps can fail with a precise category, and so the
HTTP layer can report structured errors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories of errors for structured error handling."""
    # Input errors
    VALIDATION = "validation"  # Malformed topology, detected before side effects
    CREDENTIAL = "credential"  # Missing or declined admin credential

    # Execution errors
    EXTERNAL_PROCESS = "external_process"  # Provisioning script failed
    ARTIFACT_VALIDATION = "artifact_validation"  # Post-deploy disk check failed
    HYPERVISOR = "hypervisor"  # Management call failed

    # Coordination errors
    LAB_BUSY = "lab_busy"  # Another run holds the lab
    NOT_FOUND = "not_found"

    # Internal errors
    INTERNAL_ERROR = "internal_error"
    CONFIGURATION_ERROR = "configuration_error"


class LabError(Exception):
    """Base class for orchestration errors."""

    category = ErrorCategory.INTERNAL_ERROR


class ValidationError(LabError):
    """A topology field failed validation.

    Attributes:
        field: Dotted field name, e.g. "machines[2].name"
        value: The offending value
        reason: Human-readable reason
    """

    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {field}={value!r}")


class CredentialError(LabError):
    """No administrative credential was supplied."""

    category = ErrorCategory.CREDENTIAL


class ExternalProcessError(LabError):
    """An external executable exited non-zero or wrote to stderr."""

    category = ErrorCategory.EXTERNAL_PROCESS

    def __init__(self, message: str, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message)


class HypervisorError(LabError):
    """A hypervisor management call failed."""

    category = ErrorCategory.HYPERVISOR


class ArtifactValidationWarning(LabError):
    """Provisioning exited cleanly but disk artifacts look wrong.

    Not a hard failure: the run downgrades to "succeeded with warnings".
    """

    category = ErrorCategory.ARTIFACT_VALIDATION

    def __init__(self, vm_names: list[str]):
        self.vm_names = vm_names
        super().__init__(f"Disk artifacts failed validation for: {', '.join(vm_names)}")


class LockAcquisitionTimeout(LabError):
    """Raised when a lab's run lock cannot be acquired within timeout."""

    category = ErrorCategory.LAB_BUSY

    def __init__(self, lab_name: str, timeout: float):
        self.lab_name = lab_name
        self.timeout = timeout
        super().__init__(f"A run for lab {lab_name} is already in progress")


@dataclass
class StructuredError:
    """Structured error representation returned by the HTTP layer.

    Attributes:
        category: The error category for classification
        message: Human-readable error message
        details: Additional error details (e.g., exception info)
        lab_name: Lab involved (if applicable)
        run_id: Run involved (if applicable)
        timestamp: When the error occurred
        suggestions: List of suggested actions to resolve
    """
    category: ErrorCategory
    message: str
    details: str | None = None
    lab_name: str | None = None
    run_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "lab_name": self.lab_name,
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "suggestions": self.suggestions,
        }

    @classmethod
    def from_exception(cls, exc: LabError, **context: Any) -> StructuredError:
        """Build a structured error from a LabError."""
        suggestions = []
        if isinstance(exc, ValidationError):
            suggestions.append(f"Correct the value of '{exc.field}' and resubmit")
        elif isinstance(exc, LockAcquisitionTimeout):
            suggestions.append("Wait for the active run to finish or cancel it")
        return cls(
            category=exc.category,
            message=str(exc),
            suggestions=suggestions,
            **context,
        )
