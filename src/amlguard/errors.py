"""
Exceptions raised by the detection engine.

Only RecordValidationError and OperationCancelled ever reach callers of the
engine; the others are raised and handled inside detectors.
"""

from typing import Optional


class AMLGuardError(Exception):
    """Base class for engine errors."""


class RecordValidationError(AMLGuardError):
    """Raised when an input record cannot be analyzed."""

    def __init__(self, record_id: str, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"{record_id}: {reason}")


class InsufficientDataError(AMLGuardError):
    """Raised when a sub-check has fewer samples than it needs."""

    def __init__(self, check: str, required: int, available: int):
        self.check = check
        self.required = required
        self.available = available
        super().__init__(f"{check} needs {required} samples, got {available}")


class DeduplicationConflict(AMLGuardError):
    """Raised when an alert with the same key already exists."""

    def __init__(self, key: str, existing_alert_id: Optional[str] = None):
        self.key = key
        self.existing_alert_id = existing_alert_id
        super().__init__(f"Alert already exists for {key}")


class OperationCancelled(AMLGuardError):
    """Raised when a run is cancelled or exceeds its deadline."""
