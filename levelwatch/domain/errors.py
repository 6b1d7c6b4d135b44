"""
Error taxonomy for the water-level alarm service.

Validation errors (`InvalidReading`, `InvalidTrigger`) are reported
synchronously to the caller and never retried. I/O errors against the
durable log, the snapshot file or the notifier are caught at the adapter
boundary and surface only as flags in the returned outcome.
"""

from __future__ import annotations


class LevelwatchError(Exception):
    """Base class for all service errors."""


class InvalidReading(LevelwatchError):
    """Water level is missing or not a finite number, or the sensor reports a fault."""

    def __init__(self, message: str, details: object = None):
        super().__init__(message)
        self.details = details


class InvalidTrigger(LevelwatchError):
    """Trigger level is not a finite number inside the allowed bounds."""


class LogUnavailable(LevelwatchError):
    """Durable log append failed after the single reinit-and-retry."""


class StaleHandleError(LevelwatchError):
    """Backend document/worksheet handle must be reloaded before use."""


class SnapshotWriteFailed(LevelwatchError):
    """Local snapshot could not be written."""


class RestoreSkipped(LevelwatchError):
    """No prior log data to restore from. Informational."""


class ConfigError(LevelwatchError):
    """Configuration is missing a required value or is malformed."""
