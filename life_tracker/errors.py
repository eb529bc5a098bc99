class LifeTrackerError(Exception):
    """Base class for errors raised by life_tracker."""


class ValidationError(LifeTrackerError):
    """Input that cannot be processed (empty text, unknown period, bad file)."""


class ImportBackupError(LifeTrackerError):
    """The pre-import backup could not be written, so nothing was imported."""


class RollbackError(LifeTrackerError):
    """A backup is missing or has no imported rows to remove."""


class LLMError(LifeTrackerError):
    """The LLM backend is misconfigured or returned nothing usable."""
