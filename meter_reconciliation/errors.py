from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class ConfigurationError(ReconciliationError, ValueError):
    """A tariff, hierarchy, or layout definition cannot be evaluated."""


class StoreWriteError(ReconciliationError):
    """A batch insert failed; earlier batches of the same call were kept."""

    def __init__(self, message: str, inserted_before_failure: int) -> None:
        super().__init__(message)
        self.inserted_before_failure = inserted_before_failure


class SystemicError(ReconciliationError):
    """A failure that makes continuing the current run pointless."""


class StoreUnavailableError(SystemicError):
    """The reading store cannot be reached."""


class UnreadableFileError(ReconciliationError):
    """An uploaded file could not be opened as CSV or a workbook."""
