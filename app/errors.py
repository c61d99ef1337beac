# app/errors.py

"""
Error taxonomy for the reconciliation engine.

- StructuralError: a single extracted record can't be normalized. The record
  is skipped and reported as a warning; the run carries on.
- ConfigurationError / CapacityError: the whole run aborts before anything
  is written.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for every engine error."""


class StructuralError(ReconciliationError):
    """A field of an extracted record couldn't be parsed."""

    code = "structural_error"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        raw_value: object = None,
        record_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.raw_value = raw_value
        self.record_id = record_id


class InvalidAmount(StructuralError):
    code = "invalid_amount"


class InvalidDate(StructuralError):
    code = "invalid_date"


class InvalidDocument(StructuralError):
    code = "invalid_document"


class ConfigurationError(ReconciliationError):
    """Thresholds or weights are inconsistent. Raised before any matching starts."""


class CapacityError(ReconciliationError):
    """Input snapshot is larger than the configured safety bound."""

    def __init__(self, message: str, size: int, limit: int):
        super().__init__(message)
        self.size = size
        self.limit = limit


class SessionNotFound(ReconciliationError):
    """No stored result exists for the session."""


class InvalidTransition(ReconciliationError):
    """A review action isn't allowed from the match's current status."""


class MatchNotFound(ReconciliationError):
    """The session's stored result has no match with that ID."""
