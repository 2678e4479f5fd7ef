"""Error taxonomy for the progression engine.

Every error carries a stable ``code`` so callers (HTTP handlers, the
stream consumer, ``ProgressionOutcome.failures``) can report it without
matching on message text.
"""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for all engine errors."""

    code = "progression_error"


class ValidationError(ProgressionError):
    """Malformed input: missing user, disallowed negative delta, bad value."""

    code = "validation_error"


class NotFound(ProgressionError):
    """The referenced user or aggregate does not exist."""

    code = "not_found"


class AlreadyExists(ProgressionError):
    """Duplicate companion unlock or a lost streak-row creation race."""

    code = "already_exists"


class OutOfOrderEvent(ProgressionError):
    """Activity timestamp falls on a day before the stored last activity."""

    code = "out_of_order_event"


class AggregationInProgress(ProgressionError):
    """Another recompute of the same ranking bucket is running."""

    code = "aggregation_in_progress"
