"""Typed failures raised by the visualization pipeline."""
from __future__ import annotations


class VizError(Exception):
    """Base class for pipeline failures that reach a caller."""


class AggregateUnavailable(VizError):
    """An aggregate relation could not be queried.

    Distinct from an empty result: the relation exists but the read failed,
    so the caller may retry instead of rendering an empty scene.
    """
    def __init__(self, relation: str, message: str = "", retryable: bool = True):
        super().__init__(message or f"Aggregate relation {relation!r} is unavailable")
        self.relation = relation
        self.retryable = retryable


class ThemeValidationError(VizError, ValueError):
    """A theme document or compound key expression is malformed."""


class RelationNotPopulated(VizError):
    """A concurrent refresh was requested for a relation that holds no rows yet."""
    def __init__(self, relation: str):
        super().__init__(
            f"Relation {relation!r} has no rows; run a blocking refresh first"
        )
        self.relation = relation


class RefreshTimeout(VizError):
    """A single relation refresh exceeded its timeout."""
    def __init__(self, relation: str, timeout: float):
        super().__init__(f"Refresh of {relation!r} exceeded {timeout:g}s")
        self.relation = relation
        self.timeout = timeout


class RefreshCancelled(VizError):
    """A relation refresh was cancelled before commit and rolled back."""
