"""
Error taxonomy for the load generation and regression engine.

Only configuration and aggregation errors abort a run. Request level errors
are classified and recorded as failed samples, and comparison errors are
logged and skipped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from surgecore.protocols import ErrorCategory


class SurgeCoreError(Exception):
    """Base class for all surgecore errors."""


class ConfigurationError(SurgeCoreError):
    """Malformed test definition or engine configuration. The test never starts."""


class CapacityError(SurgeCoreError):
    """No worker was free and the request could not be queued.

    Raised under the reject policy, or under the queue policy once the sub-pool queue is full.
    """

    def __init__(self, pool: str, capacity: int) -> None:
        super().__init__(f"Worker pool '{pool}' exhausted (capacity={capacity})")
        self.pool = pool
        self.capacity = capacity


class RequestError(SurgeCoreError):
    """A single request attempt failed: timeout, transport failure or unexpected status."""

    def __init__(self, category: ErrorCategory, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.category = category
        self.status = status


class AggregationError(SurgeCoreError):
    """Internal invariant violation inside the metrics collector."""


class ComparisonError(SurgeCoreError):
    """A current metric has no counterpart in the baseline."""

    def __init__(self, category: str, metric: str) -> None:
        super().__init__(f"Baseline has no value for {category}/{metric}")
        self.category = category
        self.metric = metric


class BaselineError(SurgeCoreError):
    """A baseline could not be stored or read, e.g. a version that already exists."""


class TestNotFoundError(SurgeCoreError, KeyError):
    """Unknown test identifier passed to the control surface."""

    __test__ = False

    def __init__(self, test_id: str) -> None:
        super().__init__(f"Unknown test: {test_id}")
        self.test_id = test_id

    def __str__(self) -> str:
        return f"Unknown test: {self.test_id}"
