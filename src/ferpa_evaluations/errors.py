"""Custom exception classes for the evaluation privacy core.

Refusals (budget or k-anonymity) are expected outcomes that the service
turns into structured responses. Everything else is a real failure that
propagates to the caller.
"""

from datetime import datetime
from typing import List, Optional


class PrivacyRefusal(Exception):
    """Base class for expected refusals to release a statistic.

    Subclasses carry a stable ``reason`` code and, where the refusal is
    time-bounded, the instant at which the caller may retry.
    """

    reason: str = "refused"

    def __init__(self, message: str, resets_at: Optional[datetime] = None) -> None:
        self.resets_at = resets_at
        super().__init__(message)


class BudgetExhaustedError(PrivacyRefusal):
    """Raised when the active window has no epsilon or query slots left.

    The budget resets when the window ends; ``window_end`` tells the
    operator when that happens.
    """

    reason = "budget_exhausted"

    def __init__(self, window_end: datetime, queries_used: int, max_queries: int) -> None:
        self.window_end = window_end
        self.queries_used = queries_used
        self.max_queries = max_queries
        super().__init__(
            f"Privacy budget exhausted. {queries_used}/{max_queries} queries used. "
            f"Budget resets at {window_end.isoformat()}",
            resets_at=window_end,
        )


class InsufficientBudgetError(PrivacyRefusal):
    """Raised when a query asks for more epsilon than the window has left."""

    reason = "insufficient_budget"

    def __init__(self, remaining: float, requested: float, window_end: datetime) -> None:
        self.remaining = remaining
        self.requested = requested
        self.window_end = window_end
        super().__init__(
            f"Insufficient privacy budget. Remaining: {remaining:.2f}ε, "
            f"Required: {requested}ε. Budget resets at {window_end.isoformat()}",
            resets_at=window_end,
        )


class InsufficientDataError(PrivacyRefusal):
    """Raised when a cohort is smaller than the k-anonymity threshold.

    Not an error condition for the user: the statistic is withheld and
    shown as "not enough responses yet".
    """

    reason = "insufficient_data"

    def __init__(self, group_size: int, k: int) -> None:
        self.group_size = group_size
        self.k = k
        super().__init__("Not enough responses yet. Statistic withheld for privacy.")


class InvalidSubmissionError(Exception):
    """Raised when a submission payload fails the anonymization gate.

    The message is deliberately generic. ``issues`` lists what matched and
    is for internal logs only; it must never be echoed to the client.
    """

    PUBLIC_MESSAGE = "Submission contains information that could identify you. Please revise it."

    def __init__(self, issues: Optional[List[str]] = None, message: Optional[str] = None) -> None:
        self.issues = list(issues or [])
        super().__init__(message or self.PUBLIC_MESSAGE)


class DuplicateSubmissionError(Exception):
    """Raised when an enrollment that already has an evaluation submits again."""

    def __init__(self, message: str = "This enrollment has already been evaluated.") -> None:
        super().__init__(message)


class ComputeFailureError(Exception):
    """Raised when the aggregate read behind a query fails.

    No epsilon is charged. The original exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, query_type: Optional[str] = None) -> None:
        self.query_type = query_type
        super().__init__(message)


class RandomSourceUnavailableError(Exception):
    """Raised when the OS random source cannot produce token entropy.

    This is the only fatal condition in the core and is never retried.
    """


class ConfigError(ValueError):
    """Raised when configuration values are out of range."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message)
