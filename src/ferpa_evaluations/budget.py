"""Differential privacy budget tracker for evaluation statistics.

This module provides a thread-safe epsilon accountant using a fixed window
algorithm, combined with a per-window cache of released query results.

The cache is the core defense against noise averaging: an operator who
re-issues an identical query within a window gets the exact result that
was first released. No epsilon is charged and no new noise is drawn.

Example:
    from ferpa_evaluations.budget import DPBudgetTracker
    from ferpa_evaluations.config import BudgetConfig

    tracker = DPBudgetTracker(BudgetConfig(total_budget=1.0, max_queries=10))

    result = tracker.execute_query(
        "teacher_summary",
        {"teacher_id": "t-42"},
        compute_fn=lambda eps: compute_noised_average("t-42", eps),
    )
"""

import hashlib
import json
import math
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from ferpa_evaluations.config import BudgetConfig
from ferpa_evaluations.errors import (
    BudgetExhaustedError,
    ComputeFailureError,
    InsufficientBudgetError,
    PrivacyRefusal,
)
from ferpa_evaluations.models import BudgetStatus, CachedQuery, QueryResult

logger = structlog.get_logger()

Clock = Callable[[], datetime]

# Remaining epsilon is rounded so that e.g. ten 0.1 charges exactly
# exhaust a 1.0 budget instead of leaving float dust behind.
_EPSILON_PRECISION = 12


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_query_id(query_type: str, parameters: Mapping[str, Any]) -> str:
    """Hash a query type and its parameters into a stable query id.

    Parameter keys are sorted so that dict ordering never changes the id.
    """
    canonical = json.dumps(
        {"query_type": query_type, "parameters": dict(parameters)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class DPBudgetTracker:
    """Thread-safe epsilon accountant with a per-window query cache.

    Time is divided into fixed windows (e.g., 60 minutes). Each window has
    its own budget of ``total_budget`` epsilon and ``max_queries`` distinct
    queries. A window is:

    - Open while it has both epsilon and query slots left.
    - Exhausted once either runs out; cached results are still served.
    - Expired once a newer window starts; it is kept read-only for audit
      until more than ``retained_windows`` windows exist, then evicted.

    Budget status is always recomputed from the active window's cached
    queries, so there is no separate counter that could drift.

    Checking the budget, computing the result and recording the charge
    happen under one lock. Two concurrent callers can never both see
    "enough budget" before either has been charged.

    Attributes:
        config: Budget configuration for every window.

    Example:
        tracker = DPBudgetTracker(BudgetConfig())
        status = tracker.get_budget_status()
        print(f"{status.remaining_epsilon}ε left until {status.window_end}")
    """

    def __init__(self, config: Optional[BudgetConfig] = None, clock: Optional[Clock] = None) -> None:
        """Initialize the tracker.

        Args:
            config: Budget configuration (default: 1.0ε, 60 min, 10 queries).
            clock: Returns the current aware datetime (default: UTC now).
        """
        self._config = config or BudgetConfig()
        self._clock = clock or _utc_now

        # window_start -> cached queries in insertion order
        self._windows: Dict[datetime, List[CachedQuery]] = {}
        self._current_window = self._window_start_for(self._clock())

        # Thread safety
        self._lock = threading.Lock()

        logger.info(
            "dp_budget_tracker_initialized",
            total_budget=self._config.total_budget,
            window_minutes=self._config.window_minutes,
            max_queries=self._config.max_queries,
            default_query_epsilon=self._config.default_query_epsilon,
        )

    @property
    def config(self) -> BudgetConfig:
        """Active budget configuration."""
        return self._config

    # ------------------------------------------------------------------
    # Window handling (callers must hold the lock)
    # ------------------------------------------------------------------

    def _window_start_for(self, now: datetime) -> datetime:
        window_seconds = self._config.window_minutes * 60
        epoch_seconds = math.floor(now.timestamp())
        start = epoch_seconds - (epoch_seconds % window_seconds)
        return datetime.fromtimestamp(start, tz=timezone.utc)

    def _window_end(self, window_start: datetime) -> datetime:
        return window_start + timedelta(minutes=self._config.window_minutes)

    def _rotate_if_needed(self) -> None:
        window_start = self._window_start_for(self._clock())
        if window_start == self._current_window:
            return

        previous = self._current_window
        self._current_window = window_start
        self._windows.setdefault(window_start, [])

        # Keep the newest windows for the audit trail
        retained = sorted(self._windows)[-self._config.retained_windows:]
        evicted = [w for w in self._windows if w not in retained]
        for window in evicted:
            del self._windows[window]

        logger.info(
            "budget_window_rotated",
            previous_window=previous.isoformat(),
            window_start=window_start.isoformat(),
            evicted_windows=len(evicted),
        )

    def _active_queries(self) -> List[CachedQuery]:
        return self._windows.get(self._current_window, [])

    def _status(self) -> BudgetStatus:
        queries = self._active_queries()
        consumed = math.fsum(q.epsilon for q in queries)
        remaining = round(self._config.total_budget - consumed, _EPSILON_PRECISION)

        return BudgetStatus(
            remaining_epsilon=max(0.0, remaining),
            queries_used=len(queries),
            window_start=self._current_window,
            window_end=self._window_end(self._current_window),
            exhausted=remaining <= 0 or len(queries) >= self._config.max_queries,
            total_budget=self._config.total_budget,
            max_queries=self._config.max_queries,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_query(
        self,
        query_type: str,
        parameters: Mapping[str, Any],
        compute_fn: Callable[[float], Any],
        epsilon: Optional[float] = None,
    ) -> QueryResult:
        """Execute a DP query, or return its cached result.

        Args:
            query_type: Query type, e.g. "teacher_summary".
            parameters: Query parameters; key order does not matter.
            compute_fn: Called with the epsilon to spend; must return the
                noised result. Only called on a cache miss with budget left.
            epsilon: Epsilon to charge (default: default_query_epsilon).

        Returns:
            QueryResult with ``cached`` set on a cache hit.

        Raises:
            ValueError: If epsilon is not a positive finite number.
            BudgetExhaustedError: If the window is out of epsilon or queries.
            InsufficientBudgetError: If epsilon exceeds the remaining budget.
            ComputeFailureError: If compute_fn fails. Nothing is charged.
        """
        if epsilon is None:
            epsilon = self._config.default_query_epsilon
        if not epsilon > 0 or not math.isfinite(epsilon):
            raise ValueError("epsilon must be a positive finite number")

        query_id = generate_query_id(query_type, parameters)

        with self._lock:
            self._rotate_if_needed()

            for cached in self._active_queries():
                if cached.query_id == query_id:
                    logger.info("query_cached", query_type=query_type)
                    return QueryResult(cached=True, result=cached.result, budget_status=self._status())

            status = self._status()
            if status.exhausted:
                logger.warning(
                    "budget_exhausted",
                    query_type=query_type,
                    queries_used=status.queries_used,
                    window_end=status.window_end.isoformat(),
                )
                raise BudgetExhaustedError(
                    window_end=status.window_end,
                    queries_used=status.queries_used,
                    max_queries=status.max_queries,
                )

            if epsilon > status.remaining_epsilon:
                logger.warning(
                    "insufficient_budget",
                    query_type=query_type,
                    remaining=status.remaining_epsilon,
                    requested=epsilon,
                )
                raise InsufficientBudgetError(
                    remaining=status.remaining_epsilon,
                    requested=epsilon,
                    window_end=status.window_end,
                )

            try:
                result = compute_fn(epsilon)
            except PrivacyRefusal:
                raise
            except Exception as e:
                logger.error("query_compute_failed", query_type=query_type, error=str(e))
                raise ComputeFailureError(
                    f"Query execution failed: {e}", query_type=query_type
                ) from e

            self._windows.setdefault(self._current_window, []).append(
                CachedQuery(
                    query_id=query_id,
                    query_type=query_type,
                    epsilon=epsilon,
                    result=result,
                    computed_at=self._clock(),
                )
            )
            status = self._status()

        logger.info(
            "query_charged",
            query_type=query_type,
            epsilon=epsilon,
            remaining_epsilon=status.remaining_epsilon,
            queries_used=status.queries_used,
        )
        return QueryResult(cached=False, result=result, budget_status=status)

    def get_budget_status(self) -> BudgetStatus:
        """Get the budget status of the active window.

        Safe to call at any time, including for operator display. The only
        state change is rotating to a new window when one has started.
        """
        with self._lock:
            self._rotate_if_needed()
            return self._status()

    def get_query_history(self) -> Tuple[CachedQuery, ...]:
        """Read-only view of the active window's cached queries (for audit)."""
        with self._lock:
            self._rotate_if_needed()
            return tuple(self._active_queries())

    def get_retained_windows(self) -> Dict[datetime, Tuple[CachedQuery, ...]]:
        """Read-only view of every retained window, oldest first."""
        with self._lock:
            self._rotate_if_needed()
            return {w: tuple(self._windows[w]) for w in sorted(self._windows)}

    def reset_budget(self) -> None:
        """Clear every tracked window.

        EMERGENCY USE ONLY. This voids the differential privacy accounting
        for the current window and must never run as part of normal
        request handling.
        """
        with self._lock:
            cleared = sum(len(q) for q in self._windows.values())
            self._windows.clear()
            self._current_window = self._window_start_for(self._clock())

        logger.critical(
            "PRIVACY_BUDGET_RESET",
            message="Privacy budget manually reset. Differential privacy guarantees are void "
                    "for the current window.",
            cleared_queries=cleared,
        )

    def update_config(self, **changes: Any) -> BudgetConfig:
        """Replace budget configuration values.

        The new values are validated before anything changes. When the
        window length changes, queries already charged in the active
        window carry over to the window that now contains the current
        time, so a reconfiguration never hands out a fresh budget.

        Args:
            **changes: BudgetConfig field names and new values.

        Returns:
            The new configuration.

        Raises:
            ConfigError: If the resulting configuration is out of range.
        """
        with self._lock:
            self._rotate_if_needed()
            new_config = replace(self._config, **changes)
            new_config.validate()

            previous_config = self._config
            previous_window = self._current_window
            carried = self._windows.pop(previous_window, [])

            self._config = new_config
            self._current_window = self._window_start_for(self._clock())
            self._windows.setdefault(self._current_window, []).extend(carried)

        logger.warning("budget_config_updated", **changes)
        if new_config.window_minutes != previous_config.window_minutes:
            logger.critical(
                "BUDGET_WINDOW_CHANGED",
                message="Budget window length changed. Spend from the active window carries over.",
                previous_window_minutes=previous_config.window_minutes,
                window_minutes=new_config.window_minutes,
                carried_queries=len(carried),
            )
        return new_config
