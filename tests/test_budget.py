"""
Unit tests for the DP budget tracker.

Tests cover:
- Query id canonicalization
- Cache hits returning the first released result without a charge
- Budget conservation and exhaustion (epsilon and query count)
- Compute failures and refusals that must not be charged
- Window rotation, retention and operational overrides
- Concurrent callers never overspending a window
"""

import random
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import FakeClock

from ferpa_evaluations.budget import DPBudgetTracker, generate_query_id
from ferpa_evaluations.config import BudgetConfig
from ferpa_evaluations.errors import (
    BudgetExhaustedError,
    ComputeFailureError,
    ConfigError,
    InsufficientBudgetError,
    InsufficientDataError,
)


def counting_compute():
    """compute_fn that returns a fresh value on every call and counts calls."""
    calls = []

    def compute(epsilon):
        calls.append(epsilon)
        return {"value": len(calls), "epsilon": epsilon}

    return compute, calls


@pytest.fixture
def tracker(clock: FakeClock) -> DPBudgetTracker:
    return DPBudgetTracker(BudgetConfig(), clock=clock)


# ============================================================================
# Test Query Ids
# ============================================================================


class TestGenerateQueryId:
    """Tests for generate_query_id."""

    def test_key_order_does_not_matter(self):
        a = generate_query_id("teacher_summary", {"teacher_id": "t-1", "year": "2025"})
        b = generate_query_id("teacher_summary", {"year": "2025", "teacher_id": "t-1"})
        assert a == b

    def test_is_sha256_hex(self):
        query_id = generate_query_id("teacher_summary", {"teacher_id": "t-1"})
        assert len(query_id) == 64
        int(query_id, 16)

    def test_type_and_parameters_both_matter(self):
        base = generate_query_id("teacher_summary", {"teacher_id": "t-1"})
        assert base != generate_query_id("course_summary", {"teacher_id": "t-1"})
        assert base != generate_query_id("teacher_summary", {"teacher_id": "t-2"})


# ============================================================================
# Test Caching
# ============================================================================


class TestQueryCache:
    """Identical queries within a window are served from cache."""

    def test_identical_query_returns_cached_result(self, tracker):
        compute, calls = counting_compute()

        first = tracker.execute_query("teacher_summary", {"teacher_id": "t-1", "year": 1}, compute)
        second = tracker.execute_query("teacher_summary", {"year": 1, "teacher_id": "t-1"}, compute)

        assert first.cached is False
        assert second.cached is True
        assert second.result == first.result
        assert len(calls) == 1

    def test_cache_hit_is_not_charged(self, tracker):
        compute, _ = counting_compute()

        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)

        status = tracker.get_budget_status()
        assert status.remaining_epsilon == pytest.approx(0.9)
        assert status.queries_used == 1

    def test_cache_served_after_exhaustion(self, tracker):
        compute, calls = counting_compute()
        for i in range(10):
            tracker.execute_query("teacher_summary", {"teacher_id": f"t-{i}"}, compute)

        result = tracker.execute_query("teacher_summary", {"teacher_id": "t-3"}, compute)

        assert result.cached is True
        assert result.budget_status.exhausted is True
        assert len(calls) == 10

    def test_cached_result_is_first_released_value(self, tracker):
        compute, _ = counting_compute()
        first = tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
        for _ in range(5):
            again = tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
            assert again.result == first.result


# ============================================================================
# Test Budget Accounting
# ============================================================================


class TestBudgetAccounting:
    """Tests for epsilon conservation and exhaustion."""

    def test_initial_status(self, tracker, start_time):
        status = tracker.get_budget_status()

        assert status.remaining_epsilon == 1.0
        assert status.queries_used == 0
        assert status.exhausted is False
        assert status.window_start == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        assert status.window_end == datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)

    def test_remaining_plus_charged_equals_total(self, clock):
        tracker = DPBudgetTracker(BudgetConfig(total_budget=2.0, max_queries=50), clock=clock)
        rng = random.Random(11)
        compute, _ = counting_compute()

        for i in range(15):
            epsilon = round(rng.uniform(0.01, 0.12), 3)
            tracker.execute_query("teacher_summary", {"teacher_id": f"t-{i}"}, compute, epsilon=epsilon)
            status = tracker.get_budget_status()
            charged = sum(q.epsilon for q in tracker.get_query_history())
            assert status.remaining_epsilon + charged == pytest.approx(2.0)

    def test_ten_default_queries_exhaust_the_window(self, tracker):
        compute, calls = counting_compute()

        for i in range(10):
            result = tracker.execute_query("teacher_summary", {"teacher_id": f"t-{i}"}, compute)
            assert result.cached is False

        with pytest.raises(BudgetExhaustedError) as exc_info:
            tracker.execute_query("teacher_summary", {"teacher_id": "t-10"}, compute)

        assert len(calls) == 10
        assert exc_info.value.reason == "budget_exhausted"
        assert exc_info.value.resets_at == datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)
        assert tracker.get_budget_status().remaining_epsilon == 0.0

    def test_query_count_limit_exhausts_before_epsilon(self, clock):
        tracker = DPBudgetTracker(BudgetConfig(max_queries=3), clock=clock)
        compute, _ = counting_compute()

        for i in range(3):
            tracker.execute_query("course_summary", {"course_id": f"c-{i}"}, compute, epsilon=0.01)

        status = tracker.get_budget_status()
        assert status.exhausted is True
        assert status.remaining_epsilon == pytest.approx(0.97)
        with pytest.raises(BudgetExhaustedError):
            tracker.execute_query("course_summary", {"course_id": "c-9"}, compute, epsilon=0.01)

    def test_insufficient_budget(self, tracker):
        compute, calls = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute, epsilon=0.6)

        with pytest.raises(InsufficientBudgetError) as exc_info:
            tracker.execute_query("teacher_summary", {"teacher_id": "t-2"}, compute, epsilon=0.5)

        assert exc_info.value.reason == "insufficient_budget"
        assert exc_info.value.remaining == pytest.approx(0.4)
        assert exc_info.value.requested == 0.5
        assert len(calls) == 1

    @pytest.mark.parametrize("epsilon", [0, -0.1, float("nan"), float("inf")])
    def test_non_positive_or_non_finite_epsilon_rejected(self, tracker, epsilon):
        compute, calls = counting_compute()
        with pytest.raises(ValueError):
            tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute, epsilon=epsilon)
        assert calls == []
        status = tracker.get_budget_status()
        assert status.remaining_epsilon == 1.0
        assert status.queries_used == 0

    def test_compute_failure_is_not_charged(self, tracker):
        original = RuntimeError("database unavailable")

        def failing(epsilon):
            raise original

        with pytest.raises(ComputeFailureError) as exc_info:
            tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, failing)

        assert exc_info.value.__cause__ is original
        assert exc_info.value.query_type == "teacher_summary"
        status = tracker.get_budget_status()
        assert status.queries_used == 0
        assert status.remaining_epsilon == 1.0

    def test_refusal_from_compute_passes_through_uncharged(self, tracker):
        def withheld(epsilon):
            raise InsufficientDataError(group_size=3, k=5)

        with pytest.raises(InsufficientDataError):
            tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, withheld)

        assert tracker.get_budget_status().queries_used == 0
        assert tracker.get_query_history() == ()


# ============================================================================
# Test Window Rotation
# ============================================================================


class TestWindowRotation:
    """Tests for fixed-window rotation and retention."""

    def test_new_window_restores_budget(self, tracker, clock):
        compute, _ = counting_compute()
        for i in range(10):
            tracker.execute_query("teacher_summary", {"teacher_id": f"t-{i}"}, compute)
        assert tracker.get_budget_status().exhausted is True

        clock.advance(minutes=60)
        status = tracker.get_budget_status()

        assert status.exhausted is False
        assert status.remaining_epsilon == 1.0
        assert status.queries_used == 0
        assert status.window_start == datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)

    def test_cache_does_not_carry_across_windows(self, tracker, clock):
        compute, calls = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)

        clock.advance(hours=1)
        result = tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)

        assert result.cached is False
        assert len(calls) == 2

    def test_same_window_until_boundary(self, tracker, clock):
        compute, _ = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)

        clock.advance(minutes=54)  # 09:59:30
        assert tracker.get_budget_status().queries_used == 1

    def test_expired_windows_retained_for_audit(self, tracker, clock):
        compute, _ = counting_compute()
        for _ in range(5):
            tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
            clock.advance(hours=1)

        windows = tracker.get_retained_windows()

        assert len(windows) == 3
        starts = list(windows)
        assert starts == sorted(starts)
        assert starts[-1] == datetime(2025, 3, 10, 14, 0, tzinfo=timezone.utc)
        assert windows[starts[-1]] == ()
        assert len(windows[starts[0]]) == 1

    def test_query_history_is_active_window_only(self, tracker, clock):
        compute, _ = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
        tracker.execute_query("teacher_summary", {"teacher_id": "t-2"}, compute)
        assert len(tracker.get_query_history()) == 2

        clock.advance(hours=1)
        assert tracker.get_query_history() == ()


# ============================================================================
# Test Operational Overrides
# ============================================================================


class TestOperationalOverrides:
    """Tests for reset_budget and update_config."""

    def test_reset_clears_all_windows(self, tracker, clock):
        compute, _ = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
        clock.advance(hours=1)
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)

        tracker.reset_budget()

        assert tracker.get_retained_windows() == {}
        assert tracker.get_budget_status().remaining_epsilon == 1.0

    def test_update_config(self, tracker):
        compute, _ = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)

        new_config = tracker.update_config(total_budget=2.0, max_queries=20)

        assert new_config.total_budget == 2.0
        assert tracker.config.max_queries == 20
        status = tracker.get_budget_status()
        assert status.remaining_epsilon == pytest.approx(1.9)
        assert status.max_queries == 20

    @pytest.mark.parametrize(
        "changes,key",
        [
            ({"total_budget": -1.0}, "budget.total_budget"),
            ({"total_budget": float("nan")}, "budget.total_budget"),
            ({"window_minutes": 0}, "budget.window_minutes"),
            ({"max_queries": 0}, "budget.max_queries"),
            ({"default_query_epsilon": 5.0}, "budget.default_query_epsilon"),
            ({"retained_windows": 0}, "budget.retained_windows"),
        ],
    )
    def test_update_config_rejects_invalid_values(self, tracker, changes, key):
        before = tracker.config

        with pytest.raises(ConfigError) as exc_info:
            tracker.update_config(**changes)

        assert exc_info.value.key == key
        assert tracker.config == before
        assert tracker.get_budget_status().total_budget == 1.0

    def test_window_change_keeps_spent_budget(self, tracker, clock):
        compute, calls = counting_compute()
        tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
        clock.advance(minutes=30)  # 09:35, still inside the hourly window

        tracker.update_config(window_minutes=30)

        status = tracker.get_budget_status()
        assert status.window_start == datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc)
        assert status.remaining_epsilon == pytest.approx(0.9)
        assert status.queries_used == 1

        again = tracker.execute_query("teacher_summary", {"teacher_id": "t-1"}, compute)
        assert again.cached is True
        assert len(calls) == 1


# ============================================================================
# Test Concurrency
# ============================================================================


class TestConcurrency:
    """Concurrent callers cannot overspend a window."""

    def test_parallel_queries_never_exceed_max(self, clock):
        tracker = DPBudgetTracker(BudgetConfig(), clock=clock)
        compute, calls = counting_compute()
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker(i):
            try:
                tracker.execute_query("teacher_summary", {"teacher_id": f"t-{i}"}, compute)
                outcome = "released"
            except BudgetExhaustedError:
                outcome = "refused"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(30)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("released") == 10
        assert outcomes.count("refused") == 20
        assert len(calls) == 10
        assert tracker.get_budget_status().remaining_epsilon == 0.0
