"""
Noise & K-Anonymity Guard

Protects aggregate statistics about evaluations:
- Laplace mechanism (scale = sensitivity / epsilon) for counts and means
- K-anonymity gate that withholds statistics for small cohorts

Small cohorts are withheld, not just noised. A noised mean over three
responses still says too much about each of them.
"""

from __future__ import annotations

import math
import random
from typing import Protocol, Sequence

import structlog

from ferpa_evaluations.errors import InsufficientDataError
from ferpa_evaluations.models import NoisedStatistics, StatisticalSafety

logger = structlog.get_logger()

DEFAULT_K = 5

_system_random = random.SystemRandom()


class RandomSource(Protocol):
    """Anything with a ``random()`` method returning floats in [0, 1)."""

    def random(self) -> float: ...


def _clamp(value: float, lower: float | None, upper: float | None) -> float:
    if lower is not None:
        value = max(lower, value)
    if upper is not None:
        value = min(upper, value)
    return value


def sample_laplace(scale: float, rng: RandomSource | None = None) -> float:
    """
    Draw one Laplace(0, scale) sample by inverse-CDF sampling.

    u is uniform on (-0.5, 0.5); the endpoint u = -0.5 is redrawn so the
    logarithm stays finite.
    """
    source = rng or _system_random
    u = source.random() - 0.5
    while u <= -0.5:
        u = source.random() - 0.5
    sign = (u > 0) - (u < 0)
    return -scale * sign * math.log(1 - 2 * abs(u))


def add_laplace_noise(
    value: float,
    epsilon: float,
    sensitivity: float = 1.0,
    lower: float | None = 0.0,
    upper: float | None = None,
    rng: RandomSource | None = None,
) -> float:
    """
    Add Laplace noise to a value for epsilon-differential privacy.

    Larger epsilon means less noise. The result is clamped to
    [lower, upper]; pass None for an open bound.

    Args:
        value: True statistic
        epsilon: Privacy parameter, must be > 0
        sensitivity: Query sensitivity, must be > 0
        lower: Lower bound of the statistic's domain (non-negative by default)
        upper: Upper bound of the statistic's domain
        rng: Optional random source for reproducible tests

    Returns:
        Noised, clamped value
    """
    if not epsilon > 0 or not math.isfinite(epsilon):
        raise ValueError("epsilon must be a positive finite number")
    if not sensitivity > 0 or not math.isfinite(sensitivity):
        raise ValueError("sensitivity must be a positive finite number")

    noise = sample_laplace(sensitivity / epsilon, rng)
    return _clamp(value + noise, lower, upper)


def check_k_anonymity(group_size: int, k: int = DEFAULT_K) -> bool:
    """True iff the group has at least k members."""
    return group_size >= k


def enforce_k_anonymity(group_size: int, k: int = DEFAULT_K, context: str | None = None) -> None:
    """
    Withhold a statistic when the cohort is below the k threshold.

    Raises:
        InsufficientDataError: If group_size < k
    """
    if not check_k_anonymity(group_size, k):
        logger.info("k_anonymity_withheld", k_threshold=k, context=context)
        raise InsufficientDataError(group_size=group_size, k=k)


def noise_summary(
    count: int,
    mean: float,
    epsilon: float,
    rating_min: float = 1.0,
    rating_max: float = 5.0,
    rng: RandomSource | None = None,
) -> NoisedStatistics:
    """
    Noise a pre-aggregated (count, mean) pair.

    Each component is noised independently. The count is rounded and
    kept at >= 1; the mean is clamped to the rating domain.
    """
    noised_count = round(add_laplace_noise(count, epsilon, 1.0, rng=rng))
    noised_mean = add_laplace_noise(
        mean, epsilon, 1.0, lower=rating_min, upper=rating_max, rng=rng
    )
    return NoisedStatistics(count=max(1, noised_count), mean=noised_mean)


def generate_noised_statistics(
    values: Sequence[float],
    epsilon: float,
    rating_min: float = 1.0,
    rating_max: float = 5.0,
    rng: RandomSource | None = None,
) -> NoisedStatistics:
    """
    Compute a noised count and mean over raw rating values.

    Args:
        values: Individual ratings
        epsilon: Privacy parameter for each component

    Returns:
        NoisedStatistics annotated as noise-protected

    Raises:
        ValueError: If values is empty
    """
    if not values:
        raise ValueError("No data provided")

    count = len(values)
    mean = math.fsum(values) / count
    return noise_summary(count, mean, epsilon, rating_min, rating_max, rng)


def check_statistical_safety(total_evaluations: int, min_required: int = 10) -> StatisticalSafety:
    """Decide whether a scope has enough evaluations to display statistics."""
    is_safe = total_evaluations >= min_required
    if is_safe:
        message = "Safe to display statistics"
    else:
        message = (
            f"Insufficient data ({total_evaluations}/{min_required}). "
            "Statistics hidden for privacy."
        )
    return StatisticalSafety(
        is_safe=is_safe,
        count=total_evaluations,
        min_required=min_required,
        message=message,
    )
