"""Configuration dataclasses for the evaluation privacy core.

This module defines the configuration structure for budget accounting,
k-anonymity, submission handling and enrollment decoupling. None of these
values are secrets; they are plain numbers and durations that normally
live in settings.yaml.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml  # type: ignore[import-untyped]

from ferpa_evaluations.errors import ConfigError

logger = structlog.get_logger()


@dataclass
class BudgetConfig:
    """Differential privacy budget per time window."""

    total_budget: float = 1.0  # epsilon per window
    window_minutes: int = 60
    max_queries: int = 10
    default_query_epsilon: float = 0.1
    retained_windows: int = 3  # kept read-only for audit

    def validate(self) -> None:
        """Reject budget values that would break the privacy accounting.

        Raises:
            ConfigError: If any value is out of range.
        """
        if not self.total_budget > 0:
            raise ConfigError("total_budget must be positive", key="budget.total_budget")
        if self.window_minutes <= 0:
            raise ConfigError("window_minutes must be positive", key="budget.window_minutes")
        if self.max_queries <= 0:
            raise ConfigError("max_queries must be positive", key="budget.max_queries")
        if not 0 < self.default_query_epsilon <= self.total_budget:
            raise ConfigError(
                "default_query_epsilon must be in (0, total_budget]",
                key="budget.default_query_epsilon",
            )
        if self.retained_windows < 1:
            raise ConfigError("retained_windows must be at least 1", key="budget.retained_windows")


# Rating keys a submission may carry; anything else is rejected
DEFAULT_RATING_CRITERIA = (
    "clarity",
    "organization",
    "fairness",
    "engagement",
    "workload",
    "feedback",
    "punctuality",
    "mastery",
)


@dataclass
class AnonymityConfig:
    """K-anonymity and rating domain settings."""

    k_threshold: int = 5
    rating_min: float = 1.0
    rating_max: float = 5.0
    rating_criteria: List[str] = field(default_factory=lambda: list(DEFAULT_RATING_CRITERIA))


@dataclass
class SubmissionConfig:
    """Submission timing and comment constraints."""

    delay_min_seconds: float = 2.0
    delay_max_seconds: float = 8.0
    comment_min_length: int = 20
    comment_max_length: int = 500


@dataclass
class DecouplingConfig:
    """Transitional enrollment link settings.

    ``use_transitional_link`` is an operational override. Left False,
    submissions go straight to the receipt model and nothing is swept.
    """

    grace_period_hours: float = 24.0
    sweep_interval_minutes: float = 60.0
    use_transitional_link: bool = False


@dataclass
class PrivacyConfig:
    """Main configuration for the evaluation privacy core.

    Example:
        config = PrivacyConfig()
        config.budget.total_budget = 2.0
        config.anonymity.k_threshold = 10
    """

    budget: BudgetConfig = field(default_factory=BudgetConfig)
    anonymity: AnonymityConfig = field(default_factory=AnonymityConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    decoupling: DecouplingConfig = field(default_factory=DecouplingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivacyConfig":
        """Create a PrivacyConfig from a dictionary (e.g., from YAML).

        Unknown keys are ignored. Values are validated before returning.

        Args:
            data: Dictionary with configuration values.

        Returns:
            PrivacyConfig instance with values from the dictionary.
        """
        config = cls()

        if "budget" in data:
            budget_data = data["budget"] or {}
            config.budget.total_budget = float(
                budget_data.get("total_budget", config.budget.total_budget)
            )
            config.budget.window_minutes = int(
                budget_data.get("window_minutes", config.budget.window_minutes)
            )
            config.budget.max_queries = int(
                budget_data.get("max_queries", config.budget.max_queries)
            )
            config.budget.default_query_epsilon = float(
                budget_data.get("default_query_epsilon", config.budget.default_query_epsilon)
            )
            config.budget.retained_windows = int(
                budget_data.get("retained_windows", config.budget.retained_windows)
            )

        if "anonymity" in data:
            anon_data = data["anonymity"] or {}
            config.anonymity.k_threshold = int(
                anon_data.get("k_threshold", config.anonymity.k_threshold)
            )
            config.anonymity.rating_min = float(
                anon_data.get("rating_min", config.anonymity.rating_min)
            )
            config.anonymity.rating_max = float(
                anon_data.get("rating_max", config.anonymity.rating_max)
            )
            if "rating_criteria" in anon_data:
                config.anonymity.rating_criteria = [
                    str(c) for c in (anon_data["rating_criteria"] or [])
                ]

        if "submission" in data:
            sub_data = data["submission"] or {}
            config.submission.delay_min_seconds = float(
                sub_data.get("delay_min_seconds", config.submission.delay_min_seconds)
            )
            config.submission.delay_max_seconds = float(
                sub_data.get("delay_max_seconds", config.submission.delay_max_seconds)
            )
            config.submission.comment_min_length = int(
                sub_data.get("comment_min_length", config.submission.comment_min_length)
            )
            config.submission.comment_max_length = int(
                sub_data.get("comment_max_length", config.submission.comment_max_length)
            )

        if "decoupling" in data:
            dec_data = data["decoupling"] or {}
            config.decoupling.grace_period_hours = float(
                dec_data.get("grace_period_hours", config.decoupling.grace_period_hours)
            )
            config.decoupling.sweep_interval_minutes = float(
                dec_data.get("sweep_interval_minutes", config.decoupling.sweep_interval_minutes)
            )
            config.decoupling.use_transitional_link = bool(
                dec_data.get("use_transitional_link", config.decoupling.use_transitional_link)
            )

        config.validate()
        return config

    def validate(self) -> None:
        """Reject values that would break the privacy accounting.

        Raises:
            ConfigError: If any value is out of range.
        """
        self.budget.validate()
        if self.anonymity.k_threshold < 1:
            raise ConfigError("k_threshold must be at least 1", key="anonymity.k_threshold")
        if self.anonymity.rating_min >= self.anonymity.rating_max:
            raise ConfigError("rating_min must be below rating_max", key="anonymity.rating_min")
        if not self.anonymity.rating_criteria:
            raise ConfigError(
                "rating_criteria must list at least one criterion",
                key="anonymity.rating_criteria",
            )
        if self.submission.delay_min_seconds < 0:
            raise ConfigError(
                "delay_min_seconds must not be negative", key="submission.delay_min_seconds"
            )
        if self.submission.delay_min_seconds > self.submission.delay_max_seconds:
            raise ConfigError(
                "delay_min_seconds must not exceed delay_max_seconds",
                key="submission.delay_min_seconds",
            )
        if self.submission.comment_min_length > self.submission.comment_max_length:
            raise ConfigError(
                "comment_min_length must not exceed comment_max_length",
                key="submission.comment_min_length",
            )
        if self.decoupling.grace_period_hours <= 0:
            raise ConfigError(
                "grace_period_hours must be positive", key="decoupling.grace_period_hours"
            )
        if self.decoupling.sweep_interval_minutes <= 0:
            raise ConfigError(
                "sweep_interval_minutes must be positive",
                key="decoupling.sweep_interval_minutes",
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(config_path: Optional[Path] = None) -> PrivacyConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to settings.yaml. Missing files fall back to defaults.

    Returns:
        Validated PrivacyConfig
    """
    if config_path and config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"Config file must contain a mapping, got {type(data).__name__}"
            )
        logger.info("config_loaded", path=str(config_path))
        return PrivacyConfig.from_dict(data)

    logger.warning("using_default_config")
    return PrivacyConfig()
