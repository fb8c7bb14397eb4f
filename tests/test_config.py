"""
Unit tests for configuration loading and validation.
"""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ferpa_evaluations.config import PrivacyConfig, load_config
from ferpa_evaluations.errors import ConfigError

SETTINGS_PATH = Path(__file__).parent.parent / "config" / "settings.yaml"


class TestPrivacyConfig:
    """Tests for PrivacyConfig defaults and from_dict."""

    def test_defaults(self):
        config = PrivacyConfig()

        assert config.budget.total_budget == 1.0
        assert config.budget.window_minutes == 60
        assert config.budget.max_queries == 10
        assert config.budget.default_query_epsilon == 0.1
        assert config.budget.retained_windows == 3
        assert config.anonymity.k_threshold == 5
        assert config.submission.delay_min_seconds == 2.0
        assert config.submission.delay_max_seconds == 8.0
        assert config.decoupling.grace_period_hours == 24.0
        assert config.decoupling.use_transitional_link is False

    def test_from_dict_overrides(self):
        config = PrivacyConfig.from_dict(
            {
                "budget": {"total_budget": 3, "max_queries": 30},
                "anonymity": {"k_threshold": 10},
                "decoupling": {"use_transitional_link": True},
            }
        )

        assert config.budget.total_budget == 3.0
        assert config.budget.max_queries == 30
        assert config.budget.window_minutes == 60
        assert config.anonymity.k_threshold == 10
        assert config.decoupling.use_transitional_link is True

    def test_rating_criteria_override(self):
        config = PrivacyConfig.from_dict({"anonymity": {"rating_criteria": ["pace", "clarity"]}})
        assert config.anonymity.rating_criteria == ["pace", "clarity"]
        assert "clarity" in PrivacyConfig().anonymity.rating_criteria

    def test_from_dict_ignores_unknown_and_empty_sections(self):
        config = PrivacyConfig.from_dict({"budget": None, "unknown": {"x": 1}})
        assert config.budget.total_budget == 1.0

    def test_instances_do_not_share_sections(self):
        a = PrivacyConfig()
        a.budget.total_budget = 5.0
        assert PrivacyConfig().budget.total_budget == 1.0

    @pytest.mark.parametrize(
        "data,key",
        [
            ({"budget": {"total_budget": 0}}, "budget.total_budget"),
            ({"budget": {"window_minutes": 0}}, "budget.window_minutes"),
            ({"budget": {"max_queries": -1}}, "budget.max_queries"),
            ({"budget": {"default_query_epsilon": 2.0}}, "budget.default_query_epsilon"),
            ({"budget": {"retained_windows": 0}}, "budget.retained_windows"),
            ({"anonymity": {"k_threshold": 0}}, "anonymity.k_threshold"),
            ({"anonymity": {"rating_min": 5, "rating_max": 1}}, "anonymity.rating_min"),
            ({"anonymity": {"rating_criteria": []}}, "anonymity.rating_criteria"),
            ({"submission": {"delay_min_seconds": -1}}, "submission.delay_min_seconds"),
            ({"submission": {"delay_min_seconds": 9}}, "submission.delay_min_seconds"),
            ({"submission": {"comment_min_length": 600}}, "submission.comment_min_length"),
            ({"decoupling": {"grace_period_hours": 0}}, "decoupling.grace_period_hours"),
            ({"decoupling": {"sweep_interval_minutes": 0}}, "decoupling.sweep_interval_minutes"),
        ],
    )
    def test_invalid_values(self, data, key):
        with pytest.raises(ConfigError) as exc_info:
            PrivacyConfig.from_dict(data)
        assert exc_info.value.key == key

    def test_budget_validate_rejects_nan_budget(self):
        config = PrivacyConfig()
        config.budget.total_budget = float("nan")
        with pytest.raises(ConfigError) as exc_info:
            config.budget.validate()
        assert exc_info.value.key == "budget.total_budget"

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            PrivacyConfig.from_dict({"budget": {"total_budget": -1}})

    def test_to_dict(self):
        data = PrivacyConfig().to_dict()
        assert data["budget"]["max_queries"] == 10
        assert set(data) == {"budget", "anonymity", "submission", "decoupling"}


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config == PrivacyConfig()

    def test_no_path_uses_defaults(self):
        assert load_config() == PrivacyConfig()

    def test_shipped_settings_match_defaults(self):
        assert load_config(SETTINGS_PATH) == PrivacyConfig()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("")
        assert load_config(path) == PrivacyConfig()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_round_trip_through_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("budget:\n  window_minutes: 30\nsubmission:\n  comment_max_length: 300\n")

        config = load_config(path)

        assert config.budget.window_minutes == 30
        assert config.submission.comment_max_length == 300
