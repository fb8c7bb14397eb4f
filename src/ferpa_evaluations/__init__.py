"""FERPA Evaluations - Privacy core for anonymous course evaluations.

This package lets students submit course and instructor feedback that
cannot be traced back to them, and keeps operators from averaging away
differential privacy noise through repeated statistics queries.
"""

__version__ = "0.1.0"
__author__ = "FERPA Pipeline Team"

from ferpa_evaluations.budget import DPBudgetTracker
from ferpa_evaluations.config import PrivacyConfig, load_config
from ferpa_evaluations.service import EvaluationService, create_service

__all__ = [
    "__version__",
    "__author__",
    "DPBudgetTracker",
    "EvaluationService",
    "PrivacyConfig",
    "create_service",
    "load_config",
]
