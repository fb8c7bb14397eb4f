"""
Core data models for the anonymous evaluation system.

All data structures are defined here to ensure consistent typing
across the anonymization, noise, budget and receipt modules.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LinkageState(str, Enum):
    """Where an enrollment sits in the receipt-based unlinkability model."""
    NOT_EVALUATED = "not_evaluated"
    LINKED_PENDING_DECOUPLING = "linked_pending_decoupling"
    DECOUPLED = "decoupled"


class QueryType(str, Enum):
    """Statistic types an operator may request."""
    TEACHER_SUMMARY = "teacher_summary"
    COURSE_SUMMARY = "course_summary"
    PROGRAM_SUMMARY = "program_summary"

    @property
    def group_by(self) -> str:
        """Evaluation field the statistic is grouped by."""
        return {
            QueryType.TEACHER_SUMMARY: "teacher_id",
            QueryType.COURSE_SUMMARY: "course_id",
            QueryType.PROGRAM_SUMMARY: "program_id",
        }[self]


class RefusalReason(str, Enum):
    """Structured reasons a statistic was not released."""
    BUDGET_EXHAUSTED = "budget_exhausted"
    INSUFFICIENT_BUDGET = "insufficient_budget"
    INSUFFICIENT_DATA = "insufficient_data"


# ============================================================================
# Budget tracking
# ============================================================================


class CachedQuery(BaseModel):
    """A released query result, cached for the rest of its window."""
    model_config = ConfigDict(frozen=True)

    query_id: str = Field(description="SHA-256 of the canonical (query_type, parameters)")
    query_type: str = Field(description="Query type, e.g. teacher_summary")
    epsilon: float = Field(gt=0.0, description="Epsilon charged for this query")
    result: Any = Field(description="Noised result exactly as first released")
    computed_at: datetime = Field(description="When the result was computed")


class BudgetStatus(BaseModel):
    """Budget state derived from the active window's cached queries."""
    model_config = ConfigDict(frozen=True)

    remaining_epsilon: float = Field(ge=0.0)
    queries_used: int = Field(ge=0)
    window_start: datetime
    window_end: datetime
    exhausted: bool
    total_budget: float
    max_queries: int


class QueryResult(BaseModel):
    """Outcome of a successful execute_query call."""
    model_config = ConfigDict(frozen=True)

    cached: bool = Field(description="True when served from the window cache")
    result: Any
    budget_status: BudgetStatus


# ============================================================================
# Noise
# ============================================================================


class NoisedStatistics(BaseModel):
    """Aggregate with Laplace noise applied to each component."""
    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=1)
    mean: float
    noise_protected: bool = True
    note: str = "Statistics include differential privacy noise for protection"


class StatisticalSafety(BaseModel):
    """Whether a scope has enough evaluations to show statistics at all."""
    model_config = ConfigDict(frozen=True)

    is_safe: bool
    count: int
    min_required: int
    message: str


# ============================================================================
# Submissions and linkage
# ============================================================================


class SubmissionValidation(BaseModel):
    """Result of the anonymization gate on a submission payload."""
    model_config = ConfigDict(frozen=True)

    valid: bool
    issues: list[str] = Field(default_factory=list)


class EnrollmentLinkage(BaseModel):
    """Evaluation status of one enrollment.

    ``evaluation_pointer`` only exists in the transitional
    LINKED_PENDING_DECOUPLING state. Steady state keeps a one-way
    ``receipt_hash`` instead.
    """
    model_config = ConfigDict(frozen=True)

    state: LinkageState = Field(default=LinkageState.NOT_EVALUATED)
    evaluation_pointer: str | None = Field(default=None)
    receipt_hash: str | None = Field(default=None)
    updated_at: datetime | None = Field(default=None)
    decoupled_at: datetime | None = Field(default=None)

    @property
    def has_evaluated(self) -> bool:
        return self.state != LinkageState.NOT_EVALUATED


class EnrollmentRecord(BaseModel):
    """An enrollment as seen by the submission path."""
    model_config = ConfigDict(frozen=True)

    enrollment_id: str = Field(description="Opaque enrollment identity")
    course_id: str
    teacher_id: str
    program_id: str = Field(default="")
    school_year: str = Field(default="")
    linkage: EnrollmentLinkage = Field(default_factory=EnrollmentLinkage)


class EvaluationRecord(BaseModel):
    """A persisted evaluation. Carries no enrollment identity."""
    model_config = ConfigDict(frozen=True)

    record_id: str
    anonymous_token: str = Field(min_length=128, max_length=128)
    course_id: str
    teacher_id: str
    program_id: str = Field(default="")
    school_year: str = Field(default="")
    ratings: dict[str, float] = Field(default_factory=dict)
    encrypted_comment: bytes | None = Field(default=None)
    source_address: str | None = Field(default=None, description="Generalized address or None")
    submitted_at: datetime = Field(description="Submission time rounded to the hour")

    @property
    def overall_rating(self) -> float | None:
        if not self.ratings:
            return None
        return sum(self.ratings.values()) / len(self.ratings)


class RatingAggregate(BaseModel):
    """Exact aggregate read from storage. Never released without noise."""
    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=0)
    total: float = Field(default=0.0)

    @property
    def mean(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total / self.count


class SubmissionOutcome(BaseModel):
    """What the submitting client is told. Never contains the token."""
    model_config = ConfigDict(frozen=True)

    accepted: bool
    message: str
    receipt: str | None = Field(default=None)


class DecouplingResult(BaseModel):
    """Summary of one decoupling sweep."""
    model_config = ConfigDict(frozen=True)

    decoupled: int = Field(ge=0)
    cutoff: datetime
    swept_at: datetime


# ============================================================================
# Statistics responses
# ============================================================================


class StatisticResponse(BaseModel):
    """A released statistic or a structured refusal."""
    model_config = ConfigDict(frozen=True)

    status: str = Field(description="'released' or 'refused'")
    query_type: str
    statistic: NoisedStatistics | None = Field(default=None)
    cached: bool = Field(default=False)
    reason: RefusalReason | None = Field(default=None)
    message: str = Field(default="")
    resets_at: datetime | None = Field(default=None)
    budget_status: BudgetStatus | None = Field(default=None)

    @property
    def released(self) -> bool:
        return self.status == "released"
