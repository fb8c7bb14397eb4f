"""
Evaluation Service

Coordinates the privacy core for the two inbound paths.

Submission flow:
1. Payload gate - forbidden fields and identifying text (hard gate)
2. Comment sanitization and encryption
3. Anonymous token, generalized address, rounded timestamp
4. Random delay before the record becomes durable
5. Enrollment linkage update (receipt model)
6. Evaluation record persisted without enrollment identity

Statistics flow:
1. Operator request routed through the DP budget tracker
2. On cache miss with budget left: aggregate read, k-anonymity gate,
   Laplace noise
3. Result cached for the rest of the window

The anonymous token never leaves this module except inside the
persisted record.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

import structlog

from ferpa_evaluations.anonymize import (
    SubmissionGate,
    anonymize_address,
    generate_anonymous_token,
    privacy_safe_audit_entry,
    round_timestamp,
    sample_submission_delay,
)
from ferpa_evaluations.budget import DPBudgetTracker
from ferpa_evaluations.config import PrivacyConfig, load_config
from ferpa_evaluations.errors import InvalidSubmissionError, PrivacyRefusal
from ferpa_evaluations.models import (
    BudgetStatus,
    CachedQuery,
    EvaluationRecord,
    LinkageState,
    NoisedStatistics,
    QueryType,
    RefusalReason,
    StatisticResponse,
    SubmissionOutcome,
)
from ferpa_evaluations.noise import RandomSource, enforce_k_anonymity, noise_summary
from ferpa_evaluations.receipts import (
    DecouplingScheduler,
    DecouplingSweeper,
    ReceiptLinkageManager,
)
from ferpa_evaluations.storage import (
    AggregateReader,
    EnrollmentStore,
    EvaluationStore,
    InMemoryEnrollmentStore,
    InMemoryEvaluationStore,
)

logger = structlog.get_logger()


class CommentCipher(Protocol):
    """Field-level encryption for free-text comments (external service)."""

    def encrypt(self, plaintext: str) -> bytes: ...

    def decrypt(self, blob: bytes) -> str: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EvaluationService:
    """
    Entry point for anonymous evaluation submission and statistics.

    Ensures all identity handling follows the unlinkability requirements:
    - Only anonymized metadata is persisted
    - Enrollments keep a one-way receipt, not a pointer
    - Statistics are budgeted, cached, k-anonymity gated and noised
    """

    def __init__(
        self,
        config: PrivacyConfig | None = None,
        evaluations: EvaluationStore | None = None,
        enrollments: EnrollmentStore | None = None,
        aggregates: AggregateReader | None = None,
        tracker: DPBudgetTracker | None = None,
        cipher: CommentCipher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
        rng: RandomSource | None = None,
    ):
        """
        Initialize the service.

        Args:
            config: Privacy configuration
            evaluations: Where evaluation records are persisted
            enrollments: Enrollment lookup and linkage updates
            aggregates: Aggregate reads (defaults to the evaluation store)
            tracker: DP budget tracker (one per process)
            cipher: Comment encryption; comments are refused without it
            sleep: Used for the submission delay
            clock: Returns the current aware datetime
            rng: Random source for noise (tests only)
        """
        self.config = config or PrivacyConfig()
        self._clock = clock or _utc_now
        self._sleep = sleep
        self._rng = rng

        store = evaluations if evaluations is not None else InMemoryEvaluationStore()
        self.evaluations = store
        if aggregates is None:
            if not hasattr(store, "aggregate"):
                raise ValueError("An AggregateReader is required when the evaluation store cannot aggregate")
            aggregates = store  # type: ignore[assignment]
        self.aggregates: AggregateReader = aggregates  # type: ignore[assignment]
        self.enrollments = enrollments if enrollments is not None else InMemoryEnrollmentStore()
        self.tracker = tracker or DPBudgetTracker(self.config.budget, clock=self._clock)
        self.cipher = cipher

        self.gate = SubmissionGate(
            comment_min_length=self.config.submission.comment_min_length,
            comment_max_length=self.config.submission.comment_max_length,
        )
        self.linkage_manager = ReceiptLinkageManager()
        self.sweeper = DecouplingSweeper(
            self.enrollments,
            grace_period_hours=self.config.decoupling.grace_period_hours,
            clock=self._clock,
        )
        self._scheduler: DecouplingScheduler | None = None

        self._check_operational_overrides()

        logger.info(
            "evaluation_service_initialized",
            k_threshold=self.config.anonymity.k_threshold,
            transitional_link=self.config.decoupling.use_transitional_link,
        )

    def _check_operational_overrides(self) -> None:
        """Log loudly when settings weaken the privacy posture."""
        if self.config.anonymity.k_threshold < 2:
            logger.critical(
                "PRIVACY_RISK",
                message="k_threshold below 2 effectively disables the k-anonymity gate",
                k_threshold=self.config.anonymity.k_threshold,
            )
        if self.config.decoupling.use_transitional_link:
            logger.warning(
                "transitional_link_enabled",
                message="Enrollments keep a reversible evaluation pointer until swept",
                grace_period_hours=self.config.decoupling.grace_period_hours,
            )

    # ------------------------------------------------------------------
    # Submission path
    # ------------------------------------------------------------------

    def _parse_ratings(self, payload: Mapping[str, Any]) -> dict[str, float]:
        raw = payload.get("ratings") or {}
        if not isinstance(raw, Mapping):
            raise InvalidSubmissionError(["Ratings must be a mapping"], message="Invalid ratings.")

        low = self.config.anonymity.rating_min
        high = self.config.anonymity.rating_max
        allowed = set(self.config.anonymity.rating_criteria)
        ratings: dict[str, float] = {}
        for criterion, value in raw.items():
            # Keys are never echoed, they are free text the gate does not scan
            if not isinstance(criterion, str) or criterion not in allowed:
                raise InvalidSubmissionError(
                    ["Unknown rating criterion"], message="Unknown rating criterion."
                )
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise InvalidSubmissionError(
                    [f"Non-numeric rating: {criterion}"], message="Invalid ratings."
                ) from None
            if not low <= number <= high:
                raise InvalidSubmissionError(
                    [f"Rating out of range: {criterion}"],
                    message=f"Ratings must be between {low:g} and {high:g}.",
                )
            ratings[str(criterion)] = number
        if not ratings:
            raise InvalidSubmissionError(["No ratings"], message="At least one rating is required.")
        return ratings

    def submit(
        self,
        enrollment_identity: str,
        payload: Mapping[str, Any],
        source_address: str | None = None,
        client_timestamp: datetime | None = None,
    ) -> SubmissionOutcome:
        """
        Submit an evaluation anonymously.

        Args:
            enrollment_identity: Opaque enrollment identifier
            payload: Ratings and optional comments
            source_address: Raw client address (generalized before storage)
            client_timestamp: Submission time (rounded before storage)

        Returns:
            SubmissionOutcome with the student's receipt when accepted.
            The anonymous token is never returned.

        Raises:
            RandomSourceUnavailableError: If token entropy is unavailable
        """
        # 1. Hard gate. Nothing is persisted for an invalid payload.
        try:
            self.gate.ensure_valid(payload)
            ratings = self._parse_ratings(payload)
            comment = self.gate.sanitize_comment(payload.get("comments"))
        except InvalidSubmissionError as e:
            logger.warning("submission_rejected", reason="invalid_payload", issue_count=len(e.issues))
            return SubmissionOutcome(accepted=False, message=str(e))

        enrollment = self.enrollments.get(enrollment_identity)
        if enrollment is None:
            logger.warning("submission_rejected", reason="unknown_enrollment")
            return SubmissionOutcome(accepted=False, message="Enrollment not found.")
        if enrollment.linkage.has_evaluated:
            logger.info("submission_rejected", reason="already_evaluated")
            return SubmissionOutcome(accepted=False, message="You have already evaluated this subject.")

        # 2. Comments are encrypted at rest or not stored at all
        encrypted_comment: bytes | None = None
        if comment:
            if self.cipher is None:
                logger.critical(
                    "comment_cipher_not_configured",
                    message="Refusing to store plaintext comments",
                )
                return SubmissionOutcome(
                    accepted=False,
                    message="Server configuration error. Please contact administrator.",
                )
            encrypted_comment = self.cipher.encrypt(comment)

        # 3. Anonymized metadata
        token = generate_anonymous_token(enrollment_identity)
        now = self._clock()
        submitted_at = round_timestamp(client_timestamp or now)
        address = anonymize_address(source_address) if source_address else None

        record_id = str(uuid.uuid4())
        if self.config.decoupling.use_transitional_link:
            linkage, receipt = self.linkage_manager.record_linked_submission(
                enrollment.linkage, record_id, token, now
            )
        else:
            linkage, receipt = self.linkage_manager.record_submission(enrollment.linkage, token, now)

        # 4. Decorrelate the user action from persistence
        self._sleep(
            sample_submission_delay(
                self.config.submission.delay_min_seconds,
                self.config.submission.delay_max_seconds,
            )
        )

        # 5. Claim the enrollment; loses if a concurrent submission got there first
        if not self.enrollments.compare_and_set_linkage(
            enrollment_identity, LinkageState.NOT_EVALUATED, linkage
        ):
            logger.info("submission_rejected", reason="already_evaluated")
            return SubmissionOutcome(accepted=False, message="You have already evaluated this subject.")

        # 6. Persist without any enrollment identity
        record = EvaluationRecord(
            record_id=record_id,
            anonymous_token=token,
            course_id=enrollment.course_id,
            teacher_id=enrollment.teacher_id,
            program_id=enrollment.program_id,
            school_year=enrollment.school_year,
            ratings=ratings,
            encrypted_comment=encrypted_comment,
            source_address=address,
            submitted_at=submitted_at,
        )
        try:
            self.evaluations.save(record)
        except Exception:
            # Release the claim so the student can retry
            self.enrollments.compare_and_set_linkage(
                enrollment_identity, linkage.state, enrollment.linkage
            )
            logger.error("evaluation_persist_failed")
            raise

        logger.info(
            "evaluation_submitted",
            **privacy_safe_audit_entry(
                "evaluation_submitted",
                "submission",
                linkage_state=linkage.state.value,
                has_comment=encrypted_comment is not None,
                address_kept=address is not None,
            ),
        )

        return SubmissionOutcome(
            accepted=True,
            message="Evaluation submitted successfully!",
            receipt=receipt,
        )

    # ------------------------------------------------------------------
    # Statistics path
    # ------------------------------------------------------------------

    def _compute_summary(self, query_type: QueryType, group_value: str) -> Callable[[float], NoisedStatistics]:
        anonymity = self.config.anonymity

        def compute(epsilon: float) -> NoisedStatistics:
            aggregate = self.aggregates.aggregate(query_type.group_by, group_value)
            enforce_k_anonymity(aggregate.count, anonymity.k_threshold, context=query_type.value)
            return noise_summary(
                aggregate.count,
                aggregate.mean,
                epsilon,
                rating_min=anonymity.rating_min,
                rating_max=anonymity.rating_max,
                rng=self._rng,
            )

        return compute

    def get_statistic(
        self,
        query_type: str | QueryType,
        parameters: Mapping[str, Any],
        epsilon: float | None = None,
    ) -> StatisticResponse:
        """
        Get a noised, budgeted statistic.

        Args:
            query_type: One of the QueryType values
            parameters: Must include the query type's grouping key
            epsilon: Epsilon to spend (default from config)

        Returns:
            Released statistic or structured refusal

        Raises:
            ValueError: Unknown query type or missing grouping key
            ComputeFailureError: If the aggregate read fails
        """
        qtype = QueryType(query_type)
        group_value = parameters.get(qtype.group_by)
        if group_value is None:
            raise ValueError(f"{qtype.value} requires parameter '{qtype.group_by}'")

        try:
            result = self.tracker.execute_query(
                qtype.value,
                parameters,
                self._compute_summary(qtype, str(group_value)),
                epsilon=epsilon,
            )
        except PrivacyRefusal as refusal:
            logger.info("statistic_refused", query_type=qtype.value, reason=refusal.reason)
            return StatisticResponse(
                status="refused",
                query_type=qtype.value,
                reason=RefusalReason(refusal.reason),
                message=str(refusal),
                resets_at=refusal.resets_at,
                budget_status=self.tracker.get_budget_status(),
            )

        return StatisticResponse(
            status="released",
            query_type=qtype.value,
            statistic=result.result,
            cached=result.cached,
            message=result.result.note,
            budget_status=result.budget_status,
        )

    # ------------------------------------------------------------------
    # Audit accessors and background work
    # ------------------------------------------------------------------

    def budget_status(self) -> BudgetStatus:
        """Budget status for the compliance reporter."""
        return self.tracker.get_budget_status()

    def query_history(self) -> tuple[CachedQuery, ...]:
        """Active window query history for the compliance reporter."""
        return self.tracker.get_query_history()

    def start_background_tasks(self) -> DecouplingScheduler:
        """Start the decoupling sweep if transitional links are enabled."""
        if self._scheduler is None:
            self._scheduler = DecouplingScheduler(
                self.sweeper,
                interval_seconds=self.config.decoupling.sweep_interval_minutes * 60,
            )
        if self.config.decoupling.use_transitional_link:
            self._scheduler.start()
        else:
            logger.info("decoupling_not_needed", message="Receipt model active, no links to sweep")
        return self._scheduler

    def stop_background_tasks(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()


def create_service(
    config_path: str | None = None,
    cipher: CommentCipher | None = None,
    **kwargs: Any,
) -> EvaluationService:
    """
    Create a configured service.

    Args:
        config_path: Path to settings.yaml
        cipher: Comment encryption service
        **kwargs: Passed through to EvaluationService (stores, clock, ...)

    Returns:
        Configured EvaluationService
    """
    config = load_config(Path(config_path) if config_path else None)
    return EvaluationService(config=config, cipher=cipher, **kwargs)
