"""
Storage interfaces for evaluations and enrollments.

The privacy core never talks to a database directly. It depends on three
narrow capabilities, defined here as protocols:

- EvaluationStore: persist an anonymized evaluation record
- AggregateReader: count/sum of overall ratings grouped by a key
- EnrollmentStore: read enrollments and update their linkage state

Thread-safe in-memory implementations back the tests and the CLI.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Iterable, Protocol

import structlog

from ferpa_evaluations.models import (
    EnrollmentLinkage,
    EnrollmentRecord,
    EvaluationRecord,
    LinkageState,
    RatingAggregate,
)
from ferpa_evaluations.receipts import decouple_linkage

logger = structlog.get_logger()


class EvaluationStore(Protocol):
    """Persists evaluation records."""

    def save(self, record: EvaluationRecord) -> None: ...


class AggregateReader(Protocol):
    """Reads exact aggregates over evaluation records."""

    def aggregate(self, group_by: str, group_value: str) -> RatingAggregate: ...


class EnrollmentStore(Protocol):
    """Reads enrollments and updates their linkage."""

    def get(self, enrollment_id: str) -> EnrollmentRecord | None: ...

    def compare_and_set_linkage(
        self,
        enrollment_id: str,
        expected_state: LinkageState,
        linkage: EnrollmentLinkage,
    ) -> bool: ...

    def decouple_linked_before(self, cutoff: datetime, now: datetime) -> int: ...


class InMemoryEvaluationStore:
    """
    Evaluation store and aggregate reader backed by a list.

    Aggregates are over each record's overall rating (the mean of its
    criteria ratings). Records without ratings are not counted.
    """

    GROUP_FIELDS = ("teacher_id", "course_id", "program_id", "school_year")

    def __init__(self, records: Iterable[EvaluationRecord] | None = None):
        self._records: list[EvaluationRecord] = list(records or [])
        self._lock = threading.Lock()

    def save(self, record: EvaluationRecord) -> None:
        with self._lock:
            self._records.append(record)
        logger.debug("evaluation_record_saved", record_id=record.record_id)

    def aggregate(self, group_by: str, group_value: str) -> RatingAggregate:
        if group_by not in self.GROUP_FIELDS:
            raise ValueError(f"Unsupported grouping field: {group_by}")

        with self._lock:
            ratings = [
                r.overall_rating
                for r in self._records
                if getattr(r, group_by) == group_value and r.overall_rating is not None
            ]

        return RatingAggregate(count=len(ratings), total=sum(ratings))

    def all_records(self) -> list[EvaluationRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class InMemoryEnrollmentStore:
    """
    Enrollment store backed by a dict.

    Linkage updates are compare-and-set on the current state, so two
    concurrent submissions for one enrollment cannot both succeed.
    """

    def __init__(self, enrollments: Iterable[EnrollmentRecord] | None = None):
        self._enrollments: dict[str, EnrollmentRecord] = {
            e.enrollment_id: e for e in (enrollments or [])
        }
        self._lock = threading.Lock()

    def add(self, enrollment: EnrollmentRecord) -> None:
        with self._lock:
            self._enrollments[enrollment.enrollment_id] = enrollment

    def get(self, enrollment_id: str) -> EnrollmentRecord | None:
        with self._lock:
            return self._enrollments.get(enrollment_id)

    def compare_and_set_linkage(
        self,
        enrollment_id: str,
        expected_state: LinkageState,
        linkage: EnrollmentLinkage,
    ) -> bool:
        """
        Replace an enrollment's linkage if its state is still as expected.

        Returns:
            True if the linkage was replaced
        """
        with self._lock:
            current = self._enrollments.get(enrollment_id)
            if current is None or current.linkage.state != expected_state:
                return False
            self._enrollments[enrollment_id] = EnrollmentRecord(
                **{
                    **current.model_dump(exclude={"linkage"}),
                    "linkage": linkage,
                }
            )
            return True

    def decouple_linked_before(self, cutoff: datetime, now: datetime) -> int:
        """
        Drop evaluation pointers last updated strictly before ``cutoff``.

        Links created at or after the cutoff are left alone, so a
        submission that is linking while the sweep runs is never collected
        early. Running twice is harmless.

        Returns:
            Number of enrollments decoupled
        """
        decoupled = 0
        with self._lock:
            for enrollment_id, enrollment in self._enrollments.items():
                linkage = enrollment.linkage
                if (
                    linkage.state != LinkageState.LINKED_PENDING_DECOUPLING
                    or linkage.evaluation_pointer is None
                    or linkage.updated_at is None
                    or not linkage.updated_at < cutoff
                ):
                    continue

                self._enrollments[enrollment_id] = enrollment.model_copy(
                    update={"linkage": decouple_linkage(linkage, now)}
                )
                decoupled += 1
        return decoupled

    def all_enrollments(self) -> list[EnrollmentRecord]:
        with self._lock:
            return list(self._enrollments.values())
