"""
Shared pytest fixtures for ferpa_evaluations tests.

This module provides common fixtures used across test modules including:
- A controllable clock for window and grace-period tests
- A fake comment cipher
- In-memory stores seeded with enrollments and evaluations
- A service wired to all of the above with the submission delay stubbed
"""

import random
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ferpa_evaluations.anonymize import generate_anonymous_token
from ferpa_evaluations.config import PrivacyConfig
from ferpa_evaluations.models import EnrollmentRecord, EvaluationRecord
from ferpa_evaluations.service import EvaluationService
from ferpa_evaluations.storage import InMemoryEnrollmentStore, InMemoryEvaluationStore


# ============================================================================
# Helpers
# ============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCipher:
    """Reversible stand-in for the comment encryption service."""

    def encrypt(self, plaintext: str) -> bytes:
        return b"enc:" + plaintext.encode("utf-8")

    def decrypt(self, blob: bytes) -> str:
        return blob[len(b"enc:"):].decode("utf-8")


def make_evaluation(
    teacher_id: str = "t-1",
    course_id: str = "c-1",
    program_id: str = "p-1",
    rating: float = 4.0,
    submitted_at: datetime = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc),
) -> EvaluationRecord:
    """Build an anonymized evaluation record for seeding stores."""
    return EvaluationRecord(
        record_id=str(uuid.uuid4()),
        anonymous_token=generate_anonymous_token(str(uuid.uuid4())),
        course_id=course_id,
        teacher_id=teacher_id,
        program_id=program_id,
        school_year="2024-2025",
        ratings={"clarity": rating, "fairness": rating},
        submitted_at=submitted_at,
    )


# ============================================================================
# Clock and Cipher Fixtures
# ============================================================================


@pytest.fixture
def start_time() -> datetime:
    """09:05 UTC, five minutes into an hourly window."""
    return datetime(2025, 3, 10, 9, 5, 30, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time: datetime) -> FakeClock:
    return FakeClock(start_time)


@pytest.fixture
def cipher() -> FakeCipher:
    return FakeCipher()


@pytest.fixture
def sleeps() -> List[float]:
    """Records the submission delays the service asked for."""
    return []


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def enrollments() -> InMemoryEnrollmentStore:
    """Ten enrollments in one course, none evaluated yet."""
    return InMemoryEnrollmentStore(
        EnrollmentRecord(
            enrollment_id=f"enr-{i}",
            course_id="c-1",
            teacher_id="t-1",
            program_id="p-1",
            school_year="2024-2025",
        )
        for i in range(10)
    )


@pytest.fixture
def evaluations() -> InMemoryEvaluationStore:
    return InMemoryEvaluationStore()


@pytest.fixture
def seeded_evaluations() -> InMemoryEvaluationStore:
    """Six evaluations for t-1 and three for t-2."""
    records = [make_evaluation("t-1", rating=4.0) for _ in range(6)]
    records += [make_evaluation("t-2", course_id="c-2", rating=2.0) for _ in range(3)]
    return InMemoryEvaluationStore(records)


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def config() -> PrivacyConfig:
    return PrivacyConfig()


@pytest.fixture
def service(
    config: PrivacyConfig,
    evaluations: InMemoryEvaluationStore,
    enrollments: InMemoryEnrollmentStore,
    cipher: FakeCipher,
    sleeps: List[float],
    clock: FakeClock,
) -> EvaluationService:
    """Service with an empty evaluation store."""
    return EvaluationService(
        config=config,
        evaluations=evaluations,
        enrollments=enrollments,
        cipher=cipher,
        sleep=sleeps.append,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def stats_service(
    config: PrivacyConfig,
    seeded_evaluations: InMemoryEvaluationStore,
    sleeps: List[float],
    clock: FakeClock,
) -> EvaluationService:
    """Service over the seeded evaluation store."""
    return EvaluationService(
        config=config,
        evaluations=seeded_evaluations,
        sleep=sleeps.append,
        clock=clock,
        rng=random.Random(7),
    )
