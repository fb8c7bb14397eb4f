"""
Receipt-Based Unlinkability

Governs how an enrollment moves from "not evaluated" to "evaluated"
without keeping a reversible pointer to the stored evaluation.

States:
- NOT_EVALUATED: initial
- DECOUPLED: evaluated; only a one-way receipt hash is kept (steady state)
- LINKED_PENDING_DECOUPLING: operational override that keeps a temporary
  evaluation pointer; a background sweep removes it after a grace period

The receipt is sha256(token + salt) with a random salt the server never
stores. The student keeps the receipt to confirm their submission was
recorded. The enrollment keeps only sha256(receipt).
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

import structlog

from ferpa_evaluations.errors import DuplicateSubmissionError
from ferpa_evaluations.models import DecouplingResult, EnrollmentLinkage, LinkageState

if TYPE_CHECKING:
    from ferpa_evaluations.storage import EnrollmentStore

logger = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_receipt(anonymous_token: str) -> tuple[str, str]:
    """
    Derive a one-way receipt from an anonymous token.

    Returns:
        Tuple of (receipt, salt). The salt is discarded by callers.
    """
    salt = secrets.token_hex(16)
    receipt = hashlib.sha256(f"{anonymous_token}-{salt}".encode("utf-8")).hexdigest()
    return receipt, salt


def hash_receipt(receipt: str) -> str:
    """One-way hash of a receipt, the only form stored on the enrollment."""
    return hashlib.sha256(receipt.encode("utf-8")).hexdigest()


def verify_receipt(receipt: str, linkage: EnrollmentLinkage) -> bool:
    """Check a student's receipt against the stored hash in constant time."""
    if not receipt or linkage.receipt_hash is None:
        return False
    return hmac.compare_digest(hash_receipt(receipt), linkage.receipt_hash)


def decoupling_cutoff(now: datetime, grace_period_hours: float) -> datetime:
    """Links last updated strictly before this instant are past their grace period."""
    return now - timedelta(hours=grace_period_hours)


def decouple_linkage(linkage: EnrollmentLinkage, now: datetime) -> EnrollmentLinkage:
    """Drop the evaluation pointer and move to DECOUPLED. Receipt is kept."""
    return linkage.model_copy(
        update={
            "state": LinkageState.DECOUPLED,
            "evaluation_pointer": None,
            "decoupled_at": now,
        }
    )


class ReceiptLinkageManager:
    """
    Computes linkage transitions for new submissions.

    Transitions are pure: the caller persists the returned linkage with a
    compare-and-set on NOT_EVALUATED.
    """

    def _require_not_evaluated(self, linkage: EnrollmentLinkage) -> None:
        if linkage.state != LinkageState.NOT_EVALUATED:
            raise DuplicateSubmissionError()

    def record_submission(
        self,
        linkage: EnrollmentLinkage,
        anonymous_token: str,
        now: datetime,
    ) -> tuple[EnrollmentLinkage, str]:
        """
        Move straight to DECOUPLED with a one-way receipt.

        Returns:
            Tuple of (new linkage, receipt for the student)

        Raises:
            DuplicateSubmissionError: If the enrollment was already evaluated
        """
        self._require_not_evaluated(linkage)
        receipt, _salt = generate_receipt(anonymous_token)

        new_linkage = EnrollmentLinkage(
            state=LinkageState.DECOUPLED,
            evaluation_pointer=None,
            receipt_hash=hash_receipt(receipt),
            updated_at=now,
            decoupled_at=now,
        )
        return new_linkage, receipt

    def record_linked_submission(
        self,
        linkage: EnrollmentLinkage,
        evaluation_pointer: str,
        anonymous_token: str,
        now: datetime,
    ) -> tuple[EnrollmentLinkage, str]:
        """
        Move to LINKED_PENDING_DECOUPLING, keeping a temporary pointer.

        Only for deployments that still need the pointer (e.g. to block
        duplicates before token checks exist). The sweep removes it once
        the grace period has passed.

        Raises:
            DuplicateSubmissionError: If the enrollment was already evaluated
        """
        self._require_not_evaluated(linkage)
        receipt, _salt = generate_receipt(anonymous_token)

        new_linkage = EnrollmentLinkage(
            state=LinkageState.LINKED_PENDING_DECOUPLING,
            evaluation_pointer=evaluation_pointer,
            receipt_hash=hash_receipt(receipt),
            updated_at=now,
        )
        return new_linkage, receipt


class DecouplingSweeper:
    """
    Removes transitional evaluation pointers past their grace period.

    Uses an "updated strictly before cutoff" predicate, never "everything
    with a pointer", so a link being created during the sweep survives.
    Safe to run concurrently or repeatedly.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        grace_period_hours: float = 24.0,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize sweeper.

        Args:
            store: Enrollment store with atomic decoupling
            grace_period_hours: How long a pointer may live
            clock: Returns the current aware datetime
        """
        self.store = store
        self.grace_period_hours = grace_period_hours
        self._clock = clock or _utc_now

    def sweep(self) -> DecouplingResult:
        """Run one sweep and report how many enrollments were decoupled."""
        now = self._clock()
        cutoff = decoupling_cutoff(now, self.grace_period_hours)
        decoupled = self.store.decouple_linked_before(cutoff, now)

        logger.info(
            "decoupling_sweep_complete",
            decoupled=decoupled,
            cutoff=cutoff.isoformat(),
        )
        return DecouplingResult(decoupled=decoupled, cutoff=cutoff, swept_at=now)


class DecouplingScheduler:
    """
    Runs the decoupling sweep on a fixed interval in a daemon thread.

    Fire-and-forget: sweep failures are logged and never reach request
    handling.

    Example:
        scheduler = DecouplingScheduler(sweeper, interval_seconds=3600)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, sweeper: DecouplingSweeper, interval_seconds: float = 3600.0):
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> DecouplingResult | None:
        """Run one sweep, logging instead of raising on failure."""
        try:
            return self.sweeper.sweep()
        except Exception:
            logger.exception("decoupling_sweep_failed")
            return None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        """Start the background thread (no-op if already running)."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="decoupling-sweep",
            daemon=True,
        )
        self._thread.start()
        logger.info("decoupling_scheduler_started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the thread to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("decoupling_scheduler_stopped")
