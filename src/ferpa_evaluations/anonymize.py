"""
Anonymization Primitives

This is the SUBMISSION PRIVACY GATE.

Before an evaluation is persisted it MUST pass through this layer.
Nothing stored may be traced back to the student who submitted it.

Key features:
- One-way anonymous tokens (ephemeral randomness is never stored)
- Address generalization (last IPv4 octet / trailing IPv6 groups dropped)
- Timestamp rounding to the hour
- Random submission delay to decorrelate action and persistence
- Payload validation against forbidden fields and identifying text
- Comment sanitization against stylometric fingerprinting

All functions here are pure apart from reading the OS random source.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Mapping

import structlog

from ferpa_evaluations.errors import InvalidSubmissionError, RandomSourceUnavailableError
from ferpa_evaluations.models import SubmissionValidation
from ferpa_evaluations.recognizers.identifying import (
    FORBIDDEN_FIELDS,
    FREE_TEXT_FIELDS,
    IdentifyingPatternRecognizer,
    default_recognizers,
)

logger = structlog.get_logger()

TOKEN_HEX_LENGTH = 128

_IPV4 = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_HEX_GROUP = re.compile(r"^[0-9A-Fa-f]{0,4}$")

_system_random = secrets.SystemRandom()


def generate_anonymous_token(enrollment_identity: str) -> str:
    """
    Generate a one-way anonymous token for a single submission.

    Combines a hash of the enrollment identity, 32 fresh random bytes and
    the current time, then runs SHA-512 over the combination. The random
    bytes are discarded, so the identity -> token mapping cannot be
    rebuilt even with full database access.

    Args:
        enrollment_identity: Opaque enrollment identifier

    Returns:
        128-character hex token

    Raises:
        RandomSourceUnavailableError: If the OS random source fails
    """
    try:
        random_hex = secrets.token_bytes(32).hex()
    except (OSError, NotImplementedError) as e:
        logger.critical("random_source_unavailable", error=str(e))
        raise RandomSourceUnavailableError("Cryptographic random source unavailable") from e

    identity_hash = hashlib.sha256(str(enrollment_identity).encode("utf-8")).hexdigest()
    timestamp_ms = time.time_ns() // 1_000_000

    combined = f"{identity_hash}-{timestamp_ms}-{random_hex}"
    return hashlib.sha512(combined.encode("utf-8")).hexdigest()


def is_anonymous_token(value: str) -> bool:
    """Check the shape of a token (128 lowercase hex characters)."""
    return (
        isinstance(value, str)
        and len(value) == TOKEN_HEX_LENGTH
        and all(c in "0123456789abcdef" for c in value)
    )


def anonymize_address(address: str | None) -> str | None:
    """
    Generalize a source address so it no longer identifies a host.

    Dotted quads keep the first three octets and zero the last.
    Colon-grouped addresses keep the first three groups followed by a
    zero terminator. Only the first entry of a forwarded-for list is used.

    Args:
        address: Raw address, possibly a comma-separated proxy chain

    Returns:
        Generalized address, or None for anything unrecognized
    """
    if not address:
        return None

    candidate = address.split(",")[0].strip()

    ipv4 = _IPV4.match(candidate)
    if ipv4:
        octets = [int(o) for o in ipv4.groups()]
        if all(0 <= o <= 255 for o in octets):
            return f"{octets[0]}.{octets[1]}.{octets[2]}.0"

    elif ":" in candidate:
        groups = candidate.split(":")
        leading = groups[:3]
        if (
            3 <= len(groups) <= 8
            and all(g and _HEX_GROUP.match(g) for g in leading)
            and all(_HEX_GROUP.match(g) for g in groups)
        ):
            return f"{':'.join(leading)}::0"

    # Never store a raw or unrecognized value
    logger.warning("address_anonymization_failed", reason="unrecognized_format")
    return None


def round_timestamp(timestamp: datetime | None = None) -> datetime:
    """Floor a timestamp to the top of its hour."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    return timestamp.replace(minute=0, second=0, microsecond=0)


def sample_submission_delay(min_seconds: float = 2.0, max_seconds: float = 8.0) -> float:
    """
    Sample a uniform random delay in [min_seconds, max_seconds].

    Used to decorrelate the moment a student acts from the moment the
    evaluation becomes durable.
    """
    if min_seconds < 0:
        raise ValueError("min_seconds must not be negative")
    if min_seconds > max_seconds:
        raise ValueError("min_seconds must not exceed max_seconds")
    return _system_random.uniform(min_seconds, max_seconds)


def mixing_pool_id(timestamp: datetime | None = None, window_minutes: int = 15) -> str:
    """
    Identify the submission mixing pool for a timestamp.

    Submissions in the same window share a pool id, so they can be
    persisted as a batch.
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    minutes = (timestamp.minute // window_minutes) * window_minutes
    window_start = timestamp.replace(minute=minutes, second=0, microsecond=0)
    return hashlib.sha256(window_start.isoformat().encode("utf-8")).hexdigest()


def privacy_safe_audit_entry(action: str, category: str, **metadata: Any) -> dict[str, Any]:
    """
    Build an audit log entry that cannot identify a student.

    Forbidden identity fields are dropped from the metadata before the
    entry is returned.
    """
    safe_metadata = {k: v for k, v in metadata.items() if k not in FORBIDDEN_FIELDS}
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "category": category,
        "metadata": safe_metadata,
        "audit_token": secrets.token_hex(16),
    }


class SubmissionGate:
    """
    Enforces anonymity of submission payloads before persistence.

    This is the hard gate. No payload should reach storage without
    passing through it.
    """

    _REPEATED_MARKS = re.compile(r"([!?])[!?]+")
    _ELLIPSIS = re.compile(r"\.{2,}")
    _WHITESPACE = re.compile(r"\s+")

    def __init__(
        self,
        recognizers: list[IdentifyingPatternRecognizer] | None = None,
        comment_min_length: int = 20,
        comment_max_length: int = 500,
    ):
        """
        Initialize gate.

        Args:
            recognizers: Free-text recognizers (defaults to the built-in set)
            comment_min_length: Minimum sanitized comment length
            comment_max_length: Maximum sanitized comment length
        """
        self.recognizers = recognizers if recognizers is not None else default_recognizers()
        self.comment_min_length = comment_min_length
        self.comment_max_length = comment_max_length

        logger.info(
            "submission_gate_initialized",
            recognizers=[r.supported_entities[0] for r in self.recognizers],
        )

    def validate(self, payload: Mapping[str, Any]) -> SubmissionValidation:
        """
        Check a payload for forbidden fields and identifying free text.

        Args:
            payload: Submission payload

        Returns:
            SubmissionValidation with the issues found
        """
        issues: list[str] = []

        for field_name in FORBIDDEN_FIELDS:
            if field_name in payload:
                issues.append(f"Forbidden field detected: {field_name}")

        for field_name in FREE_TEXT_FIELDS:
            text = payload.get(field_name)
            if text is None:
                continue
            if not isinstance(text, str):
                issues.append("Comments must be text")
                continue
            if not text:
                continue
            for recognizer in self.recognizers:
                results = recognizer.analyze(text, entities=recognizer.supported_entities)
                # One issue per recognizer however many spans matched
                if results:
                    issues.append(recognizer.issue)

        return SubmissionValidation(valid=not issues, issues=issues)

    def ensure_valid(self, payload: Mapping[str, Any]) -> None:
        """
        Raise if a payload would leak identity.

        Raises:
            InvalidSubmissionError: With a generic public message
        """
        validation = self.validate(payload)
        if not validation.valid:
            # Issue details stay out of the logs as well as the response
            logger.warning("submission_gate_blocked", issue_count=len(validation.issues))
            raise InvalidSubmissionError(validation.issues)

    def sanitize_comment(self, comment: str | None) -> str:
        """
        Reduce stylometric markers in a comment and enforce length bounds.

        Repeated punctuation collapses to a single mark, ellipses to a
        period, and whitespace runs to one space. Empty comments are
        allowed.

        Raises:
            InvalidSubmissionError: If the comment is not text, or the
                sanitized comment is too short or long
        """
        if comment is not None and not isinstance(comment, str):
            raise InvalidSubmissionError(["Comments must be text"], message="Comments must be text.")
        if not comment or not comment.strip():
            return ""

        text = self._REPEATED_MARKS.sub(r"\1", comment)
        text = self._ELLIPSIS.sub(".", text)
        text = self._WHITESPACE.sub(" ", text).strip()

        if len(text) < self.comment_min_length:
            raise InvalidSubmissionError(
                ["Comment too short"],
                message=f"Comments must be at least {self.comment_min_length} characters.",
            )
        if len(text) > self.comment_max_length:
            raise InvalidSubmissionError(
                ["Comment too long"],
                message=f"Comments must be at most {self.comment_max_length} characters.",
            )
        return text


_default_gate: SubmissionGate | None = None


def _gate() -> SubmissionGate:
    global _default_gate
    if _default_gate is None:
        _default_gate = SubmissionGate()
    return _default_gate


def validate_submission_payload(payload: Mapping[str, Any]) -> SubmissionValidation:
    """Validate a payload with the default recognizer set."""
    return _gate().validate(payload)


def ensure_valid_submission(payload: Mapping[str, Any]) -> None:
    """Raise InvalidSubmissionError if the payload fails the default gate."""
    _gate().ensure_valid(payload)
