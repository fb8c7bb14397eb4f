"""Presidio recognizers for identifying content in submissions.

This module contains the recognizers the submission gate uses to detect
student IDs, emails, phone numbers and self-identifying phrases.
"""

from ferpa_evaluations.recognizers.identifying import (
    FORBIDDEN_FIELDS,
    FREE_TEXT_FIELDS,
    EmailRecognizer,
    IdentifyingPatternRecognizer,
    InstitutionPatternRecognizer,
    PhoneRecognizer,
    SelfIdentificationRecognizer,
    StudentIDRecognizer,
    default_recognizers,
)

__all__ = [
    "FORBIDDEN_FIELDS",
    "FREE_TEXT_FIELDS",
    "EmailRecognizer",
    "IdentifyingPatternRecognizer",
    "InstitutionPatternRecognizer",
    "PhoneRecognizer",
    "SelfIdentificationRecognizer",
    "StudentIDRecognizer",
    "default_recognizers",
]
