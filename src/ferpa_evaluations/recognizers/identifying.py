"""Presidio recognizers for identifying content in evaluation submissions.

This module implements PatternRecognizer subclasses for student IDs, email
addresses, phone numbers and self-identifying phrases. The submission gate
runs them over free text to keep identifying comments out of persisted
evaluations.

Recognizers favor recall: a false positive only asks the student to
rephrase, while a miss stores identifying text permanently.
"""

import re
from typing import List, Optional

from presidio_analyzer import Pattern, PatternRecognizer

# Payload keys that must never appear in an evaluation submission
FORBIDDEN_FIELDS = (
    "student_id",
    "student_number",
    "student_name",
    "full_name",
    "email",
    "student_email",
)

# Payload keys scanned as free text
FREE_TEXT_FIELDS = ("comments",)

# Case-sensitive by default so the capitalized-name patterns keep their meaning
_REGEX_FLAGS = re.DOTALL | re.MULTILINE


class IdentifyingPatternRecognizer(PatternRecognizer):
    """PatternRecognizer that carries the issue the gate reports on a match."""

    issue: str = "Comments contain identifying information"

    def __init__(
        self,
        supported_entity: str,
        patterns: List[Pattern],
        context: Optional[List[str]] = None,
        issue: Optional[str] = None,
    ) -> None:
        super().__init__(
            supported_entity=supported_entity,
            patterns=patterns,
            context=context,
            global_regex_flags=_REGEX_FLAGS,
        )
        if issue is not None:
            self.issue = issue


class StudentIDRecognizer(IdentifyingPatternRecognizer):
    """Recognizer for ID-like digit groups.

    Detects patterns like:
    - "2021-12345-678" (registrar format)
    - "Student ID: 12345678"
    - "S12345678" (bare student ID with S prefix)
    """

    issue = "Comments contain potential student ID pattern"

    PATTERNS = [
        Pattern(
            name="id_digit_groups",
            regex=r"\b\d{2,4}[-\s]\d{4,5}[-\s]\d{3,5}\b",
            score=0.8
        ),
        Pattern(
            name="student_id_prefix",
            regex=r"\b[Ss]tudent[\s_-]?[Ii][Dd][:\s]*(\d{6,9})\b",
            score=0.9
        ),
        Pattern(
            name="student_id_bare",
            regex=r"\b[Ss]\d{7,9}\b",
            score=0.7
        ),
    ]

    def __init__(self) -> None:
        super().__init__(
            supported_entity="STUDENT_ID",
            patterns=self.PATTERNS,
            context=["student", "id", "number"]
        )


class EmailRecognizer(IdentifyingPatternRecognizer):
    """Recognizer for email address shapes."""

    issue = "Comments contain email address"

    PATTERNS = [
        Pattern(
            name="email",
            regex=r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
            score=0.9
        ),
        Pattern(
            name="email_domain",
            regex=r"(?i)@[\w.-]+\.(?:edu|com|org|net)\b",
            score=0.6
        ),
    ]

    def __init__(self) -> None:
        super().__init__(
            supported_entity="EMAIL",
            patterns=self.PATTERNS,
            context=["email", "mail", "contact"]
        )


class PhoneRecognizer(IdentifyingPatternRecognizer):
    """Recognizer for ten-digit phone numbers."""

    issue = "Comments contain potential phone number"

    PATTERNS = [
        Pattern(
            name="phone",
            regex=r"\b\d{3}[-\s.]?\d{3}[-\s.]?\d{4}\b",
            score=0.6
        ),
    ]

    def __init__(self) -> None:
        super().__init__(
            supported_entity="PHONE",
            patterns=self.PATTERNS,
            context=["phone", "call", "text", "number"]
        )


class SelfIdentificationRecognizer(IdentifyingPatternRecognizer):
    """Recognizer for phrases where a student names themselves.

    Detects patterns like:
    - "my student number is ..."
    - "I am Jane Doe", "This is Jane Doe"
    - "student number: 12345", "email: jane@"
    """

    issue = "Comments contain self-identifying information"

    PATTERNS = [
        Pattern(
            name="my_student_number",
            regex=r"(?i)\bmy\s+student\s+(?:number|id)\b",
            score=0.8
        ),
        Pattern(
            name="i_am_name",
            regex=r"\b(?i:i\s+am)\s+[A-Z][a-z]+\s+[A-Z][a-z]+",
            score=0.6
        ),
        Pattern(
            name="this_is_name",
            regex=r"\b(?i:this\s+is)\s+[A-Z][a-z]+\s+[A-Z][a-z]+",
            score=0.6
        ),
        Pattern(
            name="student_number_value",
            regex=r"(?i)\bstudent\s+number:\s*\d+",
            score=0.9
        ),
        Pattern(
            name="email_label",
            regex=r"(?i)\bemail:\s*\S+@",
            score=0.8
        ),
    ]

    def __init__(self) -> None:
        super().__init__(
            supported_entity="SELF_IDENTIFICATION",
            patterns=self.PATTERNS
        )


class InstitutionPatternRecognizer(IdentifyingPatternRecognizer):
    """Recognizer for institution-specific identifying formats.

    Institutions supply their own regexes, e.g. a local ID format such as
    r"\\bEMP-\\d{5}\\b".
    """

    issue = "Comments contain institution-specific identifying pattern"

    def __init__(self, institution_patterns: List[str]) -> None:
        """Initialize with one Pattern per configured regex.

        Args:
            institution_patterns: Regexes reported as identifying content.
        """
        patterns = [
            Pattern(
                name=f"custom_{i}",
                regex=p,
                score=0.8
            )
            for i, p in enumerate(institution_patterns)
        ]

        super().__init__(
            supported_entity="CUSTOM",
            patterns=patterns
        )


def default_recognizers(extra_patterns: Optional[List[str]] = None) -> List[IdentifyingPatternRecognizer]:
    """Build the recognizer set used by the submission gate.

    Args:
        extra_patterns: Optional institution-specific regexes (e.g. local
            ID formats) reported as identifying content.
    """
    recognizers: List[IdentifyingPatternRecognizer] = [
        StudentIDRecognizer(),
        EmailRecognizer(),
        PhoneRecognizer(),
        SelfIdentificationRecognizer(),
    ]
    if extra_patterns:
        recognizers.append(InstitutionPatternRecognizer(extra_patterns))
    return recognizers


__all__ = [
    "FORBIDDEN_FIELDS",
    "FREE_TEXT_FIELDS",
    "IdentifyingPatternRecognizer",
    "StudentIDRecognizer",
    "EmailRecognizer",
    "PhoneRecognizer",
    "SelfIdentificationRecognizer",
    "InstitutionPatternRecognizer",
    "default_recognizers",
]
