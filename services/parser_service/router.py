"""Choose which parser handles a line."""

import re

from shared.errors import ValidationError

MATH = "math"
UNIT = "unit"
LANGUAGE = "language"

# Checked in order, the first match decides
DOMAIN_PATTERNS = [
    (MATH, re.compile(r"^[\d\s+\-*/().]+$")),
    (UNIT, re.compile(r"(?:convert\s+)?\d+\.?\d*\s*[a-zA-Z°]+\s+(?:to|in|into)\s+[a-zA-Z°]+", re.IGNORECASE)),
    (LANGUAGE, re.compile(
        r"\b(next|last|ago|from|later|in)\b|\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
        re.IGNORECASE,
    )),
]


class ParserRouter:
    """Rule-based line classifier."""

    def classify(self, text: str) -> str:
        """
        Return ``math``, ``unit`` or ``language`` for a line.

        Lines matching no rule are language lines, since most notes are prose.

        Raises:
            ValidationError: If the line is empty or only whitespace
        """
        if not text or not text.strip():
            raise ValidationError("Empty input")

        for domain, pattern in DOMAIN_PATTERNS:
            if pattern.search(text):
                return domain
        return LANGUAGE
