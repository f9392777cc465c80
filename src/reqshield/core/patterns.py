"""
Compiled pattern sets for malicious-request detection.
"""

import re
from typing import Iterable, List, Optional, Pattern

from ..config import SanitizationSettings


def compile_patterns(patterns: Iterable[str]) -> List[Pattern[str]]:
    """Compile case-insensitive patterns, preserving order."""
    return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


def matches_path_prefix(path: str, prefix: str) -> bool:
    """
    Segment-aware prefix match.

    ``/api`` matches ``/api`` and ``/api/users`` but not ``/apiary``.
    """
    if prefix in ("", "/"):
        return True
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class PatternMatcher:
    """
    Ordered pattern sets split by how a match is handled.

    - blocking: rejected wherever they appear
    - markup: rejected in the path and headers, entity-encoded elsewhere
    - suspicious: flagged, request continues
    - scanner: user-agent signatures, flagged only
    """

    def __init__(
        self,
        blocking: Iterable[str],
        markup: Iterable[str],
        suspicious: Iterable[str],
        scanner_signatures: Iterable[str],
    ) -> None:
        self.blocking = compile_patterns(blocking)
        self.markup = compile_patterns(markup)
        self.suspicious = compile_patterns(suspicious)
        self.scanner = compile_patterns(scanner_signatures)

    @classmethod
    def from_settings(cls, settings: SanitizationSettings) -> "PatternMatcher":
        return cls(
            blocking=settings.blocking_patterns,
            markup=settings.markup_patterns,
            suspicious=settings.suspicious_patterns,
            scanner_signatures=settings.scanner_signatures,
        )

    @staticmethod
    def _first_match(patterns: List[Pattern[str]], text: str) -> Optional[str]:
        for pattern in patterns:
            if pattern.search(text):
                return pattern.pattern
        return None

    def find_blocking(self, text: str) -> Optional[str]:
        """Return the first blocking pattern found in ``text``, if any."""
        return self._first_match(self.blocking, text)

    def find_markup(self, text: str) -> Optional[str]:
        return self._first_match(self.markup, text)

    def find_suspicious(self, text: str) -> Optional[str]:
        return self._first_match(self.suspicious, text)

    def is_scanner(self, user_agent: Optional[str]) -> bool:
        if not user_agent:
            return False
        return self._first_match(self.scanner, user_agent) is not None
