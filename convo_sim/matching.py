"""Phrase matching used by the emotion tracker and the rubric heuristics.

Matching is deliberately approximate: case-insensitive phrase search with
word boundaries. Components receive a PhraseMatcher so that a classifier can
replace KeywordMatcher without touching their contracts.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Protocol


class PhraseMatcher(Protocol):
    def find(self, text: str, phrases: Iterable[str]) -> set[str]:
        """Return the distinct phrases present in text."""
        ...

    def count(self, text: str, phrase: str) -> int:
        """Return how many times phrase occurs in text."""
        ...


class KeywordMatcher:
    """Case-insensitive whole-phrase search.

    "cpr" matches "started CPR." but not "cprx"; multi-word phrases match
    across any run of whitespace.
    """

    def __init__(self) -> None:
        self._cache: dict[str, re.Pattern[str]] = {}

    def _pattern(self, phrase: str) -> re.Pattern[str]:
        key = phrase.strip().lower()
        compiled = self._cache.get(key)
        if compiled is None:
            words = [re.escape(word) for word in key.split()]
            compiled = re.compile(r"(?<!\w)" + r"\s+".join(words) + r"(?!\w)", re.IGNORECASE)
            self._cache[key] = compiled
        return compiled

    def find(self, text: str, phrases: Iterable[str]) -> set[str]:
        found: set[str] = set()
        for phrase in phrases:
            if phrase.strip() and self._pattern(phrase).search(text):
                found.add(phrase.strip().lower())
        return found

    def count(self, text: str, phrase: str) -> int:
        if not phrase.strip():
            return 0
        return len(self._pattern(phrase).findall(text))
