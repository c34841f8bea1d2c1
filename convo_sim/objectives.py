"""Learner objectives and revealed information.

Objectives belong to a phase. A trainee message completes an objective of
the phase it was sent in when it contains one of the objective's keywords
for the session's difficulty (base keywords plus additional_keywords, minus
removed_keywords). An objective without keywords falls back to its own
wording: two of its significant words (longer than three letters) must
appear in the message.

Information stages belong to the vignette. A stage is revealed the first
time a trainee message contains one of its keywords.

Both are sticky: once completed or revealed, later messages never undo them,
and each id is recorded once, in the order it happened.
"""

from __future__ import annotations

import re

from convo_sim.matching import KeywordMatcher, PhraseMatcher
from convo_sim.models import Objective, Phase, SessionState, VignetteConfig

FALLBACK_MATCHES = 2
SIGNIFICANT_WORD_LENGTH = 4

_WORD = re.compile(r"[a-z']+")


def significant_words(text: str) -> list[str]:
    words: list[str] = []
    for word in _WORD.findall(text.lower()):
        if len(word) >= SIGNIFICANT_WORD_LENGTH and word not in words:
            words.append(word)
    return words


class ObjectiveTracker:
    def __init__(self, matcher: PhraseMatcher | None = None) -> None:
        self._matcher = matcher or KeywordMatcher()

    def is_met(self, objective: Objective, text: str, state: SessionState) -> bool:
        keywords = objective.keywords_for(state.difficulty)
        if keywords:
            return bool(self._matcher.find(text, keywords))
        words = significant_words(objective.text)
        if not words:
            return False
        return len(self._matcher.find(text, words)) >= min(FALLBACK_MATCHES, len(words))

    def detect_objectives(self, state: SessionState, phase: Phase, text: str) -> list[str]:
        """Record the phase objectives `text` completes; return the new ids.

        Mutates `state`; the engine only ever passes its private working copy.
        """
        done = state.objectives_completed.get(phase.id, [])
        new = [
            objective.id
            for objective in phase.objectives
            if objective.id not in done and self.is_met(objective, text, state)
        ]
        if new:
            state.objectives_completed[phase.id] = done + new
        return new

    def detect_revelations(self, state: SessionState, vignette: VignetteConfig, text: str) -> list[str]:
        """Record the information stages `text` discloses; return the new ids."""
        new = [
            stage.id
            for stage in vignette.information_stages
            if stage.id not in state.revealed_information and self._matcher.find(text, stage.keywords)
        ]
        state.revealed_information.extend(new)
        return new


def completed_objectives(state: SessionState, phase: Phase) -> list[Objective]:
    done = set(state.objectives_completed.get(phase.id, []))
    return [objective for objective in phase.objectives if objective.id in done]


def pending_objectives(state: SessionState, phase: Phase) -> list[Objective]:
    done = set(state.objectives_completed.get(phase.id, []))
    return [objective for objective in phase.objectives if objective.id not in done]
