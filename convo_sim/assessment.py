"""Rubric scoring of trainee messages.

Each turn, every dimension in the active phase's rubric_focus gets one
contribution on the [0, 5] scale:

    2.5 + 0.75 * sum(confidence of matched patterns)
        - penalty * sum(confidence of matched anti-patterns)

clamped to [0, 5]. The anti-pattern penalty is 1.0 (1.25 for
accountability) scaled by difficulty. The session keeps a running mean and a
sample count per dimension, so the final score is the mean over every turn
that touched the dimension.

Critical error flags are independent of the numbers and never cleared.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from convo_sim.matching import KeywordMatcher, PhraseMatcher
from convo_sim.models import (
    Assessment,
    AssessmentSummary,
    AssessmentUpdate,
    CriticalErrorFlag,
    Difficulty,
    PerformanceLevel,
    RubricDimension,
    VignetteConfig,
)

MIN_SCORE = 0.0
MAX_SCORE = 5.0
NEUTRAL_SCORE = 2.5
PATTERN_REWARD = 0.75

ANTI_PATTERN_PENALTY: dict[RubricDimension, float] = {
    RubricDimension.EMPATHY: 1.0,
    RubricDimension.CLARITY: 1.0,
    RubricDimension.ACCOUNTABILITY: 1.25,
    RubricDimension.DE_ESCALATION: 1.0,
}

DIFFICULTY_PENALTY_SCALE: dict[Difficulty, float] = {
    Difficulty.BEGINNER: 0.8,
    Difficulty.INTERMEDIATE: 1.0,
    Difficulty.ADVANCED: 1.2,
}

MEDICAL_JARGON = [
    "iatrogenic", "ventricular", "tachycardia", "defibrillation",
    "cardiac arrest", "biphasic", "amiodarone", "norepinephrine",
    "adenosine", "systolic", "diastolic", "hemodynamic", "qrs",
    "ekg", "ecg", "rosc", "cpr", "acls",
]

SEQUENCE_WORDS = ["first", "then", "next", "finally", "after that"]

# (patterns, anti_patterns) per dimension; vignette rubric_hooks add to these
DEFAULT_HOOKS: dict[RubricDimension, tuple[list[str], list[str]]] = {
    RubricDimension.EMPATHY: (
        [
            "i understand", "i can imagine", "that must be", "i'm sorry",
            "i hear you", "that sounds", "i can see", "that's difficult",
            "must be hard", "it's okay to feel",
        ],
        [
            "don't worry", "it's not a big deal", "at least", "you shouldn't feel",
            "let's move on",
        ],
    ),
    RubricDimension.CLARITY: (
        [
            "what this means", "in other words", "let me explain", "next step",
            "next steps", "do you have any questions", "what happened was",
            "to put it simply",
        ],
        [*MEDICAL_JARGON, "it's complicated", "i can't really say"],
    ),
    RubricDimension.ACCOUNTABILITY: (
        [
            "i made a mistake", "i made an error", "i take responsibility",
            "i was wrong", "this is my fault", "i apologize for",
            "i accept responsibility", "we are reviewing", "to prevent this",
        ],
        [
            "it's not my fault", "not my responsibility", "following protocol",
            "standard procedure", "wasn't my decision", "everyone makes mistakes",
            "these things happen", "can't be prevented", "part of the job",
        ],
    ),
    RubricDimension.DE_ESCALATION: (
        [
            "take your time", "i'm here", "at your pace", "i want to help",
            "what questions do you have", "whatever you need", "we can talk",
        ],
        [
            "calm down", "you need to relax", "there's no need to",
            "lower your voice", "you're overreacting",
        ],
    ),
}


@dataclass(frozen=True)
class AssessmentDelta:
    dimension_deltas: dict[RubricDimension, float] = field(default_factory=dict)
    flags: frozenset[CriticalErrorFlag] = field(default_factory=frozenset)


class AssessmentEngine:
    """Scores messages and folds the scores into a session's Assessment."""

    def __init__(self, matcher: PhraseMatcher | None = None) -> None:
        self._matcher = matcher or KeywordMatcher()

    def confidence(self, pattern: str, text: str) -> float:
        """Confidence that a matched pattern is meaningful, in [0.5, 0.95]."""
        value = 0.7
        occurrences = self._matcher.count(text, pattern)
        if occurrences > 1:
            value = min(0.95, value + (occurrences - 1) * 0.1)
        if len(pattern.split()) > 3:
            value = min(0.95, value + 0.15)
        if len(pattern) < 5:
            value = max(0.5, value - 0.2)
        return value

    def _hooks(
        self, dimension: RubricDimension, vignette: VignetteConfig
    ) -> tuple[list[str], list[str]]:
        patterns, anti_patterns = DEFAULT_HOOKS[dimension]
        extra = vignette.rubric_hooks.get(dimension)
        if extra is None:
            return patterns, anti_patterns
        return [*patterns, *extra.patterns], [*anti_patterns, *extra.anti_patterns]

    def _is_structured(self, text: str) -> bool:
        """Sequenced, reasonably sized, and free of jargon."""
        return (
            bool(self._matcher.find(text, SEQUENCE_WORDS))
            and 50 < len(text) < 300
            and not self._matcher.find(text, MEDICAL_JARGON)
        )

    def score_dimension(
        self,
        text: str,
        dimension: RubricDimension,
        difficulty: Difficulty,
        vignette: VignetteConfig,
    ) -> float:
        patterns, anti_patterns = self._hooks(dimension, vignette)
        reward = sum(self.confidence(p, text) for p in self._matcher.find(text, patterns))
        if dimension is RubricDimension.CLARITY and self._is_structured(text):
            reward += 0.7
        penalty_rate = ANTI_PATTERN_PENALTY[dimension] * DIFFICULTY_PENALTY_SCALE[difficulty]
        penalty = sum(self.confidence(p, text) for p in self._matcher.find(text, anti_patterns))
        score = NEUTRAL_SCORE + PATTERN_REWARD * reward - penalty_rate * penalty
        return max(MIN_SCORE, min(MAX_SCORE, score))

    def detect_flags(self, text: str, vignette: VignetteConfig) -> frozenset[CriticalErrorFlag]:
        flags: set[CriticalErrorFlag] = set()
        if self._matcher.find(text, vignette.disallowed_phrases):
            flags.add(CriticalErrorFlag.DISALLOWED_PHRASE)
        if self._matcher.find(text, vignette.contradicting_claims):
            flags.add(CriticalErrorFlag.FACT_CONTRADICTION)
        return frozenset(flags)

    def score_message(
        self,
        text: str,
        focus: set[RubricDimension],
        difficulty: Difficulty,
        vignette: VignetteConfig,
    ) -> AssessmentDelta:
        # Sorted so the delta dict has a stable order regardless of set iteration.
        deltas = {
            dimension: self.score_dimension(text, dimension, difficulty, vignette)
            for dimension in sorted(focus, key=lambda d: d.value)
        }
        return AssessmentDelta(dimension_deltas=deltas, flags=self.detect_flags(text, vignette))

    @staticmethod
    def merge(assessment: Assessment, delta: AssessmentDelta) -> tuple[Assessment, AssessmentUpdate]:
        """Fold one turn into the running means. Returns (new assessment, update)."""
        scores = dict(assessment.per_dimension_score)
        counts = dict(assessment.sample_count)
        for dimension, contribution in delta.dimension_deltas.items():
            n = counts.get(dimension, 0)
            mean = scores.get(dimension, 0.0)
            scores[dimension] = mean + (contribution - mean) / (n + 1)
            counts[dimension] = n + 1

        new_flags = set(delta.flags) - assessment.flags
        flags = assessment.flags | set(delta.flags)

        merged = Assessment(per_dimension_score=scores, sample_count=counts, flags=flags)
        update = AssessmentUpdate(
            dimension_deltas=dict(delta.dimension_deltas),
            new_flags=new_flags,
            flags=set(flags),
            scores=dict(scores),
        )
        return merged, update

    @staticmethod
    def summarize(assessment: Assessment, vignette: VignetteConfig) -> AssessmentSummary:
        """Weighted overall score and performance level for a session."""
        scored = assessment.per_dimension_score
        if scored:
            weights = {d: vignette.rubric_weights.get(d, 0.0) for d in scored}
            total = sum(weights.values())
            if total > 0:
                overall = sum(scored[d] * weights[d] for d in scored) / total
            else:
                overall = sum(scored.values()) / len(scored)
        else:
            overall = 0.0

        level: PerformanceLevel
        if overall >= vignette.excellence_score:
            level = "exemplary"
        elif overall >= vignette.passing_score:
            level = "proficient"
        elif overall >= vignette.passing_score * 0.7:
            level = "developing"
        else:
            level = "needs_improvement"

        return AssessmentSummary(
            scores=dict(scored),
            sample_count=dict(assessment.sample_count),
            overall=overall,
            level=level,
            flags=set(assessment.flags),
        )
