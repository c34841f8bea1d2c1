"""Persona emotional state — baseline, per-turn update, labels and trend.

Scale: a single value in [-1.0, 1.0]. Negative is calm / de-escalated,
positive is escalated / distressed, 0 is neutral.

Update rule (one call per trainee turn):
  1. decay       move toward 0 by policy.decay, never past it
  2. stimulus    + trigger_increment per distinct escalation trigger found
                 - cue_decrement per distinct de-escalation cue found
                 each side scaled by the difficulty factor
  3. clamp       add the summed stimulus once, clamp to [-1, 1]

Summing before clamping makes the result independent of the order in which
matches are enumerated. A phrase counts once per message however often it
is repeated.

Labels (value -> label, lower bound inclusive):
  < -0.5   calm
  < 0.0    concerned
  < 0.4    upset
  < 0.8    angry
  >= 0.8   hostile
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from convo_sim.matching import KeywordMatcher, PhraseMatcher
from convo_sim.models import Difficulty, Persona, Phase, VignetteConfig

MIN_VALUE = -1.0
MAX_VALUE = 1.0

# initial_emotion label -> numeric baseline
EMOTION_BASELINES: dict[str, float] = {
    "calm": -0.6,
    "concerned": -0.4,
    "anxious": -0.2,
    "upset": 0.0,
    "angry": 0.4,
    "hostile": 0.8,
}

# (upper_bound_exclusive, label): first match wins
LABEL_LEVELS: list[tuple[float, str]] = [
    (-0.5, "calm"),
    (0.0, "concerned"),
    (0.4, "upset"),
    (0.8, "angry"),
]

Trajectory = Literal["improving", "stable", "worsening"]


def clamp(value: float) -> float:
    return max(MIN_VALUE, min(MAX_VALUE, value))


def label(value: float) -> str:
    """Return the descriptive label for an emotional value."""
    for bound, name in LABEL_LEVELS:
        if value < bound:
            return name
    return "hostile"


def trajectory(history: list[float], window: int = 5) -> Trajectory:
    """Compare the ends of the last `window` values; 0.1 is the dead band."""
    if len(history) < window:
        return "stable"
    recent = history[-window:]
    difference = recent[-1] - recent[0]
    if difference < -0.1:
        return "improving"
    if difference > 0.1:
        return "worsening"
    return "stable"


@dataclass(frozen=True)
class EmotionUpdate:
    new_value: float
    delta: float
    matched_triggers: frozenset[str] = field(default_factory=frozenset)
    matched_cues: frozenset[str] = field(default_factory=frozenset)


class EmotionalStateTracker:
    """Computes the persona's next emotional value. Holds no session state."""

    def __init__(self, matcher: PhraseMatcher | None = None) -> None:
        self._matcher = matcher or KeywordMatcher()

    @staticmethod
    def baseline(persona: Persona) -> float:
        """Map the persona's initial emotion to a starting value."""
        if isinstance(persona.initial_emotion, str):
            return EMOTION_BASELINES[persona.initial_emotion]
        return clamp(float(persona.initial_emotion))

    def update(
        self,
        current: float,
        message: str,
        phase: Phase,
        vignette: VignetteConfig,
        difficulty: Difficulty,
    ) -> EmotionUpdate:
        policy = vignette.emotion_policy

        decayed = current
        if current > 0:
            decayed = max(0.0, current - policy.decay)
        elif current < 0:
            decayed = min(0.0, current + policy.decay)

        triggers = self._matcher.find(message, vignette.escalation_triggers | phase.escalation_triggers)
        cues = self._matcher.find(message, vignette.deescalation_cues)

        stimulus = (
            len(triggers) * policy.trigger_increment * policy.escalation_scale.get(difficulty, 1.0)
            - len(cues) * policy.cue_decrement * policy.deescalation_scale.get(difficulty, 1.0)
        )
        new_value = clamp(decayed + stimulus)

        return EmotionUpdate(
            new_value=new_value,
            delta=new_value - current,
            matched_triggers=frozenset(triggers),
            matched_cues=frozenset(cues),
        )
