"""Core domain models.

Every engine component and storage function operates on these types.
Pydantic is used for validation and serialisation at every data boundary:
a VignetteConfig that loads is a VignetteConfig the engine can run, and a
SessionState survives model_dump_json() / model_validate_json() unchanged.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class RubricDimension(str, Enum):
    EMPATHY = "empathy"
    CLARITY = "clarity"
    ACCOUNTABILITY = "accountability"
    DE_ESCALATION = "de_escalation"


class CriticalErrorFlag(str, Enum):
    DISALLOWED_PHRASE = "disallowed_phrase"
    FACT_CONTRADICTION = "fact_contradiction"


class ModelBackend(str, Enum):
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    ECHO = "echo"


class ModelId(str, Enum):
    """Supported models. Anything else fails when the vignette is loaded."""

    CLAUDE_SONNET = "claude-3-5-sonnet-20241022"
    CLAUDE_HAIKU = "claude-3-5-haiku-20241022"
    GEMINI_PRO = "gemini-1.5-pro"
    ECHO = "echo"

    @property
    def backend(self) -> ModelBackend:
        return MODEL_BACKENDS[self]


MODEL_BACKENDS: dict[ModelId, ModelBackend] = {
    ModelId.CLAUDE_SONNET: ModelBackend.ANTHROPIC,
    ModelId.CLAUDE_HAIKU: ModelBackend.ANTHROPIC,
    ModelId.GEMINI_PRO: ModelBackend.GEMINI,
    ModelId.ECHO: ModelBackend.ECHO,
}

EmotionLabel = Literal["calm", "concerned", "anxious", "upset", "angry", "hostile"]

PerformanceLevel = Literal["needs_improvement", "developing", "proficient", "exemplary"]


def _sorted_values(items: set) -> list[str]:
    return sorted(item.value for item in items)


# ---------------------------------------------------------------------------
# Vignette: read-only scenario definition
# ---------------------------------------------------------------------------

class VoiceProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    elevenlabs_voice_id: str = ""
    display_label: str = ""
    stability: float = Field(default=0.55, ge=0, le=1)
    similarity_boost: float = Field(default=0.75, ge=0, le=1)


class VoiceConfig(BaseModel):
    """Lines narrated outside the dialogue (opening, closing, context brief)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    opening_line: str = ""
    closing_line: str = ""
    context_brief: str = ""
    voice_profile: VoiceProfile = Field(default_factory=VoiceProfile)


class Persona(BaseModel):
    """The character the model portrays."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: str
    # A label from EmotionLabel, or a raw value on the [-1, 1] scale.
    initial_emotion: EmotionLabel | float = "upset"
    traits: dict[Difficulty, str] = Field(default_factory=dict)
    voice_config: VoiceConfig | None = None

    @field_validator("initial_emotion")
    @classmethod
    def _emotion_in_range(cls, value: EmotionLabel | float) -> EmotionLabel | float:
        if isinstance(value, float) and not -1.0 <= value <= 1.0:
            raise ValueError("initial_emotion must lie within [-1, 1]")
        return value


class ScoreThreshold(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: RubricDimension
    min_score: float = Field(ge=0, le=5)
    min_samples: int = Field(default=1, ge=1)


class EmotionThreshold(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float = Field(ge=-1, le=1)
    direction: Literal["below", "above"] = "below"


class ExitCondition(BaseModel):
    """When a phase hands over to the next one.

    The turn ceiling is mandatory so that no phase can run forever.
    """

    model_config = ConfigDict(frozen=True)

    max_turns: int = Field(ge=1)
    max_turns_by_difficulty: dict[Difficulty, int] = Field(default_factory=dict)
    score_threshold: ScoreThreshold | None = None
    emotion_threshold: EmotionThreshold | None = None

    @field_validator("max_turns_by_difficulty")
    @classmethod
    def _positive_overrides(cls, value: dict[Difficulty, int]) -> dict[Difficulty, int]:
        for difficulty, turns in value.items():
            if turns < 1:
                raise ValueError(f"max_turns for {difficulty.value} must be at least 1")
        return value

    def turn_ceiling(self, difficulty: Difficulty) -> int:
        return self.max_turns_by_difficulty.get(difficulty, self.max_turns)


class Objective(BaseModel):
    """Something the trainee should do within a phase.

    Completed when the trainee's message contains one of its keywords. With
    no keywords at all, two significant words of `text` must appear instead.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    keywords: list[str] = Field(default_factory=list)
    additional_keywords: dict[Difficulty, list[str]] = Field(default_factory=dict)
    removed_keywords: dict[Difficulty, list[str]] = Field(default_factory=dict)

    def keywords_for(self, difficulty: Difficulty) -> list[str]:
        """Base keywords plus the difficulty's additions, minus its removals."""
        removed = {k.strip().lower() for k in self.removed_keywords.get(difficulty, [])}
        keywords = self.keywords + self.additional_keywords.get(difficulty, [])
        return [k for k in keywords if k.strip().lower() not in removed]


class Phase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    order: int
    name: str = ""
    goal: str
    exit_condition: ExitCondition
    rubric_focus: set[RubricDimension] = Field(default_factory=set)
    escalation_triggers: set[str] = Field(default_factory=set)
    opening_line: str = ""
    objectives: list[Objective] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.id.replace("_", " ").title()


class InformationStage(BaseModel):
    """A piece of the story the trainee is expected to disclose."""

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    keywords: list[str] = Field(min_length=1)


class LLMConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: ModelId = ModelId.CLAUDE_HAIKU
    max_response_tokens: int = Field(default=500, ge=1)
    temperature: float = Field(default=0.7, ge=0, le=2)


class RubricHook(BaseModel):
    """Extra phrases for one rubric dimension, added to the built-in ones."""

    model_config = ConfigDict(frozen=True)

    patterns: list[str] = Field(default_factory=list)
    anti_patterns: list[str] = Field(default_factory=list)


class EmotionPolicy(BaseModel):
    """Knobs of the emotional update: decay first, then one summed stimulus."""

    model_config = ConfigDict(frozen=True)

    decay: float = Field(default=0.05, ge=0, le=1)
    trigger_increment: float = Field(default=0.2, ge=0)
    cue_decrement: float = Field(default=0.1, ge=0)
    escalation_scale: dict[Difficulty, float] = Field(
        default_factory=lambda: {Difficulty.BEGINNER: 0.8}
    )
    deescalation_scale: dict[Difficulty, float] = Field(
        default_factory=lambda: {Difficulty.ADVANCED: 0.7}
    )


def _default_weights() -> dict[RubricDimension, float]:
    return {dimension: 1.0 for dimension in RubricDimension}


class VignetteConfig(BaseModel):
    """Versioned, immutable definition of one scenario.

    Safe to cache and share between concurrent sessions.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = 1
    title: str
    category: str = ""
    description: str = ""
    active: bool = True
    difficulty_levels: set[Difficulty] = Field(min_length=1)
    persona: Persona
    facts: list[str] = Field(default_factory=list)
    escalation_triggers: set[str] = Field(default_factory=set)
    deescalation_cues: set[str] = Field(default_factory=set)
    disallowed_phrases: set[str] = Field(default_factory=set)
    contradicting_claims: set[str] = Field(default_factory=set)
    phases: list[Phase] = Field(min_length=1)
    information_stages: list[InformationStage] = Field(default_factory=list)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    rubric_weights: dict[RubricDimension, float] = Field(default_factory=_default_weights)
    passing_score: float = Field(default=3.0, ge=0, le=5)
    excellence_score: float = Field(default=4.0, ge=0, le=5)
    rubric_hooks: dict[RubricDimension, RubricHook] = Field(default_factory=dict)
    emotion_policy: EmotionPolicy = Field(default_factory=EmotionPolicy)
    system_prompt_template: str | None = None

    @model_validator(mode="after")
    def _check_consistency(self) -> VignetteConfig:
        seen: set[str] = set()
        previous_order: int | None = None
        for phase in self.phases:
            if phase.id in seen:
                raise ValueError(f"Duplicate phase id {phase.id!r}")
            seen.add(phase.id)
            if previous_order is not None and phase.order <= previous_order:
                raise ValueError(
                    f"Phase {phase.id!r} has order {phase.order}; "
                    "orders must be unique and strictly increasing"
                )
            previous_order = phase.order
            objective_ids = [objective.id for objective in phase.objectives]
            if len(set(objective_ids)) != len(objective_ids):
                raise ValueError(f"Phase {phase.id!r} has duplicate objective ids")
            threshold = phase.exit_condition.score_threshold
            if threshold and threshold.dimension not in phase.rubric_focus:
                raise ValueError(
                    f"Phase {phase.id!r} waits on {threshold.dimension.value} "
                    "which is not in its rubric_focus"
                )
        stage_ids = [stage.id for stage in self.information_stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValueError("Duplicate information stage ids")
        unknown = set(self.persona.traits) - self.difficulty_levels
        if unknown:
            names = ", ".join(sorted(d.value for d in unknown))
            raise ValueError(f"Persona traits given for undeclared difficulties: {names}")
        if any(weight < 0 for weight in self.rubric_weights.values()):
            raise ValueError("rubric_weights must not be negative")
        if self.excellence_score < self.passing_score:
            raise ValueError("excellence_score must not be below passing_score")
        return self

    @property
    def initial_phase(self) -> Phase:
        return self.phases[0]

    @property
    def terminal_phase(self) -> Phase:
        return self.phases[-1]

    def phase(self, phase_id: str) -> Phase:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(phase_id)

    def phase_index(self, phase_id: str) -> int:
        for index, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return index
        raise KeyError(phase_id)


# ---------------------------------------------------------------------------
# Session: the unit of persistence
# ---------------------------------------------------------------------------

Sender = Literal["user", "persona"]


class Message(BaseModel):
    """One line of dialogue in a session's history."""

    sender: Sender
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    phase_id: str = ""


class EmotionalState(BaseModel):
    value: float = Field(ge=-1, le=1)
    history: list[float] = Field(default_factory=list)


class Assessment(BaseModel):
    """Running rubric means plus sticky critical error flags."""

    per_dimension_score: dict[RubricDimension, float] = Field(default_factory=dict)
    sample_count: dict[RubricDimension, int] = Field(default_factory=dict)
    flags: set[CriticalErrorFlag] = Field(default_factory=set)

    @field_serializer("flags")
    def _serialize_flags(self, flags: set[CriticalErrorFlag]) -> list[str]:
        return _sorted_values(flags)


class PhaseTransition(BaseModel):
    """A phase hand-over. to_phase_id is None when the terminal phase ends."""

    from_phase_id: str
    to_phase_id: str | None
    reason: str
    turn: int


class SessionState(BaseModel):
    """Complete record of one trainee's progress through a vignette.

    The engine never keeps one of these between calls: every call receives
    the full prior state and returns a new one.
    """

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    vignette_id: str
    vignette_version: int = 1
    difficulty: Difficulty
    user_id: str
    history: list[Message] = Field(default_factory=list)
    current_phase_id: str
    turns_in_phase: int = 0
    turn_count: int = 0
    emotional_state: EmotionalState
    assessment: Assessment = Field(default_factory=Assessment)
    transitions: list[PhaseTransition] = Field(default_factory=list)
    # phase id -> objective ids, in completion order
    objectives_completed: dict[str, list[str]] = Field(default_factory=dict)
    revealed_information: list[str] = Field(default_factory=list)
    completed: bool = False
    completion_reason: str | None = None
    version: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Turn output
# ---------------------------------------------------------------------------

class AssessmentUpdate(BaseModel):
    """What one turn changed in the assessment.

    dimension_deltas holds this turn's raw contributions; scores holds the
    running means after merging them; flags is the cumulative set.
    """

    dimension_deltas: dict[RubricDimension, float] = Field(default_factory=dict)
    new_flags: set[CriticalErrorFlag] = Field(default_factory=set)
    flags: set[CriticalErrorFlag] = Field(default_factory=set)
    scores: dict[RubricDimension, float] = Field(default_factory=dict)

    @field_serializer("new_flags", "flags")
    def _serialize_flags(self, flags: set[CriticalErrorFlag]) -> list[str]:
        return _sorted_values(flags)


class AssessmentSummary(BaseModel):
    scores: dict[RubricDimension, float]
    sample_count: dict[RubricDimension, int]
    overall: float
    level: PerformanceLevel
    flags: set[CriticalErrorFlag] = Field(default_factory=set)

    @field_serializer("flags")
    def _serialize_flags(self, flags: set[CriticalErrorFlag]) -> list[str]:
        return _sorted_values(flags)


class TurnResult(BaseModel):
    response_text: str
    emotional_value: float
    emotional_delta: float
    phase_transition: PhaseTransition | None = None
    assessment_update: AssessmentUpdate
    new_objectives: list[str] = Field(default_factory=list)
    new_revelations: list[str] = Field(default_factory=list)
    session_complete: bool = False
    state: SessionState
