"""Conversation engine — runs one trainee turn end-to-end.

Turn flow (process_message):
  1. Validate: session not complete, message not empty, state belongs to
     this vignette, difficulty allowed, phase known.
  2. Append the trainee message to a private copy of the state.
  3. Score the message against the current phase's rubric focus and fold
     the scores into the running assessment.
  4. Update the persona's emotional value, then record the phase
     objectives the message completes and the information it reveals.
  5. Count the turn, then check the phase exit condition and advance (or
     complete the session from the terminal phase).
  6. Render the persona system prompt for the phase now in effect.
  7. Ask the provider for a reply on the windowed history.
  8. Append the reply, bump the version, return a TurnResult.

The caller's state is never modified. When step 7 fails, GenerationFailure
propagates with `pending_state` attached and the caller's state is still the
valid pre-turn state, so repeating the call with it is safe and produces the
same assessment and emotion updates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from convo_sim.assessment import AssessmentEngine
from convo_sim.emotion import EmotionalStateTracker
from convo_sim.errors import GenerationFailure, InvalidRequestError, SessionCompleteError
from convo_sim.llm import ModelProvider
from convo_sim.matching import KeywordMatcher, PhraseMatcher
from convo_sim.models import (
    AssessmentSummary,
    Difficulty,
    EmotionalState,
    Message,
    PhaseTransition,
    SessionState,
    TurnResult,
    VignetteConfig,
    utcnow,
)
from convo_sim.objectives import ObjectiveTracker
from convo_sim.phases import PhaseManager
from convo_sim.prompts import build_context, render_system_prompt

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10


class ConversationEngine:
    """Stateless orchestrator for one vignette.

    One engine can serve any number of sessions of its vignette concurrently;
    everything session-specific travels in the SessionState argument.
    """

    def __init__(
        self,
        vignette: VignetteConfig,
        provider: ModelProvider,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        matcher: PhraseMatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if history_window < 1:
            raise ValueError("history_window must be at least 1")
        self.vignette = vignette
        self._provider = provider
        self._history_window = history_window
        self._clock = clock
        matcher = matcher or KeywordMatcher()
        self.phases = PhaseManager(vignette)
        self.emotions = EmotionalStateTracker(matcher)
        self.assessor = AssessmentEngine(matcher)
        self.objectives = ObjectiveTracker(matcher)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _difficulty(self, value: Difficulty | str) -> Difficulty:
        try:
            difficulty = Difficulty(value)
        except ValueError as e:
            raise InvalidRequestError(f"Unknown difficulty {value!r}") from e
        if difficulty not in self.vignette.difficulty_levels:
            raise InvalidRequestError(
                f"Vignette {self.vignette.id} does not offer {difficulty.value} difficulty"
            )
        return difficulty

    def start_session(
        self,
        difficulty: Difficulty | str,
        user_id: str,
        session_id: str | None = None,
    ) -> SessionState:
        """Create the initial state: first phase, baseline emotion, empty assessment."""
        level = self._difficulty(difficulty)
        if not user_id:
            raise InvalidRequestError("user_id is required")

        now = self._clock()
        initial = self.phases.initial_phase()
        baseline = self.emotions.baseline(self.vignette.persona)
        state = SessionState(
            vignette_id=self.vignette.id,
            vignette_version=self.vignette.version,
            difficulty=level,
            user_id=user_id,
            current_phase_id=initial.id,
            emotional_state=EmotionalState(value=baseline, history=[baseline]),
            started_at=now,
            updated_at=now,
        )
        if session_id:
            state.session_id = session_id
        if initial.opening_line:
            state.history.append(
                Message(sender="persona", text=initial.opening_line, timestamp=now, phase_id=initial.id)
            )
        logger.info(
            "session=%s started vignette=%s difficulty=%s",
            state.session_id, self.vignette.id, level.value,
        )
        return state

    def end_session(self, state: SessionState, reason: str = "ended_by_user") -> SessionState:
        """Terminate a session before its terminal phase completes."""
        if state.completed:
            raise SessionCompleteError(f"Session {state.session_id} is already complete")
        ended = state.model_copy(deep=True)
        now = self._clock()
        ended.transitions.append(
            PhaseTransition(
                from_phase_id=ended.current_phase_id,
                to_phase_id=None,
                reason=reason,
                turn=ended.turn_count,
            )
        )
        ended.completed = True
        ended.completion_reason = reason
        ended.version += 1
        ended.updated_at = now
        logger.info("session=%s ended: %s", ended.session_id, reason)
        return ended

    def summarize(self, state: SessionState) -> AssessmentSummary:
        return self.assessor.summarize(state.assessment, self.vignette)

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    def _validate(self, state: SessionState, message: str) -> None:
        if state.completed:
            raise SessionCompleteError(f"Session {state.session_id} is already complete")
        if not message or not message.strip():
            raise InvalidRequestError("Message must not be empty")
        if state.vignette_id != self.vignette.id:
            raise InvalidRequestError(
                f"Session {state.session_id} belongs to vignette {state.vignette_id}, "
                f"not {self.vignette.id}"
            )
        self._difficulty(state.difficulty)
        try:
            self.vignette.phase(state.current_phase_id)
        except KeyError as e:
            raise InvalidRequestError(
                f"Session {state.session_id} is in unknown phase {state.current_phase_id!r}"
            ) from e
        if state.vignette_version != self.vignette.version:
            logger.warning(
                "session=%s started on vignette version %d, running on %d",
                state.session_id, state.vignette_version, self.vignette.version,
            )

    def _windowed_history(self, history: list[Message]) -> list[dict[str, str]]:
        """The last `history_window` messages, starting on a trainee turn."""
        window = history[-self._history_window:]
        while window and window[0].sender != "user":
            window = window[1:]
        return [
            {"role": "user" if m.sender == "user" else "assistant", "content": m.text}
            for m in window
        ]

    async def process_message(self, state: SessionState, message: str) -> TurnResult:
        self._validate(state, message)

        working = state.model_copy(deep=True)
        now = self._clock()
        phase = self.phases.current_phase(working)
        text = message.strip()

        working.history.append(Message(sender="user", text=text, timestamp=now, phase_id=phase.id))

        delta = self.assessor.score_message(text, phase.rubric_focus, working.difficulty, self.vignette)
        working.assessment, assessment_update = self.assessor.merge(working.assessment, delta)
        if assessment_update.new_flags:
            logger.info(
                "session=%s critical flags raised: %s",
                working.session_id,
                ", ".join(sorted(f.value for f in assessment_update.new_flags)),
            )

        emotion = self.emotions.update(
            working.emotional_state.value, text, phase, self.vignette, working.difficulty,
        )
        working.emotional_state.value = emotion.new_value
        working.emotional_state.history.append(emotion.new_value)

        new_objectives = self.objectives.detect_objectives(working, phase, text)
        if new_objectives:
            logger.info(
                "session=%s objectives completed in %s: %s",
                working.session_id, phase.id, ", ".join(new_objectives),
            )
        new_revelations = self.objectives.detect_revelations(working, self.vignette, text)

        working.turn_count += 1
        working.turns_in_phase += 1

        transition = None
        reason = self.phases.check_exit(working)
        if reason is not None:
            transition = self.phases.advance(working, reason, now)

        prompt_phase = self.phases.current_phase(working)
        context = build_context(self.vignette, working, prompt_phase, emotion.delta)
        system_prompt = render_system_prompt(self.vignette, context)

        try:
            reply = await self._provider.generate(system_prompt, self._windowed_history(working.history))
        except GenerationFailure as e:
            logger.warning(
                "session=%s generation failed (%s) on turn %d",
                working.session_id, e.reason, working.turn_count,
            )
            e.pending_state = working
            raise

        working.history.append(
            Message(sender="persona", text=reply, timestamp=self._clock(), phase_id=prompt_phase.id)
        )
        working.version += 1
        working.updated_at = now

        return TurnResult(
            response_text=reply,
            emotional_value=emotion.new_value,
            emotional_delta=emotion.delta,
            phase_transition=transition,
            assessment_update=assessment_update,
            new_objectives=new_objectives,
            new_revelations=new_revelations,
            session_complete=working.completed,
            state=working,
        )
