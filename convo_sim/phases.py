"""Phase state machine over a vignette's ordered phase list.

Transitions are forward-only and single-step: a phase can only hand over to
the phase directly after it. The first phase is the initial state; when the
last phase's exit condition fires the session is complete.

Exit conditions are checked in a fixed priority order and at most one fires
per turn:
  1. turn ceiling      turns spent in the phase reached max_turns
  2. score threshold   running mean of a rubric dimension reached min_score
  3. emotion threshold emotional value crossed the configured value

The turn ceiling outranks the others so a phase always ends eventually,
however poorly the trainee scores.
"""

from __future__ import annotations

import logging
from datetime import datetime

from convo_sim.models import Phase, PhaseTransition, SessionState, VignetteConfig
from convo_sim.objectives import completed_objectives

logger = logging.getLogger(__name__)


class PhaseManager:
    def __init__(self, vignette: VignetteConfig) -> None:
        self._vignette = vignette

    def initial_phase(self) -> Phase:
        return self._vignette.initial_phase

    def current_phase(self, state: SessionState) -> Phase:
        return self._vignette.phase(state.current_phase_id)

    def is_terminal(self, phase_id: str) -> bool:
        return phase_id == self._vignette.terminal_phase.id

    def next_phase(self, phase_id: str) -> Phase | None:
        index = self._vignette.phase_index(phase_id)
        if index + 1 >= len(self._vignette.phases):
            return None
        return self._vignette.phases[index + 1]

    def check_exit(self, state: SessionState) -> str | None:
        """Return the reason the current phase should end, or None."""
        phase = self.current_phase(state)
        condition = phase.exit_condition

        ceiling = condition.turn_ceiling(state.difficulty)
        if state.turns_in_phase >= ceiling:
            return f"turn ceiling reached ({ceiling} turns)"

        threshold = condition.score_threshold
        if threshold is not None:
            score = state.assessment.per_dimension_score.get(threshold.dimension)
            samples = state.assessment.sample_count.get(threshold.dimension, 0)
            if score is not None and samples >= threshold.min_samples and score >= threshold.min_score:
                return f"{threshold.dimension.value} score {score:.2f} reached {threshold.min_score:.2f}"

        emotion = condition.emotion_threshold
        if emotion is not None:
            value = state.emotional_state.value
            if emotion.direction == "below" and value <= emotion.value:
                return f"emotional value {value:.2f} fell to {emotion.value:.2f}"
            if emotion.direction == "above" and value >= emotion.value:
                return f"emotional value {value:.2f} rose to {emotion.value:.2f}"

        return None

    def advance(self, state: SessionState, reason: str, now: datetime) -> PhaseTransition:
        """Move state to the next phase, or complete it from the terminal phase.

        Mutates `state`; the engine only ever passes its private working copy.
        """
        from_id = state.current_phase_id
        upcoming = self.next_phase(from_id)

        transition = PhaseTransition(
            from_phase_id=from_id,
            to_phase_id=upcoming.id if upcoming else None,
            reason=reason,
            turn=state.turn_count,
        )
        state.transitions.append(transition)

        if upcoming is None:
            state.completed = True
            state.completion_reason = "terminal_phase"
            logger.info("session=%s completed in phase %s: %s", state.session_id, from_id, reason)
        else:
            state.current_phase_id = upcoming.id
            state.turns_in_phase = 0
            logger.info(
                "session=%s phase %s -> %s: %s", state.session_id, from_id, upcoming.id, reason,
            )
        state.updated_at = now
        return transition

    def progress(self, state: SessionState) -> int:
        """Percentage of the scenario behind the session.

        Each phase owns an equal share of the bar. Phases already left count
        in full; the current phase counts by the fraction of its objectives
        completed, or not at all when it has none.
        """
        if state.completed:
            return 100
        index = self._vignette.phase_index(state.current_phase_id)
        phase = self._vignette.phases[index]
        fraction = 0.0
        if phase.objectives:
            fraction = len(completed_objectives(state, phase)) / len(phase.objectives)
        return round((index + fraction) / len(self._vignette.phases) * 100)
