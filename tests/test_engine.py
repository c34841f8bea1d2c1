"""Tests for convo_sim.engine — the turn pipeline and its session invariants."""

from datetime import datetime, timezone

import pytest

from convo_sim.assessment import AssessmentEngine
from convo_sim.engine import ConversationEngine
from convo_sim.errors import GenerationFailure, InvalidRequestError, SessionCompleteError
from convo_sim.models import CriticalErrorFlag, Difficulty, RubricDimension, VignetteConfig

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

NEUTRAL = [
    "Hello, I am the doctor looking after your husband.",
    "Can we sit down somewhere quiet?",
    "There is something about his treatment we need to discuss.",
    "He received a medication that was not right for his rhythm.",
    "He is being watched closely in intensive care.",
    "We will meet again this afternoon.",
]


def _engine(vignette, provider, **kwargs) -> ConversationEngine:
    return ConversationEngine(vignette, provider, clock=lambda: NOW, **kwargs)


@pytest.fixture
def angry_vignette(make_vignette_data) -> VignetteConfig:
    """Base vignette, angry persona (baseline 0.4), no escalation triggers."""
    data = make_vignette_data(escalation_triggers=[])
    data["persona"]["initial_emotion"] = "angry"
    return VignetteConfig.model_validate(data)


async def _run(engine, state, messages):
    results = []
    for message in messages:
        result = await engine.process_message(state, message)
        results.append(result)
        state = result.state
    return state, results


# ── Session start ────────────────────────────────────────────


class TestStartSession:
    def test_initial_state(self, vignette, stub_provider) -> None:
        state = _engine(vignette, stub_provider).start_session(Difficulty.INTERMEDIATE, "u1")
        assert state.current_phase_id == "opening"
        assert state.emotional_state.value == 0.0
        assert state.emotional_state.history == [0.0]
        assert state.version == 0
        assert state.history == []
        assert state.assessment.per_dimension_score == {}
        assert state.started_at == NOW

    def test_explicit_session_id(self, vignette, stub_provider) -> None:
        state = _engine(vignette, stub_provider).start_session("beginner", "u1", session_id="abc123")
        assert state.session_id == "abc123"
        assert state.difficulty is Difficulty.BEGINNER

    def test_unknown_difficulty(self, vignette, stub_provider) -> None:
        with pytest.raises(InvalidRequestError):
            _engine(vignette, stub_provider).start_session("expert", "u1")

    def test_difficulty_not_offered(self, make_vignette_data, stub_provider) -> None:
        data = make_vignette_data(difficulty_levels=["beginner"])
        data["persona"]["traits"] = {"beginner": "Shocked."}
        engine = _engine(VignetteConfig.model_validate(data), stub_provider)
        with pytest.raises(InvalidRequestError):
            engine.start_session(Difficulty.ADVANCED, "u1")

    def test_opening_line_starts_history(self, make_vignette_data, stub_provider) -> None:
        data = make_vignette_data()
        data["phases"][0]["opening_line"] = "Doctor? Is everything okay?"
        state = _engine(VignetteConfig.model_validate(data), stub_provider).start_session("beginner", "u1")
        assert [(m.sender, m.text) for m in state.history] == [("persona", "Doctor? Is everything okay?")]


# ── Single turn ──────────────────────────────────────────────


class TestProcessMessage:
    async def test_turn_result(self, vignette, make_provider) -> None:
        provider = make_provider(["What happened to him?"])
        engine = _engine(vignette, provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        result = await engine.process_message(state, "  I understand this is frightening.  ")

        assert result.response_text == "What happened to him?"
        assert result.session_complete is False
        assert result.phase_transition is None
        assert result.state.version == 1
        assert result.state.turn_count == 1
        assert result.state.turns_in_phase == 1
        assert [(m.sender, m.text) for m in result.state.history] == [
            ("user", "I understand this is frightening."),
            ("persona", "What happened to him?"),
        ]
        assert set(result.assessment_update.dimension_deltas) == {RubricDimension.EMPATHY}
        # one de-escalation cue from neutral
        assert result.emotional_value == pytest.approx(-0.1)
        assert result.emotional_delta == pytest.approx(-0.1)
        assert result.state.emotional_state.history == [0.0, result.emotional_value]

    async def test_caller_state_untouched(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        before = state.model_dump()
        await engine.process_message(state, "Calm down, please.")
        assert state.model_dump() == before

    async def test_empty_message_rejected(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        with pytest.raises(InvalidRequestError):
            await engine.process_message(state, "   ")
        assert stub_provider.calls == []

    async def test_wrong_vignette_rejected(self, vignette, make_vignette, stub_provider) -> None:
        state = _engine(vignette, stub_provider).start_session(Difficulty.INTERMEDIATE, "u1")
        other = _engine(make_vignette(id="OTHER-001"), stub_provider)
        with pytest.raises(InvalidRequestError):
            await other.process_message(state, "Hello.")

    async def test_unknown_phase_rejected(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        state.current_phase_id = "removed_phase"
        with pytest.raises(InvalidRequestError):
            await engine.process_message(state, "Hello.")

    async def test_system_prompt_sent(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        await engine.process_message(state, "Calm down.")
        system_prompt, history = stub_provider.calls[0]
        assert "You are Margaret" in system_prompt
        assert "made things worse" in system_prompt
        assert history == [{"role": "user", "content": "Calm down."}]

    async def test_prompt_uses_phase_after_transition(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        await _run(engine, state, NEUTRAL[:3])
        assert "Explain what happens next." in stub_provider.calls[2][0]

    async def test_history_window(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider, history_window=2)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        await _run(engine, state, ["first", "second", "third"])
        # [persona, "third"] trimmed so the window opens on a trainee turn
        assert stub_provider.calls[-1][1] == [{"role": "user", "content": "third"}]

    async def test_history_window_keeps_recent_exchange(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider, history_window=3)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        await _run(engine, state, ["first", "second", "third"])
        assert [m["content"] for m in stub_provider.calls[-1][1]] == ["second", "I see.", "third"]


# ── Objectives and revealed information ──────────────────────


@pytest.fixture
def tasked_vignette(make_vignette_data) -> VignetteConfig:
    data = make_vignette_data()
    data["phases"][0]["objectives"] = [
        {"id": "introduce", "text": "Introduce yourself", "keywords": ["my name is"]},
        {"id": "privacy", "text": "Find somewhere private", "keywords": ["somewhere quiet"]},
    ]
    data["information_stages"] = [
        {"id": "drug", "description": "He was given adenosine", "keywords": ["adenosine"]},
    ]
    return VignetteConfig.model_validate(data)


class TestObjectivesAndRevelations:
    async def test_recorded_in_turn_result(self, tasked_vignette, stub_provider) -> None:
        engine = _engine(tasked_vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        result = await engine.process_message(state, "My name is Dr. Lee. He was given adenosine.")
        assert result.new_objectives == ["introduce"]
        assert result.new_revelations == ["drug"]
        assert result.state.objectives_completed == {"opening": ["introduce"]}
        assert result.state.revealed_information == ["drug"]
        assert state.objectives_completed == {}
        assert state.revealed_information == []

    async def test_prompt_lists_pending_and_revealed(self, tasked_vignette, stub_provider) -> None:
        engine = _engine(tasked_vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        await engine.process_message(state, "My name is Dr. Lee. He was given adenosine.")
        system_prompt = stub_provider.calls[0][0]
        assert "What the Doctor Has Told You So Far" in system_prompt
        assert "- He was given adenosine" in system_prompt
        assert "- Find somewhere private" in system_prompt
        assert "Introduce yourself" not in system_prompt

    async def test_sticky_across_turns(self, tasked_vignette, stub_provider) -> None:
        engine = _engine(tasked_vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        state, results = await _run(engine, state, [
            "My name is Dr. Lee.",
            "As I said, my name is Lee. Can we go somewhere quiet?",
        ])
        assert results[1].new_objectives == ["privacy"]
        assert state.objectives_completed == {"opening": ["introduce", "privacy"]}
        assert engine.phases.progress(state) == 50

    async def test_retry_detects_again(self, tasked_vignette, make_provider) -> None:
        provider = make_provider([GenerationFailure("down", reason="timeout"), "Who are you?"])
        engine = _engine(tasked_vignette, provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        with pytest.raises(GenerationFailure) as exc:
            await engine.process_message(state, "My name is Dr. Lee.")
        assert exc.value.pending_state.objectives_completed == {"opening": ["introduce"]}
        result = await engine.process_message(state, "My name is Dr. Lee.")
        assert result.new_objectives == ["introduce"]


# ── Scenarios ────────────────────────────────────────────────


async def test_basic_flow(angry_vignette, stub_provider) -> None:
    engine = _engine(angry_vignette, stub_provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    state, results = await _run(engine, state, NEUTRAL[:5])

    assert [r.state.current_phase_id for r in results] == [
        "opening", "opening", "resolution", "resolution", "resolution",
    ]
    assert results[2].phase_transition.from_phase_id == "opening"
    assert results[2].phase_transition.to_phase_id == "resolution"
    assert results[4].phase_transition.to_phase_id is None
    assert [r.session_complete for r in results] == [False, False, False, False, True]
    assert state.completed
    assert state.completion_reason == "terminal_phase"
    assert state.version == 5
    # no triggers or cues: only decay from the 0.4 baseline
    for turn, result in enumerate(results, start=1):
        assert result.emotional_value == pytest.approx(0.4 - 0.05 * turn)


async def test_escalation_beats_decay(make_vignette_data, stub_provider) -> None:
    data = make_vignette_data(escalation_triggers=["calm down"])
    data["persona"]["initial_emotion"] = "angry"
    engine = _engine(VignetteConfig.model_validate(data), stub_provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    result = await engine.process_message(state, "Ma'am, you need to calm down.")
    assert result.emotional_value > 0.4
    assert result.emotional_value == pytest.approx(0.55)


async def test_critical_flag_persists(vignette, stub_provider) -> None:
    engine = _engine(vignette, stub_provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    messages = list(NEUTRAL[:5])
    messages[1] = "Honestly, it's not a big deal."
    state, results = await _run(engine, state, messages)

    assert results[0].assessment_update.flags == set()
    assert results[1].assessment_update.new_flags == {CriticalErrorFlag.DISALLOWED_PHRASE}
    assert results[4].assessment_update.new_flags == set()
    assert CriticalErrorFlag.DISALLOWED_PHRASE in results[4].assessment_update.flags
    assert CriticalErrorFlag.DISALLOWED_PHRASE in state.assessment.flags


# ── Invariants ───────────────────────────────────────────────


async def test_phases_monotonic(make_vignette_data, stub_provider) -> None:
    data = make_vignette_data()
    data["phases"].append({
        "id": "closing", "order": 5, "goal": "Say goodbye.",
        "exit_condition": {"max_turns": 1}, "rubric_focus": ["empathy"],
    })
    data["phases"][0]["exit_condition"]["emotion_threshold"] = {"value": -0.1, "direction": "below"}
    vignette = VignetteConfig.model_validate(data)
    engine = _engine(vignette, stub_provider)
    state = engine.start_session(Difficulty.BEGINNER, "u1")

    indices = [vignette.phase_index(state.current_phase_id)]
    messages = ["I'm sorry.", "Calm down.", "I understand.", "It's not my fault.", "Okay.", "Bye."]
    for message in messages:
        if state.completed:
            break
        state = (await engine.process_message(state, message)).state
        indices.append(vignette.phase_index(state.current_phase_id))

    assert state.completed
    for before, after in zip(indices, indices[1:]):
        assert after - before in (0, 1)


async def test_emotion_stays_bounded(make_vignette, stub_provider) -> None:
    vignette = make_vignette(
        escalation_triggers=["calm down", "not my fault", "protocol", "relax"],
        emotion_policy={"trigger_increment": 5.0, "cue_decrement": 5.0},
        phases=[{
            "id": "only", "order": 1, "goal": "Endure.",
            "exit_condition": {"max_turns": 50}, "rubric_focus": ["empathy"],
        }],
    )
    engine = _engine(vignette, stub_provider)
    state = engine.start_session(Difficulty.ADVANCED, "u1")
    hot = "Calm down! Relax! It's protocol and not my fault. " * 20
    cool = "I'm sorry. I understand. " * 20
    for message in [hot, hot, hot, cool, cool, cool, hot]:
        state = (await engine.process_message(state, message)).state
        assert -1.0 <= state.emotional_state.value <= 1.0
    assert max(state.emotional_state.history) == 1.0
    assert min(state.emotional_state.history) == -1.0


async def test_running_mean(vignette, stub_provider) -> None:
    engine = _engine(vignette, stub_provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    messages = ["I understand.", "Hello.", "Don't worry about it."]
    state, results = await _run(engine, state, messages)

    contributions = [r.assessment_update.dimension_deltas[RubricDimension.EMPATHY] for r in results]
    expected = [
        AssessmentEngine().score_dimension(m, RubricDimension.EMPATHY, Difficulty.INTERMEDIATE, vignette)
        for m in messages
    ]
    assert contributions == pytest.approx(expected)
    assert state.assessment.per_dimension_score[RubricDimension.EMPATHY] == pytest.approx(sum(expected) / 3)
    assert state.assessment.sample_count[RubricDimension.EMPATHY] == 3


async def test_retry_is_idempotent(vignette, make_provider) -> None:
    failure = GenerationFailure("backend down", reason="timeout")
    provider = make_provider([failure, GenerationFailure("still down", reason="timeout"), "Go on."])
    engine = _engine(vignette, provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    before = state.model_dump()

    pending = []
    for _ in range(2):
        with pytest.raises(GenerationFailure) as exc:
            await engine.process_message(state, "Calm down, it's not a big deal.")
        pending.append(exc.value.pending_state)
        assert state.model_dump() == before

    assert pending[0].assessment == pending[1].assessment
    assert pending[0].emotional_state == pending[1].emotional_state
    assert pending[0].history[-1].sender == "user"

    result = await engine.process_message(state, "Calm down, it's not a big deal.")
    assert result.state.assessment == pending[0].assessment
    assert result.state.emotional_state == pending[0].emotional_state
    assert result.state.assessment.sample_count[RubricDimension.EMPATHY] == 1
    assert result.state.version == 1


async def test_completed_session_rejects_turns(vignette, stub_provider) -> None:
    engine = _engine(vignette, stub_provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    state, _ = await _run(engine, state, NEUTRAL[:5])
    assert state.completed
    before = state.model_dump()
    calls = len(stub_provider.calls)

    with pytest.raises(SessionCompleteError):
        await engine.process_message(state, "One more thing.")
    assert state.model_dump() == before
    assert len(stub_provider.calls) == calls


# ── Ending and summary ───────────────────────────────────────


class TestEndSession:
    def test_end(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
        ended = engine.end_session(state)
        assert ended.completed
        assert ended.completion_reason == "ended_by_user"
        assert ended.version == 1
        assert ended.transitions[-1].to_phase_id is None
        assert not state.completed

    def test_end_twice(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        ended = engine.end_session(engine.start_session(Difficulty.INTERMEDIATE, "u1"), "timeout")
        assert ended.completion_reason == "timeout"
        with pytest.raises(SessionCompleteError):
            engine.end_session(ended)

    async def test_ended_session_rejects_turns(self, vignette, stub_provider) -> None:
        engine = _engine(vignette, stub_provider)
        ended = engine.end_session(engine.start_session(Difficulty.INTERMEDIATE, "u1"))
        with pytest.raises(SessionCompleteError):
            await engine.process_message(ended, "Wait.")


async def test_summarize(vignette, stub_provider) -> None:
    engine = _engine(vignette, stub_provider)
    state = engine.start_session(Difficulty.INTERMEDIATE, "u1")
    state, _ = await _run(engine, state, ["I understand.", "I'm sorry, that must be awful."])
    summary = engine.summarize(state)
    assert set(summary.scores) == {RubricDimension.EMPATHY}
    assert summary.overall > 2.5
    assert summary.level == "proficient"
