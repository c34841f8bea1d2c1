"""Shared vignette builders and a scripted model provider."""

import copy
from typing import Any

import pytest

from convo_sim.errors import GenerationFailure
from convo_sim.models import VignetteConfig


BASE_VIGNETTE: dict[str, Any] = {
    "id": "TEST-001",
    "title": "Medication Error Disclosure",
    "category": "medical_error_disclosure",
    "difficulty_levels": ["beginner", "intermediate", "advanced"],
    "persona": {
        "name": "Margaret",
        "role": "the patient's wife",
        "initial_emotion": "upset",
        "traits": {
            "beginner": "Shocked but reasonable.",
            "intermediate": "Angry and demanding accountability.",
            "advanced": "Hostile and talking about lawyers.",
        },
    },
    "facts": [
        "Her husband was given adenosine for the wrong rhythm.",
        "He wasn't breathing for four minutes.",
    ],
    "escalation_triggers": ["calm down", "not my fault"],
    "deescalation_cues": ["i'm sorry", "i understand"],
    "disallowed_phrases": ["it's not a big deal"],
    "contradicting_claims": ["he is fine"],
    "phases": [
        {
            "id": "opening",
            "order": 1,
            "goal": "Find out what she already knows.",
            "exit_condition": {"max_turns": 3},
            "rubric_focus": ["empathy"],
        },
        {
            "id": "resolution",
            "order": 2,
            "goal": "Explain what happens next.",
            "exit_condition": {"max_turns": 2},
            "rubric_focus": ["accountability", "clarity"],
        },
    ],
    "llm": {"model_id": "echo"},
}


def vignette_data(**overrides: Any) -> dict[str, Any]:
    data = copy.deepcopy(BASE_VIGNETTE)
    data.update(overrides)
    return data


@pytest.fixture
def make_vignette_data():
    """Factory: make_vignette_data(**top_level_overrides) -> raw vignette dict."""
    return vignette_data


@pytest.fixture
def make_vignette():
    """Factory: make_vignette(**top_level_overrides) -> VignetteConfig."""
    def _make(**overrides: Any) -> VignetteConfig:
        return VignetteConfig.model_validate(vignette_data(**overrides))
    return _make


@pytest.fixture
def vignette(make_vignette) -> VignetteConfig:
    return make_vignette()


# ---------------------------------------------------------------------------
# StubProvider: scripted replies and failures, records every call
# ---------------------------------------------------------------------------

class StubProvider:
    """Deterministic ModelProvider stand-in for tests.

    Each call pops the next scripted item: a string is returned, an exception
    is raised. When the script runs out, a fixed reply is returned.
    """

    def __init__(self, script: list[Any] | None = None) -> None:
        self._script = list(script or [])
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    async def generate(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        self.calls.append((system_prompt, [dict(m) for m in history]))
        if self._script:
            item = self._script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return "I see."


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def failing_provider() -> StubProvider:
    return StubProvider([GenerationFailure("backend down", reason="connect")])


@pytest.fixture
def make_provider():
    """Factory: make_provider([reply_or_exception, ...]) -> StubProvider."""
    return StubProvider
