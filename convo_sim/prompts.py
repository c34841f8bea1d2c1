"""Handlebars rendering of the persona system prompt."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from convo_sim.emotion import label, trajectory
from convo_sim.errors import ConfigurationError
from convo_sim.models import Phase, SessionState, VignetteConfig
from convo_sim.objectives import completed_objectives, pending_objectives

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

MAX_REPLY_SENTENCES = 3

DEFAULT_SYSTEM_PROMPT = """\
You are {{{persona.name}}}, {{{persona.role}}}. You are speaking with a \
doctor in a training simulation. Never break character and never say that \
you are an AI.

## Who You Are
{{#if persona.traits}}{{{persona.traits}}}
{{/if}}
## What You Know
{{#each facts}}
- {{{this}}}
{{/each}}
{{#if revealed}}
## What the Doctor Has Told You So Far
{{#each revealed}}
- {{{this}}}
{{/each}}
{{/if}}
## This Part of the Conversation
{{{phase.name}}}: {{{phase.goal}}}
{{#if phase.opening_line}}If this is your first line in this part, open with: "{{{phase.opening_line}}}"
{{/if}}{{#if objectives.pending}}The doctor has not yet managed to:
{{#each objectives.pending}}
- {{{this}}}
{{/each}}
{{/if}}

## How You Feel Right Now
{{#if emotion.escalated}}The doctor's last words made things worse: you are more upset than a moment ago \
({{signed emotion.delta}}).
{{/if}}{{#if emotion.deescalated}}The doctor's last words helped: you are a little calmer than a moment ago \
({{signed emotion.delta}}).
{{/if}}{{#if emotion.steady}}Your feelings have not shifted much since your last reply.
{{/if}}
Overall you are {{emotion.label}} (distress {{percent emotion.value}}), and the conversation is \
{{emotion.trajectory}} for you.

## Rules
- Stay in character as {{{persona.name}}} at all times.
- Reply in at most {{rules.max_sentences}} sentences, as a person would speak.
- If the doctor uses medical jargon you would not know, ask what it means.
- Do not reveal facts the doctor has not raised unless asked directly.
"""


class PromptError(ConfigurationError):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_percent(this, value):
    """{{percent value}} — emotional value on [-1, 1] as 0–100%."""
    return f"{round((float(value or 0) + 1) * 50)}%"


def _helper_signed(this, value):
    """{{signed delta}} — number with an explicit sign."""
    return f"{float(value or 0):+.2f}"


_HELPERS: dict[str, Callable] = {
    "percent": _helper_percent,
    "signed": _helper_signed,
}


def compile_prompt(template_str: str) -> Callable:
    """Compile (or fetch from cache) a template; raises PromptError."""
    compiled = _cache.get(template_str)
    if compiled is None:
        try:
            compiled = _compiler.compile(template_str)
        except Exception as e:
            raise PromptError(f"Template error: {e}") from e
        _cache[template_str] = compiled
    return compiled


def validate_template(template_str: str) -> None:
    """Raise PromptError unless the template compiles and renders on an empty context."""
    render_prompt(template_str, {})


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    compiled = compile_prompt(template_str)
    try:
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def build_context(
    vignette: VignetteConfig,
    state: SessionState,
    phase: Phase,
    emotional_delta: float,
) -> dict[str, Any]:
    """Assemble template variables for the persona system prompt.

    The delta is surfaced as a direction (escalated / deescalated / steady)
    because it is what tells the persona how to react to the last message.
    """
    persona = vignette.persona
    value = state.emotional_state.value
    revealed = set(state.revealed_information)
    return {
        "persona": {
            "name": persona.name,
            "role": persona.role,
            "traits": persona.traits.get(state.difficulty, ""),
        },
        "difficulty": state.difficulty.value,
        "facts": list(vignette.facts),
        "phase": {
            "id": phase.id,
            "name": phase.display_name,
            "goal": phase.goal,
            "opening_line": phase.opening_line,
        },
        "emotion": {
            "value": value,
            "delta": emotional_delta,
            "label": label(value),
            "trajectory": trajectory(state.emotional_state.history),
            "escalated": emotional_delta > 0.01,
            "deescalated": emotional_delta < -0.01,
            "steady": abs(emotional_delta) <= 0.01,
        },
        "objectives": {
            "completed": [o.text for o in completed_objectives(state, phase)],
            "pending": [o.text for o in pending_objectives(state, phase)],
        },
        "revealed": [s.description for s in vignette.information_stages if s.id in revealed],
        "rules": {"max_sentences": MAX_REPLY_SENTENCES},
    }


def render_system_prompt(vignette: VignetteConfig, context: dict[str, Any]) -> str:
    return render_prompt(vignette.system_prompt_template or DEFAULT_SYSTEM_PROMPT, context)
