"""Conversation simulation engine for difficult-conversation training."""

from convo_sim.engine import ConversationEngine
from convo_sim.errors import ConvoSimError, GenerationFailure
from convo_sim.models import Difficulty, SessionState, TurnResult, VignetteConfig

__all__ = [
    "ConversationEngine",
    "ConvoSimError",
    "Difficulty",
    "GenerationFailure",
    "SessionState",
    "TurnResult",
    "VignetteConfig",
]
