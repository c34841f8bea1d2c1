"""Chat service — the calling context around ConversationEngine.

Loads the vignette and session, builds a provider for the session's model
and difficulty, runs the turn, and persists the result with an optimistic
version check. Generation failures are retried here, always with the
original pre-turn state.

A new session is only written once its first turn has succeeded, so a
failed first message leaves nothing behind and can simply be resent.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from convo_sim.assessment import AssessmentEngine
from convo_sim.config import get_config
from convo_sim.engine import ConversationEngine
from convo_sim.errors import (
    ConcurrentModificationError,
    GenerationFailure,
    InvalidRequestError,
    NarrationError,
    SessionCompleteError,
)
from convo_sim.llm import EchoProvider, ModelProvider, create_provider
from convo_sim.models import (
    AssessmentSummary,
    Difficulty,
    LLMConfig,
    SessionState,
    TurnResult,
    VignetteConfig,
)
from convo_sim.narration import ElevenLabsNarrator, NarrationKind, narration_text
from convo_sim.phases import PhaseManager
from convo_sim.storage import Storage, get_storage

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[LLMConfig, Difficulty, dict], ModelProvider]


class ChatService:
    def __init__(
        self,
        storage: Storage,
        settings: dict[str, Any],
        provider_factory: ProviderFactory = create_provider,
    ) -> None:
        self._storage = storage
        self._settings = settings
        self._provider_factory = provider_factory

    def engine_for(self, vignette: VignetteConfig, difficulty: Difficulty) -> ConversationEngine:
        provider = self._provider_factory(vignette.llm, difficulty, self._settings)
        return ConversationEngine(
            vignette,
            provider,
            history_window=int(self._settings.get("history_window", 10)),
        )

    def _parse_difficulty(self, vignette: VignetteConfig, value: str | None) -> Difficulty:
        if not value:
            raise InvalidRequestError("difficulty is required to start a session")
        try:
            difficulty = Difficulty(value)
        except ValueError as e:
            raise InvalidRequestError(f"Unknown difficulty {value!r}") from e
        if difficulty not in vignette.difficulty_levels:
            raise InvalidRequestError(
                f"Vignette {vignette.id} does not offer {difficulty.value} difficulty"
            )
        return difficulty

    async def _run_turn(self, engine: ConversationEngine, state: SessionState, message: str) -> TurnResult:
        retries = max(0, int(self._settings.get("generation_retries", 1)))
        attempt = 0
        while True:
            try:
                return await engine.process_message(state, message)
            except GenerationFailure as e:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(
                    "session=%s generation failed (%s), retry %d/%d",
                    state.session_id, e.reason, attempt, retries,
                )

    async def chat(
        self,
        message: str,
        *,
        session_id: str | None = None,
        expected_version: int | None = None,
        vignette_id: str | None = None,
        difficulty: str | None = None,
        user_id: str = "",
    ) -> TurnResult:
        """Start a session with its first message, or continue an existing one."""
        if not message or not message.strip():
            raise InvalidRequestError("Message must not be empty")

        if session_id is None:
            if not vignette_id:
                raise InvalidRequestError("vignette_id is required to start a session")
            vignette = self._storage.get_vignette(vignette_id)
            level = self._parse_difficulty(vignette, difficulty)
            engine = self.engine_for(vignette, level)
            state = engine.start_session(level, user_id)
            result = await self._run_turn(engine, state, message)
            self._storage.create_session(result.state)
            return result

        state = self._storage.get_session(session_id)
        if expected_version is not None and expected_version != state.version:
            raise ConcurrentModificationError(session_id, expected_version, state.version)
        if state.completed:
            raise SessionCompleteError(f"Session {session_id} is already complete")
        vignette = self._storage.get_vignette(state.vignette_id, include_inactive=True)
        engine = self.engine_for(vignette, state.difficulty)
        result = await self._run_turn(engine, state, message)
        self._storage.save_session(result.state, expected_version=state.version)
        return result

    def end_session(
        self, session_id: str, expected_version: int | None = None, reason: str = "ended_by_user",
    ) -> SessionState:
        state = self._storage.get_session(session_id)
        if expected_version is not None and expected_version != state.version:
            raise ConcurrentModificationError(session_id, expected_version, state.version)
        vignette = self._storage.get_vignette(state.vignette_id, include_inactive=True)
        # Ending a session makes no model call.
        ended = ConversationEngine(vignette, EchoProvider()).end_session(state, reason)
        return self._storage.save_session(ended, expected_version=state.version)

    def summary(self, session_id: str) -> tuple[SessionState, AssessmentSummary, int]:
        """Return (state, assessment summary, progress percent)."""
        state = self._storage.get_session(session_id)
        vignette = self._storage.get_vignette(state.vignette_id, include_inactive=True)
        summary = AssessmentEngine.summarize(state.assessment, vignette)
        return state, summary, PhaseManager(vignette).progress(state)

    async def narrate(self, vignette_id: str, kind: NarrationKind) -> bytes:
        vignette = self._storage.get_vignette(vignette_id)
        try:
            text, voice = narration_text(vignette, kind)
        except NarrationError as e:
            raise InvalidRequestError(str(e)) from e
        narrator = ElevenLabsNarrator(
            self._settings.get("elevenlabs_api_key", ""),
            timeout=float(self._settings.get("llm_timeout", 30.0)),
        )
        return await narrator.synthesize(text, voice.voice_profile)


def get_service() -> ChatService:
    return ChatService(get_storage(), get_config())
