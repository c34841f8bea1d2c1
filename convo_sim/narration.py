"""Spoken narration of a vignette's voice lines.

A vignette with an enabled voice_config carries three lines that are read
aloud outside the dialogue itself: the opening line, the closing line and
the context brief for the trainee. ElevenLabsNarrator turns one of them into
MP3 audio over the ElevenLabs text-to-speech API.
"""

from __future__ import annotations

import logging
from typing import Literal

import httpx

from convo_sim.errors import ConfigurationError, NarrationError
from convo_sim.models import VignetteConfig, VoiceConfig, VoiceProfile

logger = logging.getLogger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io"
ELEVENLABS_MODEL = "eleven_multilingual_v2"

NarrationKind = Literal["opening_line", "closing_line", "context_brief"]


def narration_text(vignette: VignetteConfig, kind: NarrationKind) -> tuple[str, VoiceConfig]:
    """Return the line of `kind` and the voice to read it in."""
    voice = vignette.persona.voice_config
    if voice is None or not voice.enabled or not voice.voice_profile.elevenlabs_voice_id:
        raise NarrationError(f"Voice is not enabled for vignette {vignette.id}")
    if kind not in ("opening_line", "closing_line", "context_brief"):
        raise NarrationError(f"Unknown narration type {kind!r}")
    text = getattr(voice, kind)
    if not text.strip():
        raise NarrationError(f"Vignette {vignette.id} has no {kind}")
    return text, voice


class ElevenLabsNarrator:
    """Async client for POST /v1/text-to-speech/{voice_id}."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ELEVENLABS_BASE_URL,
        model: str = ELEVENLABS_MODEL,
        timeout: float = 30.0,
    ) -> None:
        if not api_key:
            raise ConfigurationError("ELEVENLABS_API_KEY is not set")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout

    async def synthesize(self, text: str, voice: VoiceProfile) -> bytes:
        url = f"{self._base_url}/v1/text-to-speech/{voice.elevenlabs_voice_id}"
        body = {
            "text": text,
            "model_id": self._model,
            "voice_settings": {
                "stability": voice.stability,
                "similarity_boost": voice.similarity_boost,
            },
        }
        headers = {"xi-api-key": self._api_key, "Accept": "audio/mpeg"}
        logger.debug("tts voice=%s text_len=%d", voice.elevenlabs_voice_id, len(text))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NarrationError(f"TTS service returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise NarrationError(f"TTS service timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise NarrationError(f"Cannot reach TTS service at {self._base_url}") from e

        if not resp.content:
            raise NarrationError("TTS service returned no audio")
        return resp.content
