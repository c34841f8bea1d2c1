"""Typed errors raised by the engine and its collaborators.

Taxonomy:
  configuration   ConfigurationError (and PromptError) — bad vignette data,
                  raised at load time, never mid-session.
  lookup          VignetteNotFoundError, VignetteInactiveError,
                  SessionNotFoundError — raised before the engine runs.
  validation      InvalidRequestError — empty message, bad difficulty; no
                  state is mutated.
  session state   SessionCompleteError, ConcurrentModificationError,
                  SessionBusyError — terminal for the call; re-read state
                  instead of retrying blindly.
  generation      GenerationFailure — model backend failed; the caller may
                  retry the same turn with the unchanged pre-call state.
  narration       NarrationError — text-to-speech service failed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from convo_sim.models import SessionState


class ConvoSimError(Exception):
    """Base class for every error raised by convo_sim."""


class ConfigurationError(ConvoSimError):
    """A vignette or application setting is malformed or incomplete."""


class VignetteNotFoundError(ConvoSimError):
    """No vignette is stored under the requested id."""


class VignetteInactiveError(ConvoSimError):
    """The vignette exists but has been retired."""


class SessionNotFoundError(ConvoSimError):
    """No session is stored under the requested id."""


class InvalidRequestError(ConvoSimError):
    """The request was rejected before any component ran."""


class SessionCompleteError(ConvoSimError):
    """The session has already ended and accepts no further turns."""


class ConcurrentModificationError(ConvoSimError):
    """The stored session changed since it was read.

    Raised by session stores when the version written does not follow the
    version that was read. Resolve by re-reading the session.
    """

    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Session {session_id} is at version {actual}, expected {expected}"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


FailureReason = Literal["connect", "timeout", "rate_limited", "http_error", "malformed", "empty"]


class GenerationFailure(ConvoSimError):
    """The model backend could not produce a reply.

    `pending_state` is set by the engine when the failure aborts a turn: it
    holds the state as it stood after assessment, emotion and phase updates
    but before any persona reply. It is informational only and must not be
    persisted; retry with the original pre-call state instead.
    """

    def __init__(self, message: str, reason: FailureReason = "http_error") -> None:
        super().__init__(message)
        self.reason = reason
        self.pending_state: SessionState | None = None


class SessionBusyError(ConvoSimError):
    """Another writer held the session's lock file for too long."""


class NarrationError(ConvoSimError):
    """The text-to-speech service could not render a line."""
