"""Translation of engine errors to HTTP responses."""

from fastapi import HTTPException

from convo_sim.errors import (
    ConcurrentModificationError,
    ConfigurationError,
    ConvoSimError,
    GenerationFailure,
    InvalidRequestError,
    NarrationError,
    SessionBusyError,
    SessionNotFoundError,
    VignetteInactiveError,
    VignetteNotFoundError,
)

RETRY_DETAIL = "The simulated participant could not respond. Please try again."


def http_error(e: ConvoSimError) -> HTTPException:
    if isinstance(e, (VignetteNotFoundError, VignetteInactiveError, SessionNotFoundError)):
        return HTTPException(404, str(e))
    if isinstance(e, InvalidRequestError):
        return HTTPException(400, str(e))
    if isinstance(e, (ConcurrentModificationError, SessionBusyError)):
        return HTTPException(409, str(e))
    if isinstance(e, GenerationFailure):
        # Provider details stay in the server log.
        return HTTPException(503, RETRY_DETAIL)
    if isinstance(e, NarrationError):
        return HTTPException(502, str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(503, "The service is not configured for this request")
    return HTTPException(500, "Internal error")
