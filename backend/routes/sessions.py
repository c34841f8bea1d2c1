"""Chat turn, session state and assessment endpoints."""

from fastapi import APIRouter

from convo_sim.emotion import label
from convo_sim.errors import ConvoSimError, SessionCompleteError
from convo_sim.models import SessionState
from convo_sim.storage import get_storage

from backend.service import get_service

from .errors import http_error
from .models import ChatBody, EndSessionBody

router = APIRouter()


def _complete(state: SessionState) -> dict:
    return {
        "status": "complete",
        "session_id": state.session_id,
        "completion_reason": state.completion_reason,
        "version": state.version,
    }


@router.post("/chat")
async def chat(body: ChatBody):
    """Send a trainee message. Omitting session_id starts a new session."""
    try:
        result = await get_service().chat(
            body.message,
            session_id=body.session_id,
            expected_version=body.expected_version,
            vignette_id=body.vignette_id,
            difficulty=body.difficulty,
            user_id=body.user_id,
        )
    except SessionCompleteError:
        # The scenario ending is a normal outcome, not an error.
        return _complete(get_storage().get_session(body.session_id))
    except ConvoSimError as e:
        raise http_error(e)

    state = result.state
    return {
        "status": "complete" if result.session_complete else "ok",
        "session_id": state.session_id,
        "version": state.version,
        "response": result.response_text,
        "emotional_value": result.emotional_value,
        "emotional_delta": result.emotional_delta,
        "emotion_label": label(result.emotional_value),
        "phase_id": state.current_phase_id,
        "phase_transition": result.phase_transition.model_dump() if result.phase_transition else None,
        "assessment_update": result.assessment_update.model_dump(mode="json"),
        "new_objectives": result.new_objectives,
        "revealed_information": state.revealed_information,
        "session_complete": result.session_complete,
        "completion_reason": state.completion_reason,
    }


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    """Get the full stored state of a session."""
    try:
        state = get_storage().get_session(session_id)
    except ConvoSimError as e:
        raise http_error(e)
    return state.model_dump(mode="json")


@router.post("/sessions/{session_id}/end")
async def end_session(session_id: str, body: EndSessionBody | None = None):
    """End a session before its final phase completes."""
    body = body or EndSessionBody()
    try:
        state = get_service().end_session(session_id, body.expected_version, body.reason)
    except SessionCompleteError:
        return _complete(get_storage().get_session(session_id))
    except ConvoSimError as e:
        raise http_error(e)
    return _complete(state)


@router.get("/sessions/{session_id}/assessment")
async def get_assessment(session_id: str):
    """Scores, overall result and performance level for a session."""
    try:
        state, summary, progress = get_service().summary(session_id)
    except ConvoSimError as e:
        raise http_error(e)
    return {
        "session_id": state.session_id,
        "completed": state.completed,
        "progress": progress,
        "objectives_completed": state.objectives_completed,
        "revealed_information": state.revealed_information,
        **summary.model_dump(mode="json"),
    }
