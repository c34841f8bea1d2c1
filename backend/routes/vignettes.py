"""Vignette catalogue, editing and narration endpoints."""

import base64

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from convo_sim.errors import ConfigurationError, ConvoSimError
from convo_sim.models import VignetteConfig
from convo_sim.storage import get_storage

from backend.service import get_service

from .errors import http_error
from .models import NarrateBody

router = APIRouter()


def _summary(vignette: VignetteConfig) -> dict:
    voice = vignette.persona.voice_config
    return {
        "id": vignette.id,
        "version": vignette.version,
        "title": vignette.title,
        "category": vignette.category,
        "description": vignette.description,
        "difficulty_levels": sorted(d.value for d in vignette.difficulty_levels),
        "persona": {"name": vignette.persona.name, "role": vignette.persona.role},
        "phase_count": len(vignette.phases),
        "voice_enabled": bool(voice and voice.enabled),
    }


@router.get("/vignettes")
async def list_vignettes():
    """List all active vignettes."""
    return [_summary(v) for v in get_storage().list_vignettes()]


@router.get("/vignettes/{vignette_id}")
async def get_vignette(vignette_id: str):
    """Get a single vignette definition."""
    try:
        vignette = get_storage().get_vignette(vignette_id)
    except ConvoSimError as e:
        raise http_error(e)
    return vignette.model_dump(mode="json")


@router.put("/vignettes/{vignette_id}")
async def put_vignette(vignette_id: str, body: dict):
    """Create or replace a vignette. The body must validate as a complete vignette."""
    try:
        vignette = VignetteConfig.model_validate(body)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid vignette: {e.error_count()} validation error(s)")
    if vignette.id != vignette_id:
        raise HTTPException(400, "Vignette id does not match the URL")
    try:
        get_storage().save_vignette(vignette)
    except ConfigurationError as e:
        raise HTTPException(400, str(e))
    return vignette.model_dump(mode="json")


@router.post("/vignettes/{vignette_id}/narrate")
async def narrate(vignette_id: str, body: NarrateBody):
    """Synthesize the opening line, closing line or context brief as MP3 audio."""
    try:
        audio = await get_service().narrate(vignette_id, body.type)
    except ConvoSimError as e:
        raise http_error(e)
    return {"audio": base64.b64encode(audio).decode("ascii"), "format": "mp3"}
