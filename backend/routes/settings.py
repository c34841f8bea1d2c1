"""Health check and settings endpoints."""

from fastapi import APIRouter

from convo_sim import config
from convo_sim.errors import ConvoSimError

from .errors import http_error
from .models import UpdateSettings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get app settings. API keys are reported as set / not set only."""
    try:
        return config.public_config(config.get_config())
    except ConvoSimError as e:
        raise http_error(e)


@router.patch("/settings")
async def update_settings(body: UpdateSettings):
    """Update app settings (partial merge)."""
    try:
        return config.public_config(config.update_config(body.model_dump(exclude_none=True)))
    except ConvoSimError as e:
        raise http_error(e)
