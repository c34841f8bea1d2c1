"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings), vignettes (catalogue, editing,
narration) and sessions (chat turns, session state, ending, assessment).
Engine errors are translated to HTTP status codes in errors.py.
"""

from fastapi import APIRouter

from .sessions import router as sessions_router
from .settings import router as settings_router
from .vignettes import router as vignettes_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(vignettes_router)
router.include_router(sessions_router)
