"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, public settings), story (state, events,
resumable snapshots) and media (audio behind media handles).
"""

from fastapi import APIRouter

from .media import router as media_router
from .settings import router as settings_router
from .story import router as story_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(story_router)
router.include_router(media_router)
