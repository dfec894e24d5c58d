"""Serve the bytes behind a media handle."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from comic_weaver.runtime import StoryOrchestrator

from .models import get_orchestrator

router = APIRouter()


@router.get("/media/{handle}")
async def get_media(handle: str, orchestrator: StoryOrchestrator = Depends(get_orchestrator)):
    """Audio for a live handle; 404 once the handle has been released."""
    item = orchestrator.media.get(handle)
    if item is None:
        raise HTTPException(404, "Media not found")
    return Response(content=item.data, media_type=item.mime_type)
