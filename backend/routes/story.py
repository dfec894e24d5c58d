"""Story state, player events and resumable snapshots."""

from fastapi import APIRouter, Depends

from comic_weaver.runtime import StoryOrchestrator

from .models import EventBody, ResumableView, StoryView, get_orchestrator, story_view

router = APIRouter()


@router.get("/story", response_model=StoryView)
async def get_story(orchestrator: StoryOrchestrator = Depends(get_orchestrator)):
    """Current state label and story, without credentials."""
    return story_view(orchestrator)


@router.post("/story/events", response_model=StoryView)
async def send_event(
    event: EventBody,
    wait: bool = False,
    orchestrator: StoryOrchestrator = Depends(get_orchestrator),
):
    """Apply a player event. With ?wait=true, block until generation settles."""
    orchestrator.send(event.root)
    if wait:
        await orchestrator.wait_idle()
    return story_view(orchestrator)


@router.get("/story/resumable", response_model=ResumableView)
async def resumable(orchestrator: StoryOrchestrator = Depends(get_orchestrator)):
    """Whether a saved story and a completed story exist."""
    return orchestrator.resumable()
