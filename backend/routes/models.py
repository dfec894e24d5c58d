"""Pydantic request/response models for API endpoints."""

from typing import Any

from fastapi import Request
from pydantic import BaseModel, RootModel

from comic_weaver.orchestrator import UserEvent
from comic_weaver.runtime import StoryOrchestrator


class EventBody(RootModel[UserEvent]):
    """Player event, discriminated on its `type` field."""


class StoryView(BaseModel):
    label: str
    story: dict[str, Any]


class ResumableView(BaseModel):
    saved: bool
    completed: bool


class PublicSettings(BaseModel):
    text_model: str
    image_model: str
    page_panel_count: int
    fallback_panel_count: int
    ending_panel_count: int
    max_sound_effects: int
    max_stingers: int
    narrate_panels: bool


def get_orchestrator(request: Request) -> StoryOrchestrator:
    return request.app.state.orchestrator


def story_view(orchestrator: StoryOrchestrator) -> StoryView:
    return StoryView(label=orchestrator.label, story=orchestrator.state.public_view())
