"""Ending pipeline: the final chapter, told on the dominant mood axis."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from comic_weaver.cinematography import specs_to_prompt
from comic_weaver.llm import GenerationError
from comic_weaver.models import EndingResult, MoodAxis, Panel, PanelDraft, StoryState
from comic_weaver.prompts import ENDING_SCHEMA, ending_prompt, panel_batch_prompt

from .common import (
    AudioBudget,
    MediaScope,
    Services,
    attach_audio,
    brief_for,
    gather_all,
    npcs_mentioned,
    request_audio_briefs,
    require_prerequisites,
    scheduled_images,
)

logger = logging.getLogger(__name__)


def _parse_ending(raw: object, panel_count: int) -> list[PanelDraft]:
    panels = raw.get("panels") if isinstance(raw, dict) else None
    if not isinstance(panels, list) or len(panels) < panel_count:
        got = len(panels) if isinstance(panels, list) else 0
        raise GenerationError(f"Ending returned {got} panels, expected {panel_count}")
    try:
        return [PanelDraft.model_validate(p) for p in panels[:panel_count]]
    except ValidationError as e:
        raise GenerationError(f"Ending panels malformed: {e}") from e


async def generate_ending(
    story: StoryState, axis: MoodAxis | None = None, *, services: Services,
) -> EndingResult:
    require_prerequisites(story, "ending")
    panel_count = services.settings.ending_panel_count
    axis = axis or story.ending or story.mood.dominant_axis()
    logger.info("Generating ending on the %s axis", axis)

    raw = await services.text("ending", ending_prompt(story, axis, panel_count), ENDING_SCHEMA)
    drafts = _parse_ending(raw, panel_count)
    briefs = await request_audio_briefs(story, drafts, services=services)

    npcs = npcs_mentioned(drafts, story.npcs)
    cameras = [specs_to_prompt(d.specs, d.description) for d in drafts]
    prompt = panel_batch_prompt(
        story, drafts, cameras,
        character_description=story.character_description, npcs=npcs,
    )
    refs = [story.character_reference or "", *(n.reference_image for n in npcs)]

    async def _images() -> list[str]:
        result = await scheduled_images(services, "ending_batch", prompt, refs)
        if len(result.images) != panel_count:
            raise GenerationError(
                f"Ending batch returned {len(result.images)} images for {panel_count} panels"
            )
        return result.images

    scope = MediaScope(services.media)
    budget = AudioBudget.from_settings(services.settings)
    try:
        images, audio = await gather_all([
            _images(),
            gather_all(
                attach_audio(d, brief_for(briefs, i, d),
                             services=services, budget=budget, scope=scope)
                for i, d in enumerate(drafts)
            ),
        ])
    except BaseException:
        released = scope.release()
        logger.error("Ending generation failed; released %d media handles", released)
        raise

    return EndingResult(new_panels=[
        Panel(image=image, narrative=d.narrative, **handles)
        for image, d, handles in zip(images, drafts, audio)
    ])
