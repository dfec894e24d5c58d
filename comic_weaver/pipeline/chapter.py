"""Chapter pipeline: turns the current story into the next chapter.

Flow:
  1. Author the chapter (reference page first, text-only second).
  2. Settle the protagonist: keep an existing description, else take the
     authored one, else write one. Draw a portrait if none exists.
  3. Resolve NPC portraits and request audio briefs (concurrently).
  4. Start background music, render panels with their audio, validate
     choices (one fallback call if the authored ones are unusable), then
     await the music.

The result is all-or-nothing: if any step raises, every media handle this
run registered is released before the exception propagates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

import httpx

from comic_weaver.cinematography import specs_to_prompt
from comic_weaver.llm import GenerationError
from comic_weaver.models import (
    NPC,
    AudioBriefs,
    ChapterDraft,
    ChapterResult,
    Choice,
    Panel,
    PanelDraft,
    StoryState,
    Theme,
)
from comic_weaver.prompts import (
    CHARACTER_DESCRIPTION_SCHEMA,
    CHOICES_SCHEMA,
    DEFAULT_CHARACTER_DESCRIPTIONS,
    character_description_prompt,
    fallback_choices_prompt,
    panel_batch_prompt,
    panel_prompt,
    protagonist_portrait_prompt,
)

from .authoring import author_chapter
from .common import (
    PARTIAL_FAILURES,
    AudioBudget,
    MediaScope,
    Services,
    attach_audio,
    brief_for,
    gather_all,
    generate_background_music,
    npcs_in,
    npcs_mentioned,
    request_audio_briefs,
    require_prerequisites,
    resolve_npcs,
    scheduled_image,
    scheduled_images,
    validate_choices,
)

logger = logging.getLogger(__name__)


async def generate_chapter(story: StoryState, *, services: Services) -> ChapterResult:
    theme = require_prerequisites(story, "chapter")
    draft = await author_chapter(story, services=services)

    description = (
        story.character_description
        or draft.character_description
        or await generate_character_description(theme, services=services)
    )

    async def _reference() -> str | None:
        if story.character_reference:
            return story.character_reference
        return await generate_character_reference(theme, description, services=services)

    reference, new_npcs, briefs = await gather_all([
        _reference(),
        resolve_npcs(story, draft.new_npcs, theme, services=services),
        request_audio_briefs(story, draft.panels, services=services),
    ])
    roster = [*story.npcs, *new_npcs]

    scope = MediaScope(services.media)
    budget = AudioBudget.from_settings(services.settings)
    music_task = asyncio.create_task(
        generate_background_music(briefs, services=services, scope=scope)
    )
    try:
        panels = await _render_panels(
            story, draft, briefs,
            description=description, reference=reference, roster=roster,
            services=services, scope=scope, budget=budget,
        )
        choices = validate_choices(draft.choices)
        if choices is None:
            logger.warning("Authored choices invalid, requesting fallback choices")
            choices = await request_fallback_choices(story, draft.panels, services=services)
        background_music = await music_task
    except BaseException:
        music_task.cancel()
        await asyncio.gather(music_task, return_exceptions=True)
        released = scope.release()
        logger.error("Chapter generation failed; released %d media handles", released)
        raise

    logger.info("Chapter ready: %d panels, %d choices, %d new NPCs, music=%s",
                len(panels), len(choices), len(new_npcs), bool(background_music))
    return ChapterResult(
        new_panels=panels,
        choices=choices,
        character_description=description,
        character_reference=reference,
        background_music=background_music,
        new_npcs=new_npcs,
    )


# ── Protagonist ──────────────────────────────────────────


async def generate_character_description(theme: Theme, *, services: Services) -> str:
    """Randomized-attribute description; a themed default if the call fails."""
    try:
        raw = await services.text(
            "character_description",
            character_description_prompt(theme),
            CHARACTER_DESCRIPTION_SCHEMA,
        )
    except (GenerationError, httpx.HTTPError) as e:
        logger.warning("Character description failed, using default: %s", e)
        return DEFAULT_CHARACTER_DESCRIPTIONS[theme]
    text = raw.get("description") if isinstance(raw, dict) else raw
    if isinstance(text, str) and text.strip():
        return text.strip()
    logger.warning("Character description was empty, using default")
    return DEFAULT_CHARACTER_DESCRIPTIONS[theme]


async def generate_character_reference(
    theme: Theme, description: str, *, services: Services,
) -> str | None:
    try:
        return await scheduled_image(
            services, "protagonist_portrait", protagonist_portrait_prompt(theme, description),
        )
    except PARTIAL_FAILURES as e:
        logger.warning("Protagonist portrait failed: %s", e)
        return None


# ── Panels ───────────────────────────────────────────────


async def _render_panels(
    story: StoryState,
    draft: ChapterDraft,
    briefs: AudioBriefs,
    *,
    description: str,
    reference: str | None,
    roster: Sequence[NPC],
    services: Services,
    scope: MediaScope,
    budget: AudioBudget,
) -> list[Panel]:
    drafts = draft.panels
    cameras = [specs_to_prompt(d.specs, d.description) for d in drafts]

    async def _single(index: int, page: str | None) -> str:
        d = drafts[index]
        npcs = npcs_in(d.description, roster)
        refs = [page or "", reference or "", *(n.reference_image for n in npcs)]
        prompt = panel_prompt(
            story, d, number=index + 1, camera=cameras[index],
            character_description=description, npcs=npcs, from_page=page is not None,
        )
        return await scheduled_image(services, "panel", prompt, refs)

    async def _from_page(index: int) -> str:
        try:
            return await _single(index, draft.reference_page)
        except PARTIAL_FAILURES as e:
            logger.warning("Panel %d from reference page failed, retrying without it: %s",
                           index + 1, e)
        return await _single(index, None)

    async def _batch_or_sequential() -> list[str]:
        npcs = npcs_mentioned(drafts, roster)
        prompt = panel_batch_prompt(
            story, drafts, cameras, character_description=description, npcs=npcs,
        )
        refs = [reference or "", *(n.reference_image for n in npcs)]
        try:
            result = await scheduled_images(services, "panel_batch", prompt, refs)
            if len(result.images) == len(drafts):
                return result.images
            logger.warning("Batch returned %d images for %d panels, rendering one by one",
                           len(result.images), len(drafts))
        except PARTIAL_FAILURES as e:
            logger.warning("Batch panel render failed, rendering one by one: %s", e)
        return [await _single(i, None) for i in range(len(drafts))]

    if draft.reference_page:
        images_coro = gather_all(_from_page(i) for i in range(len(drafts)))
    else:
        images_coro = _batch_or_sequential()
    audio_coro = gather_all(
        attach_audio(d, brief_for(briefs, i, d), services=services, budget=budget, scope=scope)
        for i, d in enumerate(drafts)
    )
    images, audio = await gather_all([images_coro, audio_coro])
    return [
        Panel(image=image, narrative=d.narrative, **handles)
        for image, d, handles in zip(images, drafts, audio)
    ]


# ── Choices ──────────────────────────────────────────────


async def request_fallback_choices(
    story: StoryState, drafts: Sequence[PanelDraft], *, services: Services,
) -> list[Choice]:
    try:
        raw = await services.text(
            "choices_fallback", fallback_choices_prompt(story, drafts), CHOICES_SCHEMA,
        )
    except (GenerationError, httpx.HTTPError) as e:
        logger.warning("Fallback choices failed, continuing without choices: %s", e)
        return []
    if isinstance(raw, dict):
        raw = raw.get("choices")
    choices = validate_choices(raw)
    if choices is None:
        logger.warning("Fallback choices invalid, continuing without choices")
        return []
    return choices
