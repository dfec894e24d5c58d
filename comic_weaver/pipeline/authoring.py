"""Chapter authoring strategies, tried in order until one succeeds.

  author_with_reference_page   one multimodal call through the scheduler
                               that draws a whole page as a panel grid and
                               returns the chapter JSON alongside it
  author_text_only             one text call returning the chapter JSON,
                               no reference image
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

import httpx

from comic_weaver.llm import GenerationError, parse_json_text
from comic_weaver.models import ChapterDraft, StoryState
from comic_weaver.prompts import CHAPTER_SCHEMA, chapter_text_prompt, reference_page_prompt

from .common import Services, scheduled_images

logger = logging.getLogger(__name__)

AuthoringStrategy = Callable[..., Awaitable[ChapterDraft]]

# Malformed output surfaces as ValueError (pydantic ValidationError included).
AUTHORING_FAILURES: tuple[type[BaseException], ...] = (
    GenerationError, httpx.HTTPError, ValueError,
)


async def author_with_reference_page(story: StoryState, *, services: Services) -> ChapterDraft:
    panel_count = services.settings.page_panel_count
    references = [story.character_reference or ""] + [n.reference_image for n in story.npcs]
    result = await scheduled_images(
        services, "reference_page", reference_page_prompt(story, panel_count), references,
    )
    if not result.images:
        raise GenerationError("Reference page returned no image")

    data = parse_json_text(result.text)
    if not isinstance(data, dict):
        raise GenerationError(f"Reference page JSON must be an object, got {type(data).__name__}")
    draft = ChapterDraft.model_validate(data)
    if not draft.panels:
        raise GenerationError("Reference page returned no panels")
    return draft.model_copy(update={
        "panels": draft.panels[:panel_count],
        "reference_page": result.images[0],
    })


async def author_text_only(story: StoryState, *, services: Services) -> ChapterDraft:
    panel_count = services.settings.fallback_panel_count
    raw = await services.text("chapter", chapter_text_prompt(story, panel_count), CHAPTER_SCHEMA)
    draft = ChapterDraft.model_validate(raw)
    if not draft.panels:
        raise GenerationError("Chapter text returned no panels")
    return draft.model_copy(update={
        "panels": draft.panels[:panel_count],
        "reference_page": None,
        "character_description": None,
    })


AUTHORING_STRATEGIES: tuple[AuthoringStrategy, ...] = (
    author_with_reference_page,
    author_text_only,
)


async def author_chapter(
    story: StoryState,
    *,
    services: Services,
    strategies: Sequence[AuthoringStrategy] = AUTHORING_STRATEGIES,
) -> ChapterDraft:
    """First strategy to succeed wins; each failure is logged."""
    last_error: BaseException | None = None
    for strategy in strategies:
        try:
            draft = await strategy(story, services=services)
        except AUTHORING_FAILURES as e:
            logger.warning("Authoring strategy %s failed: %s", strategy.__name__, e)
            last_error = e
            continue
        logger.info("Chapter authored by %s: %d panels, %d raw choices, %d new NPCs",
                    strategy.__name__, len(draft.panels), len(draft.choices), len(draft.new_npcs))
        return draft
    raise GenerationError("Failed to author the next chapter") from last_error
