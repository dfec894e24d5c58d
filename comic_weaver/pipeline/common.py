"""Helpers shared by the chapter and ending pipelines.

Services bundles the injected collaborators. MediaScope tracks every media
handle a pipeline run registers so a failed run can release them before
re-raising. AudioBudget enforces the per-chapter sound effect and stinger
caps.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from comic_weaver.audio import NARRATION_STAGE, AudioGenerator
from comic_weaver.config import Settings
from comic_weaver.images import ImageGenerator, ImageResult
from comic_weaver.llm import GenerationError, TextGenerator
from comic_weaver.media import MediaRegistry
from comic_weaver.models import (
    MOOD_AXES,
    NPC,
    AudioBriefs,
    Choice,
    MoodVector,
    NpcDraft,
    PanelAudioBrief,
    PanelDraft,
    StoryState,
    Theme,
)
from comic_weaver.prompts import AUDIO_BRIEFS_SCHEMA, audio_briefs_prompt, npc_portrait_prompt
from comic_weaver.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

# Failures that cost a single artifact, never the whole chapter.
PARTIAL_FAILURES: tuple[type[BaseException], ...] = (GenerationError, httpx.HTTPError)

SOUND_EFFECT = "sound_effect"
STINGER = "stinger"


class MissingPrerequisiteError(ValueError):
    """Credentials or theme are absent; the pipeline cannot start."""


@dataclass
class Services:
    text: TextGenerator
    images: ImageGenerator
    audio: AudioGenerator
    scheduler: RequestScheduler
    media: MediaRegistry
    settings: Settings = field(default_factory=Settings)


def require_prerequisites(story: StoryState, stage: str) -> Theme:
    if not story.has_credentials() or not story.theme:
        raise MissingPrerequisiteError(f"API keys and theme are required for {stage} generation.")
    return story.theme


# ── Media ownership ──────────────────────────────────────


class MediaScope:
    """Handles registered during one pipeline run."""

    def __init__(self, media: MediaRegistry) -> None:
        self._media = media
        self.handles: list[str] = []

    def register(self, data: bytes, mime_type: str = "audio/mpeg") -> str | None:
        handle = self._media.register(data, mime_type)
        if handle:
            self.handles.append(handle)
        return handle

    def release(self) -> int:
        released = self._media.release_all(self.handles)
        self.handles.clear()
        return released


async def gather_all(coros: Iterable[Any]) -> list[Any]:
    """Run coroutines concurrently and wait for every one of them.

    Unlike a plain gather, a failure does not leave siblings running: all
    results are collected first, then the first exception is raised.
    """
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


# ── Images ───────────────────────────────────────────────


async def scheduled_images(
    services: Services, stage: str, prompt: str, references: Sequence[str] = (),
) -> ImageResult:
    """Run one image call through the request scheduler."""
    refs = [r for r in references if r]
    return await services.scheduler.schedule(lambda: services.images(stage, prompt, refs))


async def scheduled_image(
    services: Services, stage: str, prompt: str, references: Sequence[str] = (),
) -> str:
    result = await scheduled_images(services, stage, prompt, references)
    if not result.images:
        raise GenerationError(f"Image generation failed for {stage}: no image returned")
    return result.images[0]


# ── NPCs ─────────────────────────────────────────────────


def npcs_in(description: str, npcs: Iterable[NPC]) -> list[NPC]:
    """Roster entries whose name appears in a panel description."""
    return [npc for npc in npcs if npc.name and npc.name in description]


def npcs_mentioned(drafts: Iterable[PanelDraft], npcs: Sequence[NPC]) -> list[NPC]:
    """Roster entries named in any of the drafts, first mention first."""
    seen: dict[tuple[str, str], NPC] = {}
    for draft in drafts:
        for npc in npcs_in(draft.description, npcs):
            seen.setdefault(npc.key, npc)
    return list(seen.values())


async def resolve_npcs(
    story: StoryState, drafts: Sequence[NpcDraft], theme: Theme, *, services: Services,
) -> list[NPC]:
    """Portraits for NPCs not already in the roster.

    An exact (name, description) match reuses the cached entry. Duplicate
    identities share one call. A failed portrait drops that NPC.
    """
    known = {npc.key for npc in story.npcs}
    pending: dict[tuple[str, str], NpcDraft] = {}
    for draft in drafts:
        if draft.key in known or draft.key in pending:
            continue
        pending[draft.key] = draft
    if not pending:
        return []

    async def _portrait(draft: NpcDraft) -> NPC | None:
        prompt = npc_portrait_prompt(theme, draft.name, draft.description)
        try:
            image = await scheduled_image(services, "npc_portrait", prompt)
        except PARTIAL_FAILURES as e:
            logger.warning("NPC portrait failed for %r, dropping: %s", draft.name, e)
            return None
        return NPC(name=draft.name, description=draft.description, reference_image=image)

    portraits = await gather_all(_portrait(d) for d in pending.values())
    new_npcs = [npc for npc in portraits if npc is not None]
    logger.info("NPCs: %d new, %d reused or duplicate, %d dropped",
                len(new_npcs), len(drafts) - len(pending), len(pending) - len(new_npcs))
    return new_npcs


# ── Choices ──────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_choices(raw: Any) -> list[Choice] | None:
    """Exactly four choices with string text and numeric impact on every axis."""
    if not isinstance(raw, list) or len(raw) != 4:
        return None
    choices: list[Choice] = []
    for entry in raw:
        if not isinstance(entry, dict):
            return None
        text = entry.get("text")
        impact = entry.get("impact")
        if not isinstance(text, str) or not isinstance(impact, dict):
            return None
        if not all(_is_number(impact.get(axis)) for axis in MOOD_AXES):
            return None
        choices.append(Choice(
            text=text,
            impact=MoodVector(**{axis: impact[axis] for axis in MOOD_AXES}),
        ))
    return choices


# ── Audio ────────────────────────────────────────────────


class AudioBudget:
    """Per-chapter caps on sound effects and stingers.

    A slot is reserved before the request is made and refunded when the
    request yields nothing, so the caps hold however calls interleave.
    """

    def __init__(self, max_sound_effects: int, max_stingers: int) -> None:
        self._limits = {SOUND_EFFECT: max_sound_effects, STINGER: max_stingers}
        self._used = {SOUND_EFFECT: 0, STINGER: 0}

    def reserve(self, kind: str) -> bool:
        if self._used[kind] >= self._limits[kind]:
            return False
        self._used[kind] += 1
        return True

    def refund(self, kind: str) -> None:
        self._used[kind] = max(0, self._used[kind] - 1)

    def used(self, kind: str) -> int:
        return self._used[kind]

    @classmethod
    def from_settings(cls, settings: Settings) -> AudioBudget:
        return cls(settings.max_sound_effects, settings.max_stingers)


def default_audio_briefs(story: StoryState) -> AudioBriefs:
    theme = story.theme or "adventure"
    axis = story.mood.dominant_axis()
    return AudioBriefs(
        music_prompt=f"Instrumental {theme} comic soundtrack with a {axis} feel, loopable",
        ambience_prompt=f"Ambient {theme} environment sound bed, subtle and continuous",
        per_panel=[],
    )


def brief_for(briefs: AudioBriefs, index: int, draft: PanelDraft) -> PanelAudioBrief:
    if index < len(briefs.per_panel):
        return briefs.per_panel[index]
    return PanelAudioBrief(sfx_prompt=f"Sound effect for: {draft.description[:200]}")


async def request_audio_briefs(
    story: StoryState, drafts: Sequence[PanelDraft], *, services: Services,
) -> AudioBriefs:
    """One text call describing the chapter's sound. Failure yields defaults."""
    prompt = audio_briefs_prompt(story, drafts, services.settings.audio_brief_panel_limit)
    try:
        raw = await services.text("audio_briefs", prompt, AUDIO_BRIEFS_SCHEMA)
        return AudioBriefs.model_validate(raw)
    except (GenerationError, httpx.HTTPError, ValidationError) as e:
        logger.warning("Audio briefs failed, using defaults: %s", e)
        return default_audio_briefs(story)


async def _audio_clip(
    stage: str, prompt: str, duration: float, *, services: Services, scope: MediaScope,
) -> str | None:
    try:
        data = await services.audio(stage, prompt, duration)
    except PARTIAL_FAILURES as e:
        logger.warning("Audio stage=%s failed: %s", stage, e)
        return None
    return scope.register(data)


async def attach_audio(
    draft: PanelDraft,
    brief: PanelAudioBrief,
    *,
    services: Services,
    budget: AudioBudget,
    scope: MediaScope,
) -> dict[str, str | None]:
    """Audio handles for one panel, keyed by Panel field name."""
    settings = services.settings

    async def _capped(kind: str, prompt: str | None, duration: float) -> str | None:
        # Reservation happens before the first await.
        if not prompt or not budget.reserve(kind):
            return None
        handle = await _audio_clip(kind, prompt, duration, services=services, scope=scope)
        if handle is None:
            budget.refund(kind)
        return handle

    async def _narration() -> str | None:
        if not settings.narrate_panels or not draft.narrative.strip():
            return None
        return await _audio_clip(NARRATION_STAGE, draft.narrative, 0.0,
                                 services=services, scope=scope)

    sfx, stinger, narration = await gather_all([
        _capped(SOUND_EFFECT, brief.sfx_prompt, settings.sound_effect_duration),
        _capped(STINGER, brief.stinger_prompt, settings.stinger_duration),
        _narration(),
    ])
    return {
        "sound_effect_audio": sfx,
        "stinger_audio": stinger,
        "narrative_audio": narration,
    }


async def generate_background_music(
    briefs: AudioBriefs, *, services: Services, scope: MediaScope,
) -> str | None:
    """Music from the music prompt, else an ambience bed."""
    settings = services.settings
    try:
        data = await services.audio("music", briefs.music_prompt, settings.music_duration)
        if not data:
            logger.info("Music unavailable, falling back to ambience bed")
            data = await services.audio(
                "ambience", briefs.ambience_prompt or briefs.music_prompt,
                settings.ambience_duration,
            )
    except PARTIAL_FAILURES as e:
        logger.warning("Background music failed: %s", e)
        return None
    return scope.register(data)
