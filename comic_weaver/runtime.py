"""Runs the story state machine against real collaborators.

StoryOrchestrator.send() applies a transition synchronously and executes the
returned effects: media release, saves and clears happen inline; pipelines
and loads run as asyncio tasks whose results come back through send().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from functools import partial
from typing import Any

from comic_weaver.audio import HttpAudioGenerator
from comic_weaver.config import Settings
from comic_weaver.images import HttpImageGenerator
from comic_weaver.llm import HttpTextGenerator
from comic_weaver.media import MediaRegistry
from comic_weaver.models import Credentials, Snapshot, StoryState
from comic_weaver.orchestrator import (
    UNKNOWN_GENERATION_ERROR,
    ChapterFailed,
    ChapterReady,
    ClearSavedStory,
    CompletedStoryLoaded,
    Effect,
    EndingFailed,
    EndingReady,
    Event,
    GenerateChapter,
    GenerateEnding,
    LoadCompletedStory,
    LoadFailed,
    LoadSavedStory,
    Machine,
    ReleaseMedia,
    SavedStoryLoaded,
    SaveCompletedStory,
    SaveSnapshot,
    transition,
)
from comic_weaver.pipeline import Services, generate_chapter, generate_ending
from comic_weaver.scheduler import RequestScheduler
from comic_weaver.storage import SnapshotStore

logger = logging.getLogger(__name__)

ServicesFactory = Callable[[Credentials], Services]


def build_scheduler(settings: Settings) -> RequestScheduler:
    return RequestScheduler(
        settings.image_concurrency,
        settings.image_requests_per_window,
        settings.image_window_seconds,
        retries=settings.retry_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )


def build_services(
    credentials: Credentials,
    *,
    settings: Settings,
    scheduler: RequestScheduler,
    media: MediaRegistry,
) -> Services:
    """HTTP-backed services for one set of credentials.

    The scheduler and media registry are shared by every story in the process.
    """
    return Services(
        text=HttpTextGenerator(
            credentials.api_key, settings.text_model,
            settings.gemini_base_url, settings.request_timeout,
        ),
        images=HttpImageGenerator(
            credentials.api_key, settings.image_model,
            settings.gemini_base_url, settings.request_timeout,
        ),
        audio=HttpAudioGenerator(
            credentials.eleven_labs_api_key, settings.elevenlabs_base_url,
            settings.voice_id, settings.request_timeout,
        ),
        scheduler=scheduler,
        media=media,
        settings=settings,
    )


class StoryOrchestrator:
    def __init__(
        self,
        store: SnapshotStore,
        media: MediaRegistry,
        services_factory: ServicesFactory,
        machine: Machine | None = None,
    ) -> None:
        self._store = store
        self._media = media
        self._services_factory = services_factory
        self._machine = machine or Machine()
        self._tasks: set[asyncio.Task] = set()
        self._saved_music: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> StoryOrchestrator:
        media = MediaRegistry()
        factory = partial(
            build_services, settings=settings, scheduler=build_scheduler(settings), media=media,
        )
        return cls(SnapshotStore(settings.data_dir), media, factory)

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def machine(self) -> Machine:
        return self._machine

    @property
    def state(self) -> StoryState:
        return self._machine.story

    @property
    def label(self) -> str:
        return self._machine.label

    @property
    def media(self) -> MediaRegistry:
        return self._media

    def resumable(self) -> dict[str, bool]:
        return {"saved": self._store.has_saved(), "completed": self._store.has_completed()}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def send(self, event: Event) -> Machine:
        before = self._machine.label
        self._machine, effects = transition(self._machine, event)
        if self._machine.label != before:
            logger.info("%s: %s -> %s", event.type, before, self._machine.label)
        for effect in effects:
            self._execute(effect)
        return self._machine

    async def wait_idle(self) -> None:
        """Wait until no pipeline or load task is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._media.release_all(self._machine.story.media_handles())

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _execute(self, effect: Effect) -> None:
        if isinstance(effect, ReleaseMedia):
            self._media.release_all(effect.handles)
        elif isinstance(effect, SaveSnapshot):
            self._save(effect.snapshot)
        elif isinstance(effect, SaveCompletedStory):
            try:
                self._store.save_completed(effect.snapshot)
            except OSError as e:
                logger.error("Failed to save completed story: %s", e)
        elif isinstance(effect, ClearSavedStory):
            try:
                self._store.clear()
            except OSError as e:
                logger.error("Failed to clear saved story: %s", e)
            self._saved_music = None
        elif isinstance(effect, GenerateChapter):
            self._spawn(self._run_chapter(effect))
        elif isinstance(effect, GenerateEnding):
            self._spawn(self._run_ending(effect))
        elif isinstance(effect, LoadSavedStory):
            self._spawn(self._load_saved())
        elif isinstance(effect, LoadCompletedStory):
            self._spawn(self._load_completed())
        else:
            logger.warning("Unknown effect %r", effect)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _save(self, snapshot: Snapshot) -> None:
        handle = snapshot.story.background_music
        music: bytes | None = None
        if handle and handle != self._saved_music:
            item = self._media.get(handle)
            music = item.data if item else None
        try:
            self._store.save(snapshot, music)
        except OSError as e:
            logger.error("Failed to save story snapshot: %s", e)
            return
        self._saved_music = handle

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _run_chapter(self, effect: GenerateChapter) -> None:
        try:
            services = self._services_factory(effect.story.credentials)
            result = await generate_chapter(effect.story, services=services)
        except Exception as e:
            logger.exception("Chapter generation failed")
            self.send(ChapterFailed(
                generation=effect.generation, error=str(e) or UNKNOWN_GENERATION_ERROR,
            ))
            return
        self.send(ChapterReady(generation=effect.generation, result=result))

    async def _run_ending(self, effect: GenerateEnding) -> None:
        try:
            services = self._services_factory(effect.story.credentials)
            result = await generate_ending(effect.story, effect.axis, services=services)
        except Exception as e:
            logger.exception("Ending generation failed")
            self.send(EndingFailed(
                generation=effect.generation, error=str(e) or UNKNOWN_GENERATION_ERROR,
            ))
            return
        self.send(EndingReady(generation=effect.generation, result=result))

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    async def _load_saved(self) -> None:
        try:
            snapshot = self._store.load()
            if snapshot is not None:
                snapshot = self._rehydrate_music(snapshot)
        except (OSError, ValueError) as e:
            logger.error("Failed to load saved story: %s", e)
            self.send(LoadFailed(source="saved"))
            return
        self.send(SavedStoryLoaded(snapshot=snapshot))

    def _rehydrate_music(self, snapshot: Snapshot) -> Snapshot:
        """Swap the stored music handle for a live one backed by the saved asset."""
        data = self._store.load_background_music() if snapshot.story.background_music else None
        handle = self._media.register(data) if data else None
        self._saved_music = handle
        story = snapshot.story.model_copy(update={"background_music": handle})
        return snapshot.model_copy(update={"story": story})

    async def _load_completed(self) -> None:
        try:
            snapshot = self._store.load_completed()
        except (OSError, ValueError) as e:
            logger.error("Failed to load completed story: %s", e)
            self.send(LoadFailed(source="completed"))
            return
        if snapshot is not None:
            story = snapshot.story.model_copy(update={"background_music": None})
            snapshot = snapshot.model_copy(update={"story": story})
        self.send(CompletedStoryLoaded(snapshot=snapshot))
