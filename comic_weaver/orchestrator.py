"""Story state machine.

``transition(machine, event) -> (machine, effects)`` is pure and
synchronous: it never awaits, never touches storage or the network, and
never releases media itself. Everything with a side effect is returned as an
Effect for the runtime to execute.

Labels and the events each accepts:

    idle                      START, CONTINUE, VIEW_PREVIOUS
    loading_saved_story       SAVED_STORY_LOADED, LOAD_FAILED
    loading_completed_story   COMPLETED_STORY_LOADED, LOAD_FAILED
    generating                CHAPTER_READY, CHAPTER_FAILED
    playing                   MAKE_CHOICE, FINISH_STORY
    ending_generating         ENDING_READY, ENDING_FAILED
    story_ended               RESTART
    viewing_previous          (navigation only)

Every label except idle and the loading labels also accepts VIEW_PREV,
VIEW_NEXT, TOGGLE_MUTE and EXIT_TO_MENU. Events a label does not accept are
ignored.

Each generation request carries the machine's generation number. A result
whose number no longer matches (the player exited or restarted meanwhile)
is discarded and its media released.
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from comic_weaver.models import (
    NPC,
    ChapterResult,
    Choice,
    Credentials,
    EndingResult,
    MoodAxis,
    Snapshot,
    StateLabel,
    StoryState,
    Theme,
    initial_story,
)

logger = logging.getLogger(__name__)

NO_SAVED_STORY = "No saved story found. Please start a new game."
MISSING_KEYS = "Saved story is missing API keys. Please start a new game."
SAVED_LOAD_FAILED = "Failed to load saved story. Please start a new game."
NO_COMPLETED_STORY = "No completed story found."
COMPLETED_LOAD_FAILED = "Failed to load the completed story."
UNKNOWN_GENERATION_ERROR = "An unknown error occurred during generation."

ACTIVE_LABELS: frozenset[str] = frozenset({
    "generating", "playing", "ending_generating", "story_ended", "viewing_previous",
})
# viewing_previous replays the completed story and must not overwrite the save slot.
AUTOSAVE_LABELS: frozenset[str] = frozenset({
    "generating", "playing", "ending_generating", "story_ended",
})
# Transitions that change only these fields are not autosaved.
VIEW_ONLY_FIELDS: frozenset[str] = frozenset({"current_panel_index", "is_muted"})


class Machine(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: StateLabel = "idle"
    story: StoryState = Field(default_factory=initial_story)
    generation: int = 0

    def snapshot(self) -> Snapshot:
        return Snapshot(state_label=self.label, story=self.story)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Start(_Event):
    type: Literal["START"] = "START"
    theme: Theme
    credentials: Credentials


class Continue(_Event):
    type: Literal["CONTINUE"] = "CONTINUE"


class ViewPrevious(_Event):
    """Open the last completed story for replay."""
    type: Literal["VIEW_PREVIOUS"] = "VIEW_PREVIOUS"


class MakeChoice(_Event):
    type: Literal["MAKE_CHOICE"] = "MAKE_CHOICE"
    choice: Choice


class ViewPrev(_Event):
    type: Literal["VIEW_PREV"] = "VIEW_PREV"


class ViewNext(_Event):
    type: Literal["VIEW_NEXT"] = "VIEW_NEXT"


class Restart(_Event):
    type: Literal["RESTART"] = "RESTART"


class ToggleMute(_Event):
    type: Literal["TOGGLE_MUTE"] = "TOGGLE_MUTE"


class ExitToMenu(_Event):
    type: Literal["EXIT_TO_MENU"] = "EXIT_TO_MENU"


class FinishStory(_Event):
    """The ending panels have been viewed."""
    type: Literal["FINISH_STORY"] = "FINISH_STORY"


class ChapterReady(_Event):
    type: Literal["CHAPTER_READY"] = "CHAPTER_READY"
    generation: int
    result: ChapterResult


class ChapterFailed(_Event):
    type: Literal["CHAPTER_FAILED"] = "CHAPTER_FAILED"
    generation: int
    error: str = ""


class EndingReady(_Event):
    type: Literal["ENDING_READY"] = "ENDING_READY"
    generation: int
    result: EndingResult


class EndingFailed(_Event):
    type: Literal["ENDING_FAILED"] = "ENDING_FAILED"
    generation: int
    error: str = ""


class SavedStoryLoaded(_Event):
    type: Literal["SAVED_STORY_LOADED"] = "SAVED_STORY_LOADED"
    snapshot: Snapshot | None = None


class CompletedStoryLoaded(_Event):
    type: Literal["COMPLETED_STORY_LOADED"] = "COMPLETED_STORY_LOADED"
    snapshot: Snapshot | None = None


class LoadFailed(_Event):
    type: Literal["LOAD_FAILED"] = "LOAD_FAILED"
    source: Literal["saved", "completed"] = "saved"


UserEvent = Annotated[
    Union[
        Start, Continue, ViewPrevious, MakeChoice, ViewPrev, ViewNext,
        Restart, ToggleMute, ExitToMenu, FinishStory,
    ],
    Field(discriminator="type"),
]

Event = Union[
    Start, Continue, ViewPrevious, MakeChoice, ViewPrev, ViewNext,
    Restart, ToggleMute, ExitToMenu, FinishStory,
    ChapterReady, ChapterFailed, EndingReady, EndingFailed,
    SavedStoryLoaded, CompletedStoryLoaded, LoadFailed,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

class _Effect(BaseModel):
    model_config = ConfigDict(frozen=True)


class GenerateChapter(_Effect):
    generation: int
    story: StoryState


class GenerateEnding(_Effect):
    generation: int
    story: StoryState
    axis: MoodAxis


class LoadSavedStory(_Effect):
    pass


class LoadCompletedStory(_Effect):
    pass


class SaveSnapshot(_Effect):
    snapshot: Snapshot


class SaveCompletedStory(_Effect):
    snapshot: Snapshot


class ClearSavedStory(_Effect):
    pass


class ReleaseMedia(_Effect):
    handles: tuple[str, ...]


Effect = Union[
    GenerateChapter, GenerateEnding, LoadSavedStory, LoadCompletedStory,
    SaveSnapshot, SaveCompletedStory, ClearSavedStory, ReleaseMedia,
]

Result = tuple[Machine, list[Effect]]


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------

def transition(machine: Machine, event: Event) -> Result:
    handler = _HANDLERS.get(event.type)
    if handler is None:
        return machine, []
    new_machine, effects = handler(machine, event)
    if _needs_save(machine, new_machine):
        effects.append(SaveSnapshot(snapshot=new_machine.snapshot()))
    return new_machine, effects


def _needs_save(before: Machine, after: Machine) -> bool:
    if after is before or after.label not in AUTOSAVE_LABELS:
        return False
    if after.label != before.label or after.generation != before.generation:
        return True
    return any(
        getattr(before.story, name) != getattr(after.story, name)
        for name in StoryState.model_fields
        if name not in VIEW_ONLY_FIELDS
    )


def _ignored(machine: Machine, event: Event) -> Result:
    logger.debug("event %s ignored in %s", event.type, machine.label)
    return machine, []


def _release(handles) -> list[Effect]:
    handles = tuple(h for h in handles if h)
    return [ReleaseMedia(handles=handles)] if handles else []


def _update(machine: Machine, **changes) -> StoryState:
    return machine.story.model_copy(update=changes)


def _reset(machine: Machine, label: StateLabel = "idle", **story_changes) -> Machine:
    story = initial_story()
    if story_changes:
        story = story.model_copy(update=story_changes)
    return Machine(label=label, story=story, generation=machine.generation + 1)


# ── idle ──


def _on_start(machine: Machine, event: Start) -> Result:
    if machine.label != "idle":
        return _ignored(machine, event)
    generation = machine.generation + 1
    story = initial_story().model_copy(update={
        "theme": event.theme,
        "api_key": event.credentials.api_key,
        "eleven_labs_api_key": event.credentials.eleven_labs_api_key,
        "is_generating": True,
    })
    effects = _release(machine.story.media_handles())
    effects.append(GenerateChapter(generation=generation, story=story))
    return Machine(label="generating", story=story, generation=generation), effects


def _on_continue(machine: Machine, event: Continue) -> Result:
    if machine.label != "idle":
        return _ignored(machine, event)
    story = _update(machine, error=None)
    return Machine(label="loading_saved_story", story=story, generation=machine.generation), [
        LoadSavedStory(),
    ]


def _on_view_previous(machine: Machine, event: ViewPrevious) -> Result:
    if machine.label != "idle":
        return _ignored(machine, event)
    story = _update(machine, error=None)
    return Machine(label="loading_completed_story", story=story, generation=machine.generation), [
        LoadCompletedStory(),
    ]


# ── loading ──


def _loaded_story(snapshot: Snapshot) -> StoryState:
    story = snapshot.story
    return story.model_copy(update={
        "all_panels": [p.silenced() for p in story.all_panels],
        "error": None,
    })


def _on_saved_loaded(machine: Machine, event: SavedStoryLoaded) -> Result:
    if machine.label != "loading_saved_story":
        stale = event.snapshot.story.media_handles() if event.snapshot else []
        return machine, _release(stale)

    snapshot = event.snapshot
    if snapshot is None:
        return _reset(machine, error=NO_SAVED_STORY), []
    if not snapshot.story.has_credentials():
        return _reset(machine, error=MISSING_KEYS), _release(snapshot.story.media_handles())

    story = _loaded_story(snapshot)
    generation = machine.generation + 1
    label = snapshot.state_label
    logger.info("Resuming saved story label=%s panels=%d", label, len(story.all_panels))

    if label == "generating":
        story = story.model_copy(update={"is_generating": True})
        return Machine(label="generating", story=story, generation=generation), [
            GenerateChapter(generation=generation, story=story),
        ]
    if label == "ending_generating":
        axis = story.ending or story.mood.dominant_axis()
        story = story.model_copy(update={"is_generating": True, "ending": axis})
        return Machine(label="ending_generating", story=story, generation=generation), [
            GenerateEnding(generation=generation, story=story, axis=axis),
        ]
    story = story.model_copy(update={"is_generating": False})
    resumed: StateLabel = "story_ended" if label == "story_ended" else "playing"
    return Machine(label=resumed, story=story, generation=generation), []


def _on_completed_loaded(machine: Machine, event: CompletedStoryLoaded) -> Result:
    if machine.label != "loading_completed_story":
        stale = event.snapshot.story.media_handles() if event.snapshot else []
        return machine, _release(stale)

    if event.snapshot is None:
        return _reset(machine, error=NO_COMPLETED_STORY), []
    story = _loaded_story(event.snapshot).model_copy(update={
        "is_generating": False,
        "current_panel_index": 0,
    })
    return Machine(label="viewing_previous", story=story, generation=machine.generation + 1), []


def _on_load_failed(machine: Machine, event: LoadFailed) -> Result:
    if event.source == "saved" and machine.label == "loading_saved_story":
        return _reset(machine, error=SAVED_LOAD_FAILED), []
    if event.source == "completed" and machine.label == "loading_completed_story":
        return _reset(machine, error=COMPLETED_LOAD_FAILED), []
    return _ignored(machine, event)


# ── generating ──


def _is_stale(machine: Machine, generation: int, label: StateLabel) -> bool:
    return generation != machine.generation or machine.label != label


def _merge_npcs(roster: list[NPC], new_npcs: list[NPC]) -> list[NPC]:
    known = {npc.key for npc in roster}
    merged = list(roster)
    for npc in new_npcs:
        if npc.key not in known:
            known.add(npc.key)
            merged.append(npc)
    return merged


def _on_chapter_ready(machine: Machine, event: ChapterReady) -> Result:
    result = event.result
    if _is_stale(machine, event.generation, "generating"):
        logger.info("Discarding stale chapter (generation %d, current %d)",
                    event.generation, machine.generation)
        return machine, _release(result.media_handles())

    story = machine.story
    effects: list[Effect] = []
    if story.background_music and story.background_music != result.background_music:
        effects.extend(_release([story.background_music]))
    new_story = story.model_copy(update={
        "all_panels": [*story.all_panels, *result.new_panels],
        "choices": list(result.choices),
        "character_description": story.character_description or result.character_description,
        "character_reference": story.character_reference or result.character_reference,
        "background_music": result.background_music,
        "npcs": _merge_npcs(story.npcs, result.new_npcs),
        "current_panel_index": len(story.all_panels),
        "is_generating": False,
        "error": None,
    })
    return Machine(label="playing", story=new_story, generation=machine.generation), effects


def _on_chapter_failed(machine: Machine, event: ChapterFailed) -> Result:
    if _is_stale(machine, event.generation, "generating"):
        return _ignored(machine, event)
    story = _update(machine, is_generating=False, error=event.error or UNKNOWN_GENERATION_ERROR)
    return Machine(label="playing", story=story, generation=machine.generation), []


# ── playing ──


def _offered(story: StoryState, choice: Choice) -> Choice | None:
    for offered in story.choices:
        if offered.text == choice.text:
            return offered
    return None


def _on_make_choice(machine: Machine, event: MakeChoice) -> Result:
    if machine.label != "playing" or machine.story.is_generating:
        return _ignored(machine, event)
    choice = _offered(machine.story, event.choice)
    if choice is None:
        logger.warning("Choice %r is not among the offered choices", event.choice.text)
        return machine, []

    mood = machine.story.mood.apply(choice.impact)
    generation = machine.generation + 1
    changes = {
        "mood": mood,
        "choices": [],
        "last_choice_text": choice.text,
        "is_generating": True,
        "error": None,
    }
    if mood.saturated():
        axis = mood.dominant_axis()
        story = _update(machine, ending=axis, **changes)
        logger.info("Mood saturated (%s); generating the %s ending", mood.describe(), axis)
        return Machine(label="ending_generating", story=story, generation=generation), [
            GenerateEnding(generation=generation, story=story, axis=axis),
        ]
    story = _update(machine, **changes)
    return Machine(label="generating", story=story, generation=generation), [
        GenerateChapter(generation=generation, story=story),
    ]


def _on_finish_story(machine: Machine, event: FinishStory) -> Result:
    story = machine.story
    if machine.label != "playing" or story.ending is None or story.is_generating:
        return _ignored(machine, event)
    ended = Machine(label="story_ended", story=story, generation=machine.generation)
    return ended, [SaveCompletedStory(snapshot=ended.snapshot())]


# ── ending_generating ──


def _on_ending_ready(machine: Machine, event: EndingReady) -> Result:
    result = event.result
    if _is_stale(machine, event.generation, "ending_generating"):
        logger.info("Discarding stale ending (generation %d, current %d)",
                    event.generation, machine.generation)
        return machine, _release(result.media_handles())
    story = machine.story
    new_story = story.model_copy(update={
        "all_panels": [*story.all_panels, *result.new_panels],
        "choices": [],
        "current_panel_index": len(story.all_panels),
        "is_generating": False,
        "error": None,
    })
    return Machine(label="playing", story=new_story, generation=machine.generation), []


def _on_ending_failed(machine: Machine, event: EndingFailed) -> Result:
    if _is_stale(machine, event.generation, "ending_generating"):
        return _ignored(machine, event)
    story = _update(machine, is_generating=False, error=event.error or UNKNOWN_GENERATION_ERROR)
    return Machine(label="playing", story=story, generation=machine.generation), []


# ── story_ended ──


def _on_restart(machine: Machine, event: Restart) -> Result:
    if machine.label != "story_ended":
        return _ignored(machine, event)
    effects: list[Effect] = [ClearSavedStory()]
    effects.extend(_release(machine.story.media_handles()))
    return _reset(machine), effects


# ── any active label ──


def _navigate(machine: Machine, step: int) -> Result:
    if machine.label not in ACTIVE_LABELS:
        return machine, []
    last = max(0, len(machine.story.all_panels) - 1)
    index = max(0, min(last, machine.story.current_panel_index + step))
    if index == machine.story.current_panel_index:
        return machine, []
    return machine.model_copy(update={"story": _update(machine, current_panel_index=index)}), []


def _on_view_prev(machine: Machine, event: ViewPrev) -> Result:
    return _navigate(machine, -1)


def _on_view_next(machine: Machine, event: ViewNext) -> Result:
    return _navigate(machine, 1)


def _on_toggle_mute(machine: Machine, event: ToggleMute) -> Result:
    if machine.label not in ACTIVE_LABELS:
        return _ignored(machine, event)
    story = _update(machine, is_muted=not machine.story.is_muted)
    return machine.model_copy(update={"story": story}), []


def _on_exit_to_menu(machine: Machine, event: ExitToMenu) -> Result:
    if machine.label not in ACTIVE_LABELS:
        return _ignored(machine, event)
    return _reset(machine), _release(machine.story.media_handles())


_HANDLERS = {
    "START": _on_start,
    "CONTINUE": _on_continue,
    "VIEW_PREVIOUS": _on_view_previous,
    "MAKE_CHOICE": _on_make_choice,
    "VIEW_PREV": _on_view_prev,
    "VIEW_NEXT": _on_view_next,
    "RESTART": _on_restart,
    "TOGGLE_MUTE": _on_toggle_mute,
    "EXIT_TO_MENU": _on_exit_to_menu,
    "FINISH_STORY": _on_finish_story,
    "CHAPTER_READY": _on_chapter_ready,
    "CHAPTER_FAILED": _on_chapter_failed,
    "ENDING_READY": _on_ending_ready,
    "ENDING_FAILED": _on_ending_failed,
    "SAVED_STORY_LOADED": _on_saved_loaded,
    "COMPLETED_STORY_LOADED": _on_completed_loaded,
    "LOAD_FAILED": _on_load_failed,
}
