"""Core domain models.

Every pipeline stage, the state machine and the snapshot store operate on
these types. Pydantic is used for validation and serialisation at every data
boundary. All models accept camelCase aliases so snapshots written by the
older browser build (``{"value": ..., "context": {...}}``) still load.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Theme = Literal["fantasy", "scifi", "school"]
THEMES: tuple[str, ...] = ("fantasy", "scifi", "school")

MoodAxis = Literal["adventure", "danger", "romance", "drama"]

# Canonical order; also the tie-break order when picking a dominant axis.
MOOD_AXES: tuple[MoodAxis, ...] = ("adventure", "danger", "romance", "drama")

INITIAL_MOOD_VALUE = 0.25


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class MoodVector(_Model):
    """Four independent story-tone axes, each clamped to [0, 1]."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    adventure: float = INITIAL_MOOD_VALUE
    danger: float = INITIAL_MOOD_VALUE
    romance: float = INITIAL_MOOD_VALUE
    drama: float = INITIAL_MOOD_VALUE

    @field_validator("adventure", "danger", "romance", "drama", mode="before")
    @classmethod
    def _clamp_axis(cls, value: Any) -> Any:
        if value is None:
            return INITIAL_MOOD_VALUE
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return _clamp(value)
        if isinstance(value, str):
            try:
                return _clamp(float(value))
            except ValueError:
                return value
        return value

    def get(self, axis: MoodAxis) -> float:
        return getattr(self, axis)

    def apply(self, impact: MoodVector) -> MoodVector:
        """Clamped per-axis addition."""
        return MoodVector(**{axis: self.get(axis) + impact.get(axis) for axis in MOOD_AXES})

    def saturated(self) -> bool:
        return any(self.get(axis) >= 1.0 for axis in MOOD_AXES)

    def dominant_axis(self) -> MoodAxis:
        best = MOOD_AXES[0]
        for axis in MOOD_AXES[1:]:
            if self.get(axis) > self.get(best):
                best = axis
        return best

    def describe(self) -> str:
        return ", ".join(f"{axis.capitalize()}: {self.get(axis):.2f}" for axis in MOOD_AXES)


class Panel(_Model):
    """One rendered story beat. Audio fields hold media handles."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    image: str  # base64
    narrative: str
    narrative_audio: str | None = None
    sound_effect_audio: str | None = None
    stinger_audio: str | None = None

    def media_handles(self) -> list[str]:
        return [
            h for h in (self.narrative_audio, self.sound_effect_audio, self.stinger_audio)
            if h
        ]

    def silenced(self) -> Panel:
        return self.model_copy(update={
            "narrative_audio": None,
            "sound_effect_audio": None,
            "stinger_audio": None,
        })


class Choice(_Model):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    text: str
    impact: MoodVector = Field(default_factory=lambda: MoodVector(
        adventure=0.0, danger=0.0, romance=0.0, drama=0.0,
    ))


class NPC(_Model):
    """A recurring character with a cached reference portrait."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    description: str
    reference_image: str  # base64

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.description)


class Credentials(_Model):
    api_key: str = Field(default="", repr=False)
    eleven_labs_api_key: str = Field(default="", repr=False)

    def is_complete(self) -> bool:
        return bool(self.api_key.strip() and self.eleven_labs_api_key.strip())


class StoryState(_Model):
    """The aggregate mutated by the state machine."""

    mood: MoodVector = Field(default_factory=MoodVector)
    theme: Theme | None = None
    choices: list[Choice] = Field(default_factory=list)
    all_panels: list[Panel] = Field(default_factory=list)
    current_panel_index: int = 0
    character_reference: str | None = None
    character_description: str | None = None
    npcs: list[NPC] = Field(default_factory=list)
    last_choice_text: str | None = None
    background_music: str | None = None
    ending: MoodAxis | None = None
    is_generating: bool = False
    error: str | None = None
    is_muted: bool = False
    api_key: str | None = Field(default=None, repr=False)
    eleven_labs_api_key: str | None = Field(default=None, repr=False)

    @field_validator("npcs", "choices", "all_panels", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("mood", mode="before")
    @classmethod
    def _none_is_initial_mood(cls, value: Any) -> Any:
        return MoodVector() if value is None else value

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            api_key=self.api_key or "",
            eleven_labs_api_key=self.eleven_labs_api_key or "",
        )

    def has_credentials(self) -> bool:
        return self.credentials.is_complete()

    def media_handles(self) -> list[str]:
        """Every media handle owned by this state."""
        handles = [h for panel in self.all_panels for h in panel.media_handles()]
        if self.background_music:
            handles.append(self.background_music)
        return handles

    def public_view(self) -> dict[str, Any]:
        """Serialisable view without credentials."""
        return self.model_dump(exclude={"api_key", "eleven_labs_api_key"})


def initial_story() -> StoryState:
    return StoryState()


StateLabel = Literal[
    "idle",
    "loading_saved_story",
    "loading_completed_story",
    "generating",
    "playing",
    "ending_generating",
    "story_ended",
    "viewing_previous",
]


class Snapshot(BaseModel):
    """Persisted machine snapshot: state label plus the whole story."""

    model_config = ConfigDict(populate_by_name=True)

    state_label: str = Field(
        default="playing",
        validation_alias=AliasChoices("state_label", "stateLabel", "value"),
    )
    story: StoryState = Field(
        default_factory=StoryState,
        validation_alias=AliasChoices("story", "context"),
    )

    @field_validator("state_label", mode="before")
    @classmethod
    def _legacy_label(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _LEGACY_LABELS.get(value, value)
        return value


_LEGACY_LABELS = {
    "loadingSavedStory": "loading_saved_story",
    "loadingCompletedStory": "loading_completed_story",
    "endingGenerating": "ending_generating",
    "storyEnded": "story_ended",
    "viewingPrevious": "viewing_previous",
}


# ---------------------------------------------------------------------------
# Generation drafts: structured backend output after parsing
# ---------------------------------------------------------------------------

class PanelDraft(_Model):
    description: str
    narrative: str
    specs: dict[str, Any] | None = None


class NpcDraft(_Model):
    name: str
    description: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.description)


class ChapterDraft(_Model):
    """What an authoring strategy returns. Choices stay raw until validated."""

    panels: list[PanelDraft]
    choices: list[Any] = Field(default_factory=list)
    new_npcs: list[NpcDraft] = Field(default_factory=list)
    reference_page: str | None = None
    character_description: str | None = None

    @field_validator("choices", "new_npcs", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class PanelAudioBrief(_Model):
    sfx_prompt: str
    stinger_prompt: str | None = None


class AudioBriefs(_Model):
    music_prompt: str
    ambience_prompt: str | None = None
    per_panel: list[PanelAudioBrief] = Field(default_factory=list)


class ChapterResult(_Model):
    new_panels: list[Panel]
    choices: list[Choice] = Field(default_factory=list)
    character_description: str | None = None
    character_reference: str | None = None
    background_music: str | None = None
    new_npcs: list[NPC] = Field(default_factory=list)

    def media_handles(self) -> list[str]:
        handles = [h for panel in self.new_panels for h in panel.media_handles()]
        if self.background_music:
            handles.append(self.background_music)
        return handles


class EndingResult(_Model):
    new_panels: list[Panel]

    def media_handles(self) -> list[str]:
        return [h for panel in self.new_panels for h in panel.media_handles()]
