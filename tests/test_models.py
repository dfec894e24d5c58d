"""Tests for comic_weaver.models: mood arithmetic, panels, story state, snapshots."""

import random

import pytest

from comic_weaver.models import (
    MOOD_AXES,
    ChapterDraft,
    Credentials,
    MoodVector,
    Panel,
    Snapshot,
    StoryState,
    initial_story,
)


# ---------------------------------------------------------------------------
# MoodVector
# ---------------------------------------------------------------------------

class TestMoodVector:
    def test_defaults_to_quarter_on_every_axis(self) -> None:
        mood = MoodVector()
        assert [mood.get(a) for a in MOOD_AXES] == [0.25, 0.25, 0.25, 0.25]

    def test_clamps_on_construction(self) -> None:
        mood = MoodVector(adventure=1.7, danger=-0.3, romance=0.5, drama=1.0)
        assert mood.adventure == 1.0
        assert mood.danger == 0.0
        assert mood.romance == 0.5

    def test_missing_drama_defaults(self) -> None:
        mood = MoodVector.model_validate({"adventure": 0.4, "danger": 0.1, "romance": 0.2})
        assert mood.drama == 0.25

    def test_null_axis_defaults(self) -> None:
        mood = MoodVector.model_validate({"adventure": None})
        assert mood.adventure == 0.25

    def test_apply_is_clamped_addition(self) -> None:
        mood = MoodVector().apply(MoodVector(adventure=0.8, danger=0.0, romance=0.0, drama=0.0))
        assert mood.adventure == 1.0
        assert mood.danger == 0.25
        assert mood.saturated()
        assert mood.dominant_axis() == "adventure"

    def test_apply_keeps_axes_in_range_for_random_impacts(self) -> None:
        rng = random.Random(7)
        mood = MoodVector()
        for _ in range(200):
            impact = MoodVector(**{a: rng.uniform(0.0, 1.0) for a in MOOD_AXES})
            mood = mood.apply(impact)
            for axis in MOOD_AXES:
                assert 0.0 <= mood.get(axis) <= 1.0

    def test_dominant_axis_tie_breaks_in_canonical_order(self) -> None:
        assert MoodVector(adventure=0.5, danger=0.5, romance=0.5, drama=0.5).dominant_axis() == "adventure"
        assert MoodVector(adventure=0.1, danger=1.0, romance=1.0, drama=1.0).dominant_axis() == "danger"
        assert MoodVector(adventure=0.1, danger=0.2, romance=1.0, drama=1.0).dominant_axis() == "romance"

    def test_not_saturated_below_one(self) -> None:
        assert not MoodVector(adventure=0.99).saturated()

    def test_describe(self) -> None:
        assert MoodVector().describe() == "Adventure: 0.25, Danger: 0.25, Romance: 0.25, Drama: 0.25"


# ---------------------------------------------------------------------------
# Panel
# ---------------------------------------------------------------------------

class TestPanel:
    def test_media_handles(self) -> None:
        panel = Panel(image="img", narrative="n", sound_effect_audio="media:a", stinger_audio="media:b")
        assert panel.media_handles() == ["media:a", "media:b"]

    def test_silenced_drops_audio(self) -> None:
        panel = Panel(image="img", narrative="n", narrative_audio="media:x", sound_effect_audio="media:a")
        quiet = panel.silenced()
        assert quiet.media_handles() == []
        assert quiet.image == "img"
        assert panel.sound_effect_audio == "media:a"

    def test_accepts_camel_case(self) -> None:
        panel = Panel.model_validate({"image": "i", "narrative": "n", "soundEffectAudio": "media:s"})
        assert panel.sound_effect_audio == "media:s"


# ---------------------------------------------------------------------------
# StoryState
# ---------------------------------------------------------------------------

class TestStoryState:
    def test_initial_story_is_empty(self) -> None:
        story = initial_story()
        assert story.mood == MoodVector()
        assert story.all_panels == []
        assert story.choices == []
        assert story.npcs == []
        assert story.ending is None
        assert story.current_panel_index == 0
        assert story.is_generating is False

    def test_credentials(self) -> None:
        story = StoryState(api_key="a", eleven_labs_api_key="b")
        assert story.has_credentials()
        assert not StoryState(api_key="a").has_credentials()
        assert not StoryState(api_key="  ", eleven_labs_api_key="b").has_credentials()

    def test_keys_hidden_from_repr(self) -> None:
        story = StoryState(api_key="secret-1", eleven_labs_api_key="secret-2")
        assert "secret" not in repr(story)
        assert "secret" not in repr(Credentials(api_key="secret-3"))

    def test_public_view_excludes_keys(self) -> None:
        view = StoryState(api_key="a", eleven_labs_api_key="b").public_view()
        assert "api_key" not in view
        assert "eleven_labs_api_key" not in view
        assert view["mood"]["adventure"] == 0.25

    def test_media_handles_include_music(self) -> None:
        story = StoryState(
            all_panels=[Panel(image="i", narrative="n", sound_effect_audio="media:1")],
            background_music="media:m",
        )
        assert story.media_handles() == ["media:1", "media:m"]

    def test_null_collections_load_empty(self) -> None:
        story = StoryState.model_validate({"npcs": None, "choices": None, "allPanels": None})
        assert story.npcs == []
        assert story.choices == []
        assert story.all_panels == []


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class TestSnapshot:
    def test_legacy_format(self) -> None:
        snap = Snapshot.model_validate({
            "value": "playing",
            "context": {
                "mood": {"adventure": 0.5, "danger": 0.3, "romance": 0.25},
                "theme": "scifi",
                "allPanels": [{"image": "i", "narrative": "n", "soundEffectAudio": "blob:old"}],
                "currentPanelIndex": 0,
                "apiKey": "k",
                "elevenLabsApiKey": "e",
            },
        })
        assert snap.state_label == "playing"
        assert snap.story.theme == "scifi"
        assert snap.story.mood.drama == 0.25
        assert snap.story.npcs == []
        assert snap.story.has_credentials()

    def test_legacy_camel_case_label(self) -> None:
        snap = Snapshot.model_validate({"value": "storyEnded", "context": {}})
        assert snap.state_label == "story_ended"

    def test_current_format_round_trip(self) -> None:
        snap = Snapshot(state_label="generating", story=StoryState(theme="school"))
        loaded = Snapshot.model_validate_json(snap.model_dump_json())
        assert loaded.state_label == "generating"
        assert loaded.story.theme == "school"


class TestChapterDraft:
    def test_null_lists_are_empty(self) -> None:
        draft = ChapterDraft.model_validate({
            "panels": [{"description": "d", "narrative": "n"}], "choices": None, "newNpcs": None,
        })
        assert draft.choices == []
        assert draft.new_npcs == []

    def test_panels_required(self) -> None:
        with pytest.raises(ValueError):
            ChapterDraft.model_validate({"choices": []})
