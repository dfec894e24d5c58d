"""Shared fixtures: stub generators and a fully wired Services container.

The stubs record every call and answer per stage. A stage's configured
response may be a value, an exception instance (raised), a callable
(called with the prompt, or prompt and references for images), or a list
consumed one entry per call.
"""

import copy
from typing import Any

import pytest

from comic_weaver.config import Settings
from comic_weaver.images import ImageResult
from comic_weaver.llm import GenerationError
from comic_weaver.media import MediaRegistry
from comic_weaver.models import StoryState
from comic_weaver.pipeline.common import Services
from comic_weaver.scheduler import RequestScheduler
from comic_weaver.storage import SnapshotStore


def _next_response(responses: dict[str, Any], stage: str) -> Any:
    response = responses[stage]
    if isinstance(response, list):
        if not response:
            raise AssertionError(f"stub ran out of responses for stage {stage!r}")
        return response.pop(0)
    return response


class StubText:
    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, str, dict | None]] = []

    async def __call__(self, stage: str, prompt: str, schema: dict | None = None) -> Any:
        self.calls.append((stage, prompt, schema))
        if stage not in self.responses:
            raise GenerationError(f"no stub response for stage {stage!r}")
        response = _next_response(self.responses, stage)
        if callable(response):
            response = response(prompt)
        if isinstance(response, BaseException):
            raise response
        return copy.deepcopy(response)

    @property
    def stages(self) -> list[str]:
        return [c[0] for c in self.calls]


class StubImages:
    """Unconfigured stages answer with one image named after the stage."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, str, list[str]]] = []

    async def __call__(self, stage: str, prompt: str, references=()) -> ImageResult:
        self.calls.append((stage, prompt, list(references)))
        if stage not in self.responses:
            return ImageResult(images=[f"{stage}-{len(self.calls)}"])
        response = _next_response(self.responses, stage)
        if callable(response):
            response = response(prompt, list(references))
        if isinstance(response, BaseException):
            raise response
        return response

    @property
    def stages(self) -> list[str]:
        return [c[0] for c in self.calls]

    def calls_for(self, stage: str) -> list[tuple[str, str, list[str]]]:
        return [c for c in self.calls if c[0] == stage]


class StubAudio:
    """Unconfigured stages answer with non-empty bytes."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, str, float]] = []

    async def __call__(self, stage: str, prompt: str, duration_seconds: float) -> bytes:
        self.calls.append((stage, prompt, duration_seconds))
        if stage not in self.responses:
            return f"{stage}:{prompt}".encode()
        response = _next_response(self.responses, stage)
        if callable(response):
            response = response(prompt)
        if isinstance(response, BaseException):
            raise response
        return response

    def count(self, stage: str) -> int:
        return sum(1 for c in self.calls if c[0] == stage)


# ── Payload builders ─────────────────────────────────────


def make_choices() -> list[dict]:
    biased = {"adventure": 0.0, "danger": 0.0, "romance": 0.0, "drama": 0.0}
    choices = []
    for axis in ("adventure", "danger", "romance", "drama"):
        impact = dict(biased)
        impact[axis] = 0.15
        choices.append({"text": f"Lean into {axis}", "impact": impact})
    return choices


def make_panels(count: int, prefix: str = "Scene") -> list[dict]:
    return [
        {"description": f"{prefix} {i + 1} description", "narrative": f"{prefix} {i + 1} narrative"}
        for i in range(count)
    ]


def make_chapter(panel_count: int = 5, **extra: Any) -> dict:
    payload = {"panels": make_panels(panel_count), "choices": make_choices(), "newNpcs": []}
    payload.update(extra)
    return payload


def make_audio_briefs(panel_count: int = 5, stingers: bool = True) -> dict:
    return {
        "musicPrompt": "Sweeping orchestral theme",
        "ambiencePrompt": "Wind over hills",
        "perPanel": [
            {"sfxPrompt": f"sfx {i + 1}", **({"stingerPrompt": f"sting {i + 1}"} if stingers else {})}
            for i in range(panel_count)
        ],
    }


# ── Fixtures ─────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path / "data", retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def media() -> MediaRegistry:
    return MediaRegistry()


@pytest.fixture
def scheduler() -> RequestScheduler:
    return RequestScheduler(3, 100, 60.0, retries=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def stub_text() -> StubText:
    return StubText({
        "chapter": make_chapter(),
        "audio_briefs": make_audio_briefs(),
        "character_description": {"description": "A tall ranger with a green cloak."},
    })


@pytest.fixture
def stub_images() -> StubImages:
    # Reference page fails by default so chapters take the text-only path.
    return StubImages({"reference_page": GenerationError("no page")})


@pytest.fixture
def stub_audio() -> StubAudio:
    return StubAudio()


@pytest.fixture
def services(stub_text, stub_images, stub_audio, scheduler, media, settings) -> Services:
    return Services(
        text=stub_text,
        images=stub_images,
        audio=stub_audio,
        scheduler=scheduler,
        media=media,
        settings=settings,
    )


@pytest.fixture
def store(tmp_path) -> SnapshotStore:
    return SnapshotStore(tmp_path / "store")


@pytest.fixture
def story() -> StoryState:
    return StoryState(theme="fantasy", api_key="gemini-key", eleven_labs_api_key="eleven-key")
