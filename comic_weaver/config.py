"""Runtime settings.

Values come from ``COMIC_WEAVER_*`` environment variables (a ``.env`` file
is loaded by the app and the launcher before settings are built). Every
field has a default, so ``Settings()`` is a complete configuration.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "COMIC_WEAVER_"
DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = "INFO"

    # Backends
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    text_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image-preview"
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    request_timeout: float = 120.0

    # Request scheduler (image backend)
    image_concurrency: int = 3
    image_requests_per_window: int = 10
    image_window_seconds: float = 60.0
    retry_attempts: int = 3
    retry_base_delay: float = 0.25
    retry_max_delay: float = 1.0

    # Chapter shape
    page_panel_count: int = 6
    fallback_panel_count: int = 5
    ending_panel_count: int = 4
    audio_brief_panel_limit: int = 5

    # Per-chapter audio caps and durations (seconds)
    max_sound_effects: int = 4
    max_stingers: int = 2
    sound_effect_duration: float = 4.0
    stinger_duration: float = 2.0
    music_duration: float = 20.0
    ambience_duration: float = 20.0
    narrate_panels: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``COMIC_WEAVER_<FIELD>`` variables.

        Unknown variables are ignored; invalid values raise ``ValueError``
        naming the offending variable.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()
        try:
            settings = cls.model_validate(values)
        except ValidationError as e:
            bad = ", ".join(f"{ENV_PREFIX}{str(err['loc'][0]).upper()}" for err in e.errors())
            raise ValueError(f"Invalid settings in environment: {bad}") from e
        logger.debug("settings loaded overrides=%s", sorted(values))
        return settings
