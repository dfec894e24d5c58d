"""Audio generation client.

The pipelines inject an audio generator callable matching the protocol:

    async def __call__(self, stage: str, prompt: str, duration_seconds: float) -> bytes: ...

Empty bytes are a valid outcome meaning "no audio": a missing sound effect
or music track never fails a chapter. HttpAudioGenerator therefore logs
provider errors and returns b"" instead of raising.

Stages: "sound_effect", "stinger", "music", "ambience" go to the
sound-generation endpoint; "narration" goes to text-to-speech.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

NARRATION_STAGE = "narration"


class AudioGenerator(Protocol):
    async def __call__(self, stage: str, prompt: str, duration_seconds: float) -> bytes: ...


class HttpAudioGenerator:
    """Async HTTP client for ElevenLabs-style audio endpoints.

      sound effects / music   POST {base_url}/sound-generation
                              {"text": prompt, "duration_seconds": n}
      narration               POST {base_url}/text-to-speech/{voice_id}
                              {"text": prompt, "model_id": ..., "voice_settings": ...}

    The response body is the audio itself (mpeg).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io/v1",
        voice_id: str = "21m00Tcm4TlvDq8ikWAM",
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._voice_id = voice_id
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "xi-api-key": self._api_key}

    def _build_request(self, stage: str, prompt: str, duration_seconds: float) -> tuple[str, dict]:
        if stage == NARRATION_STAGE:
            return f"{self._base_url}/text-to-speech/{self._voice_id}", {
                "text": prompt,
                "model_id": "eleven_multilingual_v2",
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            }
        return f"{self._base_url}/sound-generation", {
            "text": prompt,
            "duration_seconds": duration_seconds,
        }

    async def __call__(self, stage: str, prompt: str, duration_seconds: float) -> bytes:
        if not self._api_key:
            logger.warning("audio key missing; skipping stage=%s", stage)
            return b""
        if not prompt.strip():
            return b""

        url, body = self._build_request(stage, prompt, duration_seconds)
        logger.debug("audio call stage=%s url=%s duration=%s", stage, url, duration_seconds)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.error(
                    "audio endpoint %s not found; it may not be available on this plan", url,
                )
            else:
                logger.error("audio backend returned HTTP %d stage=%s",
                             e.response.status_code, stage)
            return b""
        except httpx.HTTPError as e:
            logger.error("audio request failed stage=%s: %s", stage, e)
            return b""

        return resp.content or b""
