"""Image generation client.

The pipelines inject an image generator callable matching the protocol:

    async def __call__(self, stage: str, prompt: str,
                       references: Sequence[str] = ()) -> ImageResult: ...

`references` are base64 images supplied as conditioning (reference page,
protagonist portrait, NPC portraits). The result carries every image the
backend returned plus any text it produced alongside; the reference-page
authoring step reads its JSON from that text.

Callers never invoke an image generator directly: every call goes through
the RequestScheduler, which bounds concurrency and request rate.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx
from pydantic import BaseModel, Field

from comic_weaver.llm import GenerationError, raise_for_backend, response_json, response_parts

logger = logging.getLogger(__name__)


class ImageResult(BaseModel):
    images: list[str] = Field(default_factory=list)  # base64
    text: str = ""


class ImageGenerator(Protocol):
    async def __call__(
        self, stage: str, prompt: str, references: Sequence[str] = (),
    ) -> ImageResult: ...


class HttpImageGenerator:
    """Async HTTP client for a Gemini-style image model.

    POST {base_url}/v1beta/models/{model}:generateContent
      {"contents": [{"parts": [{"inlineData": ...}, ..., {"text": prompt}]}],
       "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]}}
    Response parts carry either ``inlineData`` (an image) or ``text``.

    A response with no image at all raises GenerationError.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash-image-preview",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 120.0,
        mime_type: str = "image/jpeg",
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._mime_type = mime_type

    def _url(self) -> str:
        return f"{self._base_url}/v1beta/models/{self._model}:generateContent"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

    def _build_body(self, prompt: str, references: Sequence[str]) -> dict:
        parts: list[dict] = [
            {"inlineData": {"data": ref, "mimeType": self._mime_type}}
            for ref in references if ref
        ]
        parts.append({"text": prompt})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }

    def _parse_response(self, data: dict) -> ImageResult:
        result = ImageResult()
        for part in response_parts(data):
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and isinstance(inline.get("data"), str) and inline["data"]:
                result.images.append(inline["data"])
            elif isinstance(part.get("text"), str):
                result.text += part["text"]
        if not result.images:
            raise GenerationError(
                "Image generation failed. The model returned text instead of an image: "
                f"{result.text[:200]!r}"
            )
        return result

    async def __call__(
        self, stage: str, prompt: str, references: Sequence[str] = (),
    ) -> ImageResult:
        url = self._url()
        logger.debug(
            "image call stage=%s prompt_len=%d references=%d",
            stage, len(prompt), len(references),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    url, json=self._build_body(prompt, references), headers=self._headers(),
                )
        except httpx.ConnectError as e:
            raise GenerationError(f"Cannot connect to image backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise GenerationError(f"Image backend timed out after {self._timeout}s") from e

        raise_for_backend(resp, "Image")
        try:
            result = self._parse_response(response_json(resp, "Image"))
        except (AttributeError, TypeError, IndexError) as e:
            raise GenerationError(f"Image backend returned a malformed response: {e}") from e
        logger.debug("image response stage=%s images=%d", stage, len(result.images))
        return result
