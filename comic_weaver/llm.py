"""Text generation client: structured JSON from a generative backend.

The pipelines inject a text generator callable matching the protocol:

    async def __call__(self, stage: str, prompt: str, schema: dict | None = None) -> Any: ...

`stage` identifies which pipeline step is calling (e.g. "chapter",
"audio_briefs", "choices_fallback"). Implementations may use it for logging
or routing. The return value is the parsed JSON document.

HttpTextGenerator talks to a Gemini-style ``generateContent`` endpoint and
asks for ``application/json`` output constrained by ``schema``.
Tests use the stub generators defined in conftest instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors shared by every generation client
# ---------------------------------------------------------------------------

class GenerationError(RuntimeError):
    """Raised when a generation backend cannot be reached or returns an error."""

    def __init__(self, message: str, status: int | str | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitError(GenerationError):
    """The backend refused the request for quota or rate reasons (HTTP 429)."""


def raise_for_backend(resp: httpx.Response, backend: str) -> None:
    """Translate an error response into GenerationError / RateLimitError."""
    if resp.status_code < 400:
        return
    detail = ""
    try:
        detail = str(resp.json().get("error", {}).get("status", ""))
    except (ValueError, AttributeError):
        pass
    if resp.status_code == 429 or detail == "RESOURCE_EXHAUSTED":
        raise RateLimitError(
            f"{backend} backend returned HTTP 429 (too many requests)", status=429,
        )
    raise GenerationError(
        f"{backend} backend returned HTTP {resp.status_code}", status=resp.status_code,
    )


def response_json(resp: httpx.Response, backend: str) -> dict:
    """Body of a successful response. Anything but a JSON object is a GenerationError."""
    try:
        data = resp.json()
    except ValueError as e:
        raise GenerationError(f"{backend} backend returned a non-JSON body") from e
    if not isinstance(data, dict):
        raise GenerationError(
            f"{backend} backend returned {type(data).__name__}, expected a JSON object",
        )
    return data


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class TextGenerator(Protocol):
    async def __call__(self, stage: str, prompt: str, schema: dict | None = None) -> Any: ...


# ---------------------------------------------------------------------------
# HttpTextGenerator
# ---------------------------------------------------------------------------

class HttpTextGenerator:
    """Async HTTP client for JSON-mode text generation.

    POST {base_url}/v1beta/models/{model}:generateContent
      {"contents": [{"parts": [{"text": ...}]}],
       "generationConfig": {"responseMimeType": "application/json",
                            "responseSchema": {...}}}
    Response: {"candidates": [{"content": {"parts": [{"text": "<json>"}]}}]}

    Args:
        api_key:  API key sent as the ``x-goog-api-key`` header.
        model:    Model identifier.
        base_url: Backend root URL.
        timeout:  HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _url(self) -> str:
        return f"{self._base_url}/v1beta/models/{self._model}:generateContent"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

    def _build_body(self, prompt: str, schema: dict | None) -> dict:
        config: dict[str, Any] = {"responseMimeType": "application/json"}
        if schema is not None:
            config["responseSchema"] = schema
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": config,
        }

    def _parse_response(self, data: dict) -> Any:
        text = response_text(data)
        if not text.strip():
            raise GenerationError("Text backend returned an empty response")
        return parse_json_text(text)

    async def __call__(self, stage: str, prompt: str, schema: dict | None = None) -> Any:
        url = self._url()
        logger.debug("text call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    url, json=self._build_body(prompt, schema), headers=self._headers(),
                )
        except httpx.ConnectError as e:
            raise GenerationError(f"Cannot connect to text backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise GenerationError(f"Text backend timed out after {self._timeout}s") from e

        raise_for_backend(resp, "Text")
        try:
            result = self._parse_response(response_json(resp, "Text"))
        except (AttributeError, TypeError, IndexError) as e:
            raise GenerationError(f"Text backend returned a malformed response: {e}") from e
        logger.debug("text response stage=%s type=%s", stage, type(result).__name__)
        return result


def response_parts(data: Any) -> list[dict]:
    """Content parts of the first candidate, or [] when the shape is off."""
    if not isinstance(data, dict):
        return []
    candidates = data.get("candidates")
    if not candidates or not isinstance(candidates, list) or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return []
    return [p for p in parts if isinstance(p, dict)]


def response_text(data: Any) -> str:
    """Concatenated text parts of the first candidate."""
    return "".join(p["text"] for p in response_parts(data) if isinstance(p.get("text"), str))


def parse_json_text(text: str) -> Any:
    """Parse a JSON document, tolerating a surrounding ``` fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Backend returned invalid JSON: {e}") from e
