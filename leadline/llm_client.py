"""
OpenAI-compatible API client for chat completions (lead extraction) and
audio transcription (voicemail speech-to-text).
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from leadline.config import Settings
from leadline.errors import ConfigurationError, UpstreamUnavailable

log = structlog.get_logger(__name__)

_DEFAULT_CONFIDENCE = 0.8


@dataclass
class SpeechResult:
    text: str
    confidence: float
    language: str


class OpenAIClient:
    """Async client for the OpenAI REST API (or any compatible endpoint)."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.openai_base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {settings.openai_api_key}"}
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if not self.settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.settings.http_timeout_seconds,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ── Chat completions ────────────────────────────────────────

    async def complete_json(self, system_prompt: str, user_content: str) -> dict:
        """Run one JSON-mode chat completion and return the parsed object."""
        client = await self._client()
        payload = {
            "model": self.settings.extraction_model,
            "response_format": {"type": "json_object"},
            "temperature": 0,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
        }
        try:
            resp = await client.post("/chat/completions", json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log.error("llm_request_failed", model=self.settings.extraction_model, error=str(e) or type(e).__name__)
            raise UpstreamUnavailable(f"LLM request failed: {type(e).__name__}") from e

        data = resp.json()
        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise UpstreamUnavailable("LLM response did not include any content")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise UpstreamUnavailable("Failed to parse LLM JSON response") from e
        if not isinstance(parsed, dict):
            raise UpstreamUnavailable("LLM JSON response is not an object")
        return parsed

    # ── Speech-to-text ──────────────────────────────────────────

    async def transcribe(self, audio: bytes, filename: str, content_type: str) -> SpeechResult:
        client = await self._client()
        files = {"file": (filename, audio, content_type)}
        data = {
            "model": self.settings.transcription_model,
            "language": self.settings.transcription_language,
            "response_format": "verbose_json",
        }
        try:
            resp = await client.post("/audio/transcriptions", files=files, data=data)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log.error("transcription_request_failed", error=str(e) or type(e).__name__)
            raise UpstreamUnavailable(f"Speech-to-text request failed: {type(e).__name__}") from e

        body = resp.json()
        return SpeechResult(
            text=(body.get("text") or "").strip(),
            confidence=_confidence_from_segments(body.get("segments")),
            language=body.get("language") or self.settings.transcription_language,
        )


def _confidence_from_segments(segments: Optional[list]) -> float:
    """exp(mean avg_logprob) over segments, clamped to [0, 1]."""
    logprobs = [s["avg_logprob"] for s in segments or [] if isinstance(s, dict) and "avg_logprob" in s]
    if not logprobs:
        return _DEFAULT_CONFIDENCE
    value = math.exp(sum(logprobs) / len(logprobs))
    return max(0.0, min(1.0, value))
