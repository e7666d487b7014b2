"""
Recording download from the telephony provider and local retention.

The provider's RecordingUrl sometimes answers with XML/JSON metadata
instead of audio, so the fetcher tries the URL as given and then with
explicit .mp3/.wav suffixes.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx
import structlog

from leadline.config import Settings
from leadline.errors import ConfigurationError, UpstreamUnavailable

if TYPE_CHECKING:
    from leadline.database import Database

log = structlog.get_logger(__name__)

_AUDIO_EXT = re.compile(r"\.(mp3|wav)(\?|$)", re.IGNORECASE)
_URL_EXT = re.compile(r"\.([a-z0-9]+)(?:\?|$)", re.IGNORECASE)
_SAFE_NAME = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class DownloadedRecording:
    content: bytes
    content_type: str
    resolved_url: str
    extension: str


@dataclass
class StoredRecording:
    ref: str
    expires_at: Optional[datetime]
    size: int


def candidate_urls(recording_url: str) -> list[str]:
    urls = [recording_url]
    if not _AUDIO_EXT.search(recording_url):
        urls.append(f"{recording_url}.mp3")
        urls.append(f"{recording_url}.wav")
    return urls


def is_audio_response(content_type: str, url: str) -> bool:
    if content_type.lower().startswith("audio/"):
        return True
    return bool(_AUDIO_EXT.search(url))


def infer_audio_extension(content_type: str, resolved_url: str) -> str:
    content_type = content_type.lower()
    if "wav" in content_type:
        return "wav"
    if "mpeg" in content_type or "mp3" in content_type:
        return "mp3"
    match = _URL_EXT.search(resolved_url)
    if match:
        return match.group(1).lower()
    return "mp3"


class RecordingFetcher:
    """Downloads recordings with provider basic auth."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                timeout=self.settings.http_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def fetch(self, recording_url: str) -> DownloadedRecording:
        if not self.settings.twilio_account_sid or not self.settings.twilio_auth_token:
            raise ConfigurationError("Twilio credentials are not configured")

        client = await self._client()
        for url in candidate_urls(recording_url):
            try:
                resp = await client.get(url)
            except httpx.HTTPError as e:
                log.warning("recording_fetch_error", url=url, error=str(e) or type(e).__name__)
                continue

            content_type = resp.headers.get("content-type", "")
            if resp.is_success and is_audio_response(content_type, url):
                extension = infer_audio_extension(content_type, url)
                log.info("recording_downloaded", url=url, size=len(resp.content), extension=extension)
                return DownloadedRecording(
                    content=resp.content,
                    content_type=content_type or f"audio/{'wav' if extension == 'wav' else 'mpeg'}",
                    resolved_url=url,
                    extension=extension,
                )

            log.warning(
                "recording_fetch_unexpected_response",
                url=url,
                status=resp.status_code,
                content_type=content_type,
            )

        raise UpstreamUnavailable("Unable to download recording from provider")


class RecordingStore:
    """Keeps downloaded audio under ``base_dir/YYYY/MM/DD/<name>.<ext>``."""

    def __init__(self, base_dir: Path, retention_days: int):
        self.base_dir = base_dir
        self.retention_days = retention_days

    def build_path(self, name: str, extension: str, now: datetime) -> Path:
        safe = _SAFE_NAME.sub("", name) or "recording"
        return self.base_dir / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}" / f"{safe}.{extension}"

    async def save(self, name: str, recording: DownloadedRecording, now: datetime) -> StoredRecording:
        path = self.build_path(name, recording.extension, now)
        await asyncio.to_thread(_write_bytes, path, recording.content)
        expires_at = now + timedelta(days=self.retention_days) if self.retention_days > 0 else None
        return StoredRecording(ref=str(path), expires_at=expires_at, size=len(recording.content))

    async def delete(self, ref: str) -> None:
        await asyncio.to_thread(Path(ref).unlink, missing_ok=True)


def _write_bytes(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


async def purge_expired_recordings(
    db: "Database",
    store: RecordingStore,
    now: datetime,
    limit: int = 50,
) -> int:
    """Delete audio past its retention window and clear the call's reference."""
    if store.retention_days <= 0:
        return 0

    purged = 0
    for call in await db.list_expired_recordings(now, limit=limit):
        try:
            await store.delete(call.recording_ref)
        except OSError as e:
            log.error("recording_purge_failed", call_sid=call.call_sid, ref=call.recording_ref, error=str(e))
            continue
        await db.clear_recording_ref(call.call_sid)
        purged += 1

    if purged:
        log.info("recordings_purged", count=purged)
    return purged
