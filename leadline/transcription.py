"""
Transcription coordinator: turns a finished call into exactly one
Transcript and hands it to the lead extractor.

Status machine (guarded at the store):
  pending -> processing | completed | failed
  processing -> completed | failed, or processing again once the claim is stale
  failed -> processing (manual retry) | failed | completed (transcript exists)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel

from leadline.config import Settings
from leadline.database import Database
from leadline.errors import NotFoundError, UpstreamUnavailable, ValidationError
from leadline.lead_extractor import LeadExtractor, format_turns
from leadline.llm_client import SpeechResult
from leadline.models import (
    CallRecord,
    ConversationCompletePayload,
    Transcript,
    TranscriptionStatus,
    utcnow,
)
from leadline.recording import DownloadedRecording, RecordingStore
from leadline.retry import RetryPolicy

log = structlog.get_logger(__name__)


class AudioFetcher(Protocol):
    async def fetch(self, recording_url: str) -> DownloadedRecording: ...


class SpeechToText(Protocol):
    async def transcribe(self, audio: bytes, filename: str, content_type: str) -> SpeechResult: ...


class TranscriptionOutcome(BaseModel):
    status: str
    call_sid: str
    already_handled: bool = False
    job_id: Optional[str] = None


class TranscriptionCoordinator:
    def __init__(
        self,
        settings: Settings,
        db: Database,
        fetcher: AudioFetcher,
        store: RecordingStore,
        stt: SpeechToText,
        extractor: LeadExtractor,
    ):
        self.settings = settings
        self.db = db
        self.fetcher = fetcher
        self.store = store
        self.stt = stt
        self.extractor = extractor
        self.retry_policy = RetryPolicy(max_attempts=settings.transcription_max_attempts)
        self.claim_ttl = timedelta(minutes=settings.transcription_claim_ttl_minutes)

    # ── Public API ──────────────────────────────────────────────

    async def handle_recording_complete(
        self,
        call_sid: str,
        recording_url: Optional[str],
        duration_seconds: Optional[int] = None,
        recorded_at: Optional[datetime] = None,
        recording_sid: str = "",
        from_number: str = "",
        to_number: str = "",
        now: Optional[datetime] = None,
    ) -> TranscriptionOutcome:
        """
        Process a recording-complete webhook. Safe to call repeatedly for the
        same call: once a transcript exists nothing is fetched or billed again.
        """
        now = now or utcnow()
        if not call_sid:
            raise ValidationError("CallSid is required")

        fields: dict = {"status": "completed", "recorded_at": recorded_at or now}
        if recording_url:
            fields["recording_url"] = recording_url
        if recording_sid:
            fields["recording_sid"] = recording_sid
        if duration_seconds is not None:
            fields["recording_duration_seconds"] = duration_seconds
        if from_number:
            fields["from_number"] = from_number
        if to_number:
            fields["to_number"] = to_number
        call = await self.db.upsert_call(call_sid, **fields)

        if await self.db.get_transcript(call_sid):
            await self.db.transition_transcription_status(call_sid, TranscriptionStatus.COMPLETED)
            log.info("transcription_already_completed", call_sid=call_sid)
            job = await self.db.get_job_by_call_sid(call_sid)
            return TranscriptionOutcome(
                status="transcribed",
                call_sid=call_sid,
                already_handled=True,
                job_id=job.id if job else None,
            )

        if not recording_url:
            await self.db.transition_transcription_status(
                call_sid, TranscriptionStatus.FAILED, last_error="RecordingUrl is required"
            )
            log.warning("recording_url_missing", call_sid=call_sid)
            raise ValidationError("RecordingUrl is required")

        return await self._transcribe(call, recording_url, now)

    async def retry_transcription(self, call_sid: str, now: Optional[datetime] = None) -> TranscriptionOutcome:
        """Re-run download → STT → extraction for a failed call from its stored provider URL."""
        now = now or utcnow()
        call = await self.db.get_call(call_sid)
        if not call:
            raise NotFoundError(f"Call not found: {call_sid}")

        if call.transcription_status == TranscriptionStatus.COMPLETED:
            return TranscriptionOutcome(status="transcribed", call_sid=call_sid, already_handled=True)
        if call.transcription_status != TranscriptionStatus.FAILED and not self._claim_is_stale(call, now):
            raise ValidationError(f"Call is {call.transcription_status.value}, only failed calls can be retried")

        state = self.retry_policy.state_for(call.transcription_attempts)
        if state.exhausted:
            raise ValidationError(f"Retry limit reached ({state.attempt}/{state.max_attempts} attempts)")
        if not call.recording_url:
            raise ValidationError("Call has no recording URL to retry from")

        log.info("transcription_retry", call_sid=call_sid, attempt=state.attempt + 1)
        return await self._transcribe(call, call.recording_url, now)

    async def handle_conversation_complete(
        self,
        payload: ConversationCompletePayload,
        now: Optional[datetime] = None,
    ) -> TranscriptionOutcome:
        """Store the live receptionist's transcript and extract a job from its turns."""
        now = now or utcnow()
        call_sid = payload.call_sid
        if not call_sid:
            raise ValidationError("callSid is required")

        fields: dict = {"status": "completed"}
        if payload.user_id:
            fields["owner_user_id"] = payload.user_id
        call = await self.db.upsert_call(call_sid, **fields)

        text = payload.transcript.strip() or format_turns(payload.turns)
        if not text:
            await self.db.transition_transcription_status(
                call_sid, TranscriptionStatus.FAILED, last_error="Conversation produced no transcript"
            )
            raise ValidationError("Conversation transcript is empty")

        transcript = Transcript(
            call_sid=call_sid,
            engine="realtime",
            text=text,
            language=self.settings.transcription_language,
            created_at=now,
        )
        if not await self.db.insert_transcript(transcript):
            log.info("conversation_transcript_exists", call_sid=call_sid)
        await self.db.transition_transcription_status(call_sid, TranscriptionStatus.COMPLETED)

        call = await self.db.get_call(call_sid) or call
        job_id = None
        try:
            if payload.turns:
                job = await self.extractor.ensure_job_for_conversation(call, payload.turns)
            else:
                job = await self.extractor.ensure_job_for_transcript(call, transcript)
            job_id = job.id if job else None
        except Exception as e:
            await self._flag_extraction_failure(call_sid, e)

        log.info("conversation_completed", call_sid=call_sid, reason=payload.reason, job_id=job_id)
        return TranscriptionOutcome(status="transcribed", call_sid=call_sid, job_id=job_id)

    # ── Internal helpers ────────────────────────────────────────

    async def _transcribe(self, call: CallRecord, recording_url: str, now: datetime) -> TranscriptionOutcome:
        call_sid = call.call_sid
        attempt = call.transcription_attempts + 1

        claimed = await self.db.transition_transcription_status(
            call_sid,
            TranscriptionStatus.PROCESSING,
            last_error="",
            attempts=attempt,
            claimed_at=now,
            stale_claim_before=now - self.claim_ttl,
        )
        if not claimed:
            current = await self.db.get_call(call_sid)
            if current and current.transcription_status == TranscriptionStatus.COMPLETED:
                return TranscriptionOutcome(status="transcribed", call_sid=call_sid, already_handled=True)
            log.info("transcription_in_progress_elsewhere", call_sid=call_sid)
            return TranscriptionOutcome(status="processing", call_sid=call_sid, already_handled=True)

        try:
            recording = await self.fetcher.fetch(recording_url)
            stored = await self.store.save(call.recording_sid or call_sid, recording, now)
            await self.db.upsert_call(
                call_sid,
                recording_ref=stored.ref,
                recording_expires_at=stored.expires_at,
            )
            result = await self.stt.transcribe(
                recording.content,
                f"{call_sid}.{recording.extension}",
                recording.content_type,
            )
            if not result.text.strip():
                raise UpstreamUnavailable("Speech-to-text returned empty text")
        except BaseException as e:
            # Cancellation included, so the call never stays claimed.
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            await self.db.transition_transcription_status(call_sid, TranscriptionStatus.FAILED, last_error=message)
            state = self.retry_policy.state_for(attempt)
            log.error(
                "transcription_failed",
                call_sid=call_sid,
                attempt=attempt,
                retryable=not state.exhausted,
                error=message,
            )
            raise

        transcript = Transcript(
            call_sid=call_sid,
            engine=self.settings.transcription_model,
            text=result.text.strip(),
            confidence=result.confidence,
            language=result.language,
            created_at=now,
        )
        if not await self.db.insert_transcript(transcript):
            log.info("transcript_insert_deduplicated", call_sid=call_sid)
            transcript = await self.db.get_transcript(call_sid) or transcript
        await self.db.transition_transcription_status(call_sid, TranscriptionStatus.COMPLETED)
        log.info(
            "transcription_completed",
            call_sid=call_sid,
            chars=len(transcript.text),
            confidence=round(transcript.confidence, 3),
        )

        job_id = None
        try:
            job = await self.extractor.ensure_job_for_transcript(await self.db.get_call(call_sid), transcript)
            job_id = job.id if job else None
        except Exception as e:
            await self._flag_extraction_failure(call_sid, e)

        return TranscriptionOutcome(status="transcribed", call_sid=call_sid, job_id=job_id)

    def _claim_is_stale(self, call: CallRecord, now: datetime) -> bool:
        return (
            call.transcription_status == TranscriptionStatus.PROCESSING
            and call.transcription_claimed_at is not None
            and call.transcription_claimed_at < now - self.claim_ttl
        )

    async def _flag_extraction_failure(self, call_sid: str, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        log.exception("lead_extraction_failed", call_sid=call_sid, error=message)
        await self.db.flag_call_for_review(call_sid, f"extraction failed: {message}")
