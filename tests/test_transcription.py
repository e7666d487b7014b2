"""Tests for the recording → transcript → job pipeline."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from leadline.errors import NotFoundError, UpstreamUnavailable, ValidationError
from leadline.models import ConversationCompletePayload, ConversationTurn, TranscriptionStatus

from conftest import CALLER_NUMBER, OWNER_NUMBER, FakeFetcher

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
RECORDING_URL = "https://api.twilio.com/2010-04-01/Accounts/AC123/Recordings/RE1"


async def _ringing_call(db, owner, call_sid="CA1"):
    await db.upsert_call(call_sid, from_number=CALLER_NUMBER, to_number=OWNER_NUMBER, owner_user_id=owner.id)


@pytest.mark.asyncio
async def test_recording_becomes_transcript_and_job(services, owner, stt, fetcher):
    await _ringing_call(services.db, owner)

    outcome = await services.transcription.handle_recording_complete(
        "CA1", RECORDING_URL, duration_seconds=42, recording_sid="RE1", now=NOW
    )

    assert outcome.status == "transcribed"
    assert outcome.job_id is not None
    assert fetcher.urls == [RECORDING_URL]
    assert stt.calls == 1

    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.COMPLETED
    assert call.transcription_attempts == 1
    assert call.recording_duration_seconds == 42
    assert call.recording_ref.endswith("RE1.mp3")
    assert "2026/03/10" in call.recording_ref.replace("\\", "/")

    transcript = await services.db.get_transcript("CA1")
    assert transcript.engine == "whisper-1"
    assert transcript.confidence == pytest.approx(0.91)

    job = await services.db.get_job(outcome.job_id)
    assert job.customer_name == "Dana Smith"
    assert job.customer_phone == CALLER_NUMBER
    assert job.business_number == OWNER_NUMBER
    assert job.org_id == "org-1"
    assert job.business_name == "Acme Plumbing"


@pytest.mark.asyncio
async def test_redelivered_webhook_is_not_reprocessed(services, owner, stt, fetcher, llm):
    await _ringing_call(services.db, owner)

    first = await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)
    second = await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    assert second.already_handled is True
    assert second.job_id == first.job_id
    assert stt.calls == 1
    assert len(fetcher.urls) == 1
    assert len(llm.calls) == 1
    assert len(await services.db.list_jobs_for_user(owner.id)) == 1


@pytest.mark.asyncio
async def test_missing_call_sid_rejected(services):
    with pytest.raises(ValidationError):
        await services.transcription.handle_recording_complete("", RECORDING_URL, now=NOW)


@pytest.mark.asyncio
async def test_missing_recording_url_marks_failed(services, owner, stt):
    await _ringing_call(services.db, owner)

    with pytest.raises(ValidationError):
        await services.transcription.handle_recording_complete("CA1", None, now=NOW)

    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.FAILED
    assert call.last_error == "RecordingUrl is required"
    assert stt.calls == 0


@pytest.mark.asyncio
async def test_download_failure_marks_failed_with_error(services, owner, stt):
    services.transcription.fetcher = FakeFetcher(error=UpstreamUnavailable("Recording download failed"))
    await _ringing_call(services.db, owner)

    with pytest.raises(UpstreamUnavailable):
        await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.FAILED
    assert call.last_error == "Recording download failed"
    assert call.transcription_attempts == 1
    assert stt.calls == 0
    assert await services.db.get_transcript("CA1") is None


@pytest.mark.asyncio
async def test_empty_stt_result_is_a_failure(services, owner, stt):
    stt.text = "   "
    await _ringing_call(services.db, owner)

    with pytest.raises(UpstreamUnavailable):
        await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.FAILED
    assert await services.db.get_transcript("CA1") is None


@pytest.mark.asyncio
async def test_retry_recovers_failed_call(services, owner, fetcher):
    services.transcription.fetcher = FakeFetcher(error=UpstreamUnavailable("timeout"))
    await _ringing_call(services.db, owner)
    with pytest.raises(UpstreamUnavailable):
        await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    services.transcription.fetcher = fetcher
    outcome = await services.transcription.retry_transcription("CA1", now=NOW)

    assert outcome.status == "transcribed"
    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.COMPLETED
    assert call.transcription_attempts == 2
    assert call.last_error == ""


@pytest.mark.asyncio
async def test_retry_stops_at_attempt_limit(services, owner):
    services.transcription.fetcher = FakeFetcher(error=UpstreamUnavailable("timeout"))
    await _ringing_call(services.db, owner)
    with pytest.raises(UpstreamUnavailable):
        await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)
    for _ in range(2):
        with pytest.raises(UpstreamUnavailable):
            await services.transcription.retry_transcription("CA1", now=NOW)

    with pytest.raises(ValidationError, match="Retry limit reached"):
        await services.transcription.retry_transcription("CA1", now=NOW)
    assert (await services.db.get_call("CA1")).transcription_attempts == 3


@pytest.mark.asyncio
async def test_retry_rejects_non_failed_calls(services, owner):
    with pytest.raises(NotFoundError):
        await services.transcription.retry_transcription("CAmissing", now=NOW)

    await _ringing_call(services.db, owner)
    with pytest.raises(ValidationError):
        await services.transcription.retry_transcription("CA1", now=NOW)


@pytest.mark.asyncio
async def test_retry_of_completed_call_is_a_no_op(services, owner, stt):
    await _ringing_call(services.db, owner)
    await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    outcome = await services.transcription.retry_transcription("CA1", now=NOW)
    assert outcome.already_handled is True
    assert stt.calls == 1


@pytest.mark.asyncio
async def test_incomplete_extraction_flags_call_for_review(services, owner, llm):
    llm.response = {"customer_name": None, "service_type": "Drain cleaning"}
    await _ringing_call(services.db, owner)

    outcome = await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    assert outcome.status == "transcribed"
    assert outcome.job_id is None
    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.COMPLETED
    assert call.needs_review is True
    assert "customer_name" in call.review_reason


@pytest.mark.asyncio
async def test_extractor_error_keeps_transcript(services, owner, llm):
    async def broken(system_prompt, user_content):
        raise UpstreamUnavailable("LLM request failed")

    llm.complete_json = broken
    await _ringing_call(services.db, owner)

    outcome = await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    assert outcome.job_id is None
    assert await services.db.get_transcript("CA1") is not None
    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.COMPLETED
    assert call.needs_review is True
    assert call.review_reason == "extraction failed: LLM request failed"


@pytest.mark.asyncio
async def test_conversation_complete_creates_job_from_turns(services, owner, llm, stt):
    await _ringing_call(services.db, owner, "CA9")
    payload = ConversationCompletePayload(
        callSid="CA9",
        userId=owner.id,
        turns=[
            ConversationTurn(role="assistant", content="Thanks for calling Acme Plumbing, who am I speaking with?"),
            ConversationTurn(role="user", content="Dana Smith, my kitchen sink is leaking."),
        ],
    )

    outcome = await services.transcription.handle_conversation_complete(payload, now=NOW)

    assert outcome.job_id is not None
    assert stt.calls == 0
    transcript = await services.db.get_transcript("CA9")
    assert transcript.engine == "realtime"
    assert transcript.text.startswith("Assistant: Thanks for calling")
    assert llm.calls[0][1].startswith("Conversation:\n")

    again = await services.transcription.handle_conversation_complete(payload, now=NOW)
    assert again.job_id == outcome.job_id
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_empty_conversation_rejected(services, owner):
    payload = ConversationCompletePayload(callSid="CA9", userId=owner.id)
    with pytest.raises(ValidationError):
        await services.transcription.handle_conversation_complete(payload, now=NOW)
    assert (await services.db.get_call("CA9")).transcription_status == TranscriptionStatus.FAILED


@pytest.mark.asyncio
async def test_conversation_after_failed_attempt_completes(services, owner):
    with pytest.raises(ValidationError):
        await services.transcription.handle_conversation_complete(
            ConversationCompletePayload(callSid="CA9", userId=owner.id), now=NOW
        )

    payload = ConversationCompletePayload(
        callSid="CA9",
        userId=owner.id,
        turns=[ConversationTurn(role="user", content="Dana Smith, my kitchen sink is leaking.")],
    )
    await services.transcription.handle_conversation_complete(payload, now=NOW)

    assert (await services.db.get_call("CA9")).transcription_status == TranscriptionStatus.COMPLETED
    redelivery = await services.transcription.handle_recording_complete("CA9", RECORDING_URL, now=NOW)
    assert redelivery.already_handled is True
    assert (await services.db.get_call("CA9")).transcription_status == TranscriptionStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_call_without_transcript_cannot_complete(db):
    await db.upsert_call("CA1")
    await db.transition_transcription_status("CA1", TranscriptionStatus.FAILED, last_error="boom")
    assert not await db.transition_transcription_status("CA1", TranscriptionStatus.COMPLETED)


@pytest.mark.asyncio
async def test_cancelled_download_leaves_call_failed(services, owner):
    await _ringing_call(services.db, owner)
    services.transcription.fetcher = FakeFetcher(error=asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW)

    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.FAILED
    assert call.last_error == "CancelledError"

    services.transcription.fetcher = FakeFetcher()
    outcome = await services.transcription.retry_transcription("CA1", now=NOW)
    assert outcome.status == "transcribed"


@pytest.mark.asyncio
async def test_abandoned_claim_is_taken_over(services, owner, fetcher):
    await _ringing_call(services.db, owner)
    # A worker claimed the call and died before finishing.
    await services.db.transition_transcription_status(
        "CA1", TranscriptionStatus.PROCESSING, attempts=1, claimed_at=NOW
    )

    soon = await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW + timedelta(minutes=5))
    assert soon.status == "processing"
    assert fetcher.urls == []
    with pytest.raises(ValidationError, match="only failed calls can be retried"):
        await services.transcription.retry_transcription("CA1", now=NOW + timedelta(minutes=5))

    later = await services.transcription.handle_recording_complete("CA1", RECORDING_URL, now=NOW + timedelta(minutes=11))
    assert later.status == "transcribed"
    call = await services.db.get_call("CA1")
    assert call.transcription_status == TranscriptionStatus.COMPLETED
    assert call.transcription_attempts == 2


@pytest.mark.asyncio
async def test_abandoned_claim_can_be_retried_manually(services, owner):
    await _ringing_call(services.db, owner)
    await services.db.upsert_call("CA1", recording_url=RECORDING_URL)
    await services.db.transition_transcription_status(
        "CA1", TranscriptionStatus.PROCESSING, attempts=1, claimed_at=NOW
    )

    outcome = await services.transcription.retry_transcription("CA1", now=NOW + timedelta(minutes=11))

    assert outcome.status == "transcribed"
