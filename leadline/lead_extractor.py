"""
Lead extraction: transcript (or live-intake conversation turns) → Job.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, time as dt_time
from typing import TYPE_CHECKING, Any, Optional, Protocol

import structlog

from leadline.database import Database
from leadline.models import CallRecord, ConversationTurn, ExtractedLead, Job, Transcript, Urgency, User
from leadline.phone_utils import sanitize_extracted_phone

if TYPE_CHECKING:
    from leadline.reminders import ReminderScheduler

log = structlog.get_logger(__name__)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")
_SUMMARY_FALLBACK_CHARS = 250

EXTRACTION_PROMPT = """Extract customer details from a call to a service business. {business_context}

Always respond with a JSON object containing exactly these keys:
customer_name, customer_phone, service_type, preferred_date, preferred_time,
location, urgency, additional_notes, summary. Use null when a field is unknown.

- service_type should be specific to the business (e.g. "Leaky faucet repair" for a plumber)
- preferred_date must be YYYY-MM-DD if the caller mentioned a day
- preferred_time must be HH:MM (24h) if the caller mentioned a time
- location should include address details if provided
- urgency is one of: low, medium, high, emergency
- additional_notes captures special requirements
- summary is one or two sentences describing the request
"""


class JsonCompleter(Protocol):
    async def complete_json(self, system_prompt: str, user_content: str) -> dict: ...


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _clean_date(value: Any) -> Optional[date]:
    text = _clean_text(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def _clean_time(value: Any) -> Optional[dt_time]:
    text = _clean_text(value)
    if not text:
        return None
    match = _TIME_RE.match(text)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return dt_time(hour, minute)


def _clean_urgency(value: Any) -> Urgency:
    try:
        return Urgency(str(value).strip().lower())
    except ValueError:
        return Urgency.MEDIUM


def sanitize_extraction(raw: dict, source_text: str = "") -> ExtractedLead:
    """Coerce an LLM JSON answer into an ExtractedLead, dropping unusable values."""
    summary = _clean_text(raw.get("summary"))
    if not summary and source_text.strip():
        summary = source_text.strip()[:_SUMMARY_FALLBACK_CHARS]
    return ExtractedLead(
        customer_name=_clean_text(raw.get("customer_name")),
        customer_phone=sanitize_extracted_phone(raw.get("customer_phone")),
        service_type=_clean_text(raw.get("service_type")),
        preferred_date=_clean_date(raw.get("preferred_date")),
        preferred_time=_clean_time(raw.get("preferred_time")),
        location=_clean_text(raw.get("location")),
        urgency=_clean_urgency(raw.get("urgency")),
        additional_notes=_clean_text(raw.get("additional_notes")),
        summary=summary,
    )


def format_turns(turns: list[ConversationTurn]) -> str:
    return "\n".join(f"{t.role.strip().capitalize()}: {t.content.strip()}" for t in turns if t.content.strip())


class LeadExtractor:
    def __init__(
        self,
        db: Database,
        llm: JsonCompleter,
        reminders: Optional["ReminderScheduler"] = None,
    ):
        self.db = db
        self.llm = llm
        self.reminders = reminders

    async def ensure_job_for_transcript(self, call: CallRecord, transcript: Transcript) -> Optional[Job]:
        return await self._ensure_job(call, transcript.text, source="transcript")

    async def ensure_job_for_conversation(self, call: CallRecord, turns: list[ConversationTurn]) -> Optional[Job]:
        return await self._ensure_job(call, format_turns(turns), source="conversation")

    async def _ensure_job(self, call: CallRecord, text: str, source: str) -> Optional[Job]:
        existing = await self.db.get_job_by_call_sid(call.call_sid)
        if existing:
            log.info("job_already_exists", call_sid=call.call_sid, job_id=existing.id)
            return existing

        if not text.strip():
            await self.db.flag_call_for_review(call.call_sid, "empty transcript")
            log.warning("lead_extraction_skipped_empty", call_sid=call.call_sid)
            return None

        user = await self.db.get_user(call.owner_user_id) if call.owner_user_id else None
        lead = await self.extract(text, user, source)

        if not lead.is_complete:
            missing = "customer_name" if not lead.customer_name else "customer_phone/service_type"
            reason = f"incomplete extraction: missing {missing}"
            await self.db.flag_call_for_review(call.call_sid, reason)
            log.info("lead_needs_review", call_sid=call.call_sid, reason=reason)
            return None

        job = Job(
            id=uuid.uuid4().hex,
            owner_user_id=call.owner_user_id,
            org_id=user.org_id if user else None,
            source_call_id=call.call_sid,
            customer_name=lead.customer_name,
            customer_phone=lead.customer_phone or call.from_number or None,
            service_type=lead.service_type,
            scheduled_date=lead.preferred_date,
            scheduled_time=lead.preferred_time,
            location=lead.location,
            urgency=lead.urgency,
            notes=lead.additional_notes,
            summary=lead.summary,
            business_name=user.business_name if user else "",
            business_number=call.to_number or None,
        )
        job, created = await self.db.insert_job(job)
        if not created:
            log.info("job_insert_deduplicated", call_sid=call.call_sid, job_id=job.id)
            return job

        log.info(
            "job_created",
            call_sid=call.call_sid,
            job_id=job.id,
            owner=job.owner_user_id,
            service_type=job.service_type,
            urgency=job.urgency.value,
        )

        if self.reminders and job.scheduled_date and job.scheduled_time:
            result = await self.reminders.schedule_reminders_for_job(job.id)
            log.info("job_reminders_scheduled", job_id=job.id, scheduled=result.scheduled, detail=result.message)
        return job

    async def extract(self, text: str, user: Optional[User], source: str = "transcript") -> ExtractedLead:
        business_context = ""
        if user:
            kind = user.business_type.replace("_", " ") if user.business_type else "service"
            name = f" called {user.business_name}" if user.business_name else ""
            business_context = f"This business is a {kind} provider{name}."

        label = "Conversation" if source == "conversation" else "Transcript"
        raw = await self.llm.complete_json(
            EXTRACTION_PROMPT.format(business_context=business_context),
            f"{label}:\n{text.strip()}",
        )
        return sanitize_extraction(raw, text)
