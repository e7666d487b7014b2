"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Routing ─────────────────────────────────────────────────────
class Route(str, enum.Enum):
    INTAKE = "intake"
    VOICEMAIL = "voicemail"


class RoutingMode(str, enum.Enum):
    ALWAYS_INTAKE = "always_intake"
    ALWAYS_VOICEMAIL = "always_voicemail"
    SMART_AUTO = "smart_auto"


class RouteReason(str, enum.Enum):
    SMART_KNOWN = "smart_known"
    SMART_UNKNOWN = "smart_unknown"
    SMART_AFTER_HOURS = "smart_after_hours"
    ALWAYS_INTAKE = "always_intake"
    ALWAYS_VOICEMAIL = "always_voicemail"
    CALLER_OVERRIDE = "caller_override"
    CALLER_SPAM = "caller_spam"
    EVALUATION_ERROR = "evaluation_error"


class ScheduleWindow(BaseModel):
    """One weekly business-hours window, e.g. mon-fri 08:00-17:00."""

    days: list[str] = Field(default_factory=list)
    start: str
    end: str

    @field_validator("days", mode="before")
    @classmethod
    def _normalise_days(cls, value: object) -> object:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return [str(d).strip()[:3].lower() for d in value if str(d).strip()]
        return value


class User(BaseModel):
    """Business owner holding a claimed provider number."""

    id: str
    org_id: str
    business_name: str = ""
    business_type: str = ""
    phone_number: str
    routing_mode: RoutingMode = RoutingMode.SMART_AUTO
    after_hours_mode: Route = Route.VOICEMAIL
    schedule_timezone: str = ""
    schedule_windows: list[ScheduleWindow] = Field(default_factory=list)
    business_hours_start: str = "09:00"
    business_hours_end: str = "17:00"
    default_event_duration_minutes: int = 60
    calendar_sync_enabled: bool = True


class Caller(BaseModel):
    owner_user_id: str
    phone_number: str
    label: str = ""
    routing_override: str = "auto"
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)


class ScheduleCheck(BaseModel):
    active: bool
    reason: str
    timezone: Optional[str] = None


class RouteEvaluation(BaseModel):
    route: Route = Route.VOICEMAIL
    reason: RouteReason = RouteReason.EVALUATION_ERROR
    mode: Optional[RoutingMode] = None
    user: Optional[User] = None
    caller: Optional[Caller] = None
    fallback: bool = False
    schedule: Optional[ScheduleCheck] = None


# ── Calls & transcripts ─────────────────────────────────────────
class TranscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed source states for each target state.
TRANSCRIPTION_TRANSITIONS: dict[TranscriptionStatus, tuple[TranscriptionStatus, ...]] = {
    TranscriptionStatus.PROCESSING: (TranscriptionStatus.PENDING, TranscriptionStatus.FAILED),
    TranscriptionStatus.COMPLETED: (
        TranscriptionStatus.PENDING,
        TranscriptionStatus.PROCESSING,
        TranscriptionStatus.COMPLETED,
        # Only once a transcript row exists; checked by the store.
        TranscriptionStatus.FAILED,
    ),
    TranscriptionStatus.FAILED: (
        TranscriptionStatus.PENDING,
        TranscriptionStatus.PROCESSING,
        TranscriptionStatus.FAILED,
    ),
}


class CallRecord(BaseModel):
    call_sid: str
    from_number: str = ""
    to_number: str = ""
    owner_user_id: Optional[str] = None
    status: str = "ringing"
    route_decision: Optional[Route] = None
    route_reason: Optional[RouteReason] = None
    route_fallback: bool = False
    recording_sid: str = ""
    recording_url: str = ""
    recording_ref: Optional[str] = None
    recording_duration_seconds: Optional[int] = None
    recorded_at: Optional[datetime] = None
    recording_expires_at: Optional[datetime] = None
    transcription_status: TranscriptionStatus = TranscriptionStatus.PENDING
    transcription_attempts: int = 0
    transcription_claimed_at: Optional[datetime] = None
    last_error: str = ""
    needs_review: bool = False
    review_reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Transcript(BaseModel):
    call_sid: str
    engine: str
    text: str
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    language: str = "en"
    created_at: datetime = Field(default_factory=utcnow)


class ConversationTurn(BaseModel):
    role: str
    content: str


# ── Jobs ────────────────────────────────────────────────────────
class JobStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class Job(BaseModel):
    id: str
    owner_user_id: Optional[str] = None
    org_id: Optional[str] = None
    source_call_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    service_type: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    location: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM
    notes: Optional[str] = None
    summary: Optional[str] = None
    business_name: str = ""
    business_number: Optional[str] = None
    status: JobStatus = JobStatus.NEW
    reminders_enabled: bool = True
    reminder_count: int = 0
    last_reminder_sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class ExtractedLead(BaseModel):
    """Sanitized LLM extraction result."""

    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    service_type: Optional[str] = None
    preferred_date: Optional[date] = None
    preferred_time: Optional[time] = None
    location: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM
    additional_notes: Optional[str] = None
    summary: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.customer_name and (self.customer_phone or self.service_type))


# ── Reminders ───────────────────────────────────────────────────
class ReminderKind(str, enum.Enum):
    CONFIRMATION = "confirmation"
    ONE_DAY_BEFORE = "one_day_before"
    MORNING_OF = "morning_of"
    TWO_HOURS_BEFORE = "two_hours_before"
    CUSTOM = "custom"


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TimingUnit(str, enum.Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class ReminderTiming(BaseModel):
    value: int = Field(..., gt=0)
    unit: TimingUnit
    specific_time: Optional[str] = Field(default=None, alias="specificTime")

    model_config = {"populate_by_name": True}


class CustomReminder(BaseModel):
    id: str
    timing: ReminderTiming
    template: str
    enabled: bool = True


DEFAULT_CONFIRMATION_TEMPLATE = (
    "Hi {{clientName}}, your {{serviceType}} with {{businessName}} is booked for {{date}} at {{time}}."
)
DEFAULT_ONE_DAY_TEMPLATE = "Reminder: your {{serviceType}} is tomorrow at {{time}}. - {{businessName}}"
DEFAULT_MORNING_OF_TEMPLATE = "Good morning {{clientName}}! See you today at {{time}} at {{location}}."
DEFAULT_TWO_HOURS_TEMPLATE = "Hi {{clientName}}, we'll see you in about two hours ({{time}})."
DEFAULT_ON_THE_WAY_TEMPLATE = (
    "Hi {{clientName}}! We're on our way to your location. We'll arrive in approximately {{eta}} minutes."
)


class ReminderSetting(BaseModel):
    org_id: str
    enabled: bool = True
    timezone: str = ""
    confirmation_enabled: bool = True
    confirmation_template: str = DEFAULT_CONFIRMATION_TEMPLATE
    one_day_before_enabled: bool = True
    one_day_before_time: str = "09:00"
    one_day_before_template: str = DEFAULT_ONE_DAY_TEMPLATE
    morning_of_enabled: bool = False
    morning_of_time: str = "08:00"
    morning_of_template: str = DEFAULT_MORNING_OF_TEMPLATE
    two_hours_before_enabled: bool = False
    two_hours_before_template: str = DEFAULT_TWO_HOURS_TEMPLATE
    custom_reminders: list[CustomReminder] = Field(default_factory=list)
    skip_weekends_for_morning: bool = False
    on_the_way_template: str = DEFAULT_ON_THE_WAY_TEMPLATE


class ReminderCandidate(BaseModel):
    """A reminder computed for a job but not yet persisted."""

    kind: ReminderKind
    scheduled_for: datetime
    message_template: str
    custom_reminder_id: Optional[str] = None


class ScheduledReminder(BaseModel):
    id: str
    job_id: str
    org_id: str
    recipient_phone: str
    kind: ReminderKind
    custom_reminder_id: Optional[str] = None
    scheduled_for: datetime
    message_template: str
    status: ReminderStatus = ReminderStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    message_sent: Optional[str] = None
    provider_message_sid: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ReminderHistoryEntry(BaseModel):
    id: Optional[int] = None
    org_id: str
    job_id: str
    reminder_id: Optional[str] = None
    event_type: str
    message: str = ""
    recipient_phone: str = ""
    provider_message_sid: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ScheduleResult(BaseModel):
    scheduled: int
    message: str
    reminders: list[ScheduledReminder] = Field(default_factory=list)


# ── Availability ────────────────────────────────────────────────
class CalendarEvent(BaseModel):
    start_time: datetime
    end_time: datetime
    title: str = ""
    source: str = "calendar"


class Slot(BaseModel):
    start: datetime
    end: datetime
    available: bool = True
    day_of_week: str = ""
    date_label: str = ""
    time_label: str = ""


class AvailabilityCheck(BaseModel):
    available: bool
    conflicting_event: Optional[str] = None
    error: Optional[str] = None


# ── Telephony webhook payloads (subset we care about) ───────────
class ConversationCompletePayload(BaseModel):
    """Posted by the live receptionist when a conversation ends."""

    call_sid: str = Field(alias="callSid")
    user_id: Optional[str] = Field(alias="userId", default=None)
    transcript: str = ""
    turns: list[ConversationTurn] = Field(default_factory=list)
    reason: str = "complete"

    model_config = {"populate_by_name": True}
