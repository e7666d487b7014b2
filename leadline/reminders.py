"""
Reminder scheduler: derives timed SMS reminders from a job's schedule and
dispatches the due ones.

  - Job date/time are wall-clock in the org's timezone
  - Recompute cancels the pending set before inserting the new one
  - Dispatch claims each row at the store before sending
  - Failures follow the shared RetryPolicy (+5 min until max_retries)
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

import structlog

from leadline.config import Settings
from leadline.database import Database
from leadline.errors import NotFoundError, ValidationError
from leadline.models import (
    Job,
    ReminderCandidate,
    ReminderHistoryEntry,
    ReminderKind,
    ReminderSetting,
    ReminderStatus,
    ReminderTiming,
    ScheduledReminder,
    ScheduleResult,
    TimingUnit,
    utcnow,
)
from leadline.retry import RetryPolicy

log = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
# A claim older than this is assumed to belong to a crashed worker.
_CLAIM_TTL = timedelta(minutes=10)

JOB_CONFIRMATION_MESSAGE = "Hi, we received your voicemail and created a job card. We'll be in touch soon."


class SmsSender(Protocol):
    configured: bool

    async def send(self, to: str, body: str, from_number: Optional[str] = None) -> str: ...


# ── Templates ───────────────────────────────────────────────────


def _format_date(value: Optional[date]) -> str:
    if not value:
        return "soon"
    return f"{value:%a}, {value:%b} {value.day}"


def _format_time(value: Optional[dt_time]) -> str:
    if not value:
        return ""
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{value.hour % 12 or 12}:{value.minute:02d} {suffix}"


def template_values(job: Job, eta_minutes: Optional[int] = None) -> dict[str, str]:
    """The complete set of placeholders a reminder template may use."""
    values = {
        "clientName": job.customer_name or "there",
        "serviceType": job.service_type or "appointment",
        "date": _format_date(job.scheduled_date),
        "time": _format_time(job.scheduled_time),
        "location": job.location or "your location",
        "businessName": job.business_name or "us",
    }
    if eta_minutes is not None:
        values["eta"] = str(eta_minutes)
    return values


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders. Unknown names are dropped, not left in the text."""
    unknown: list[str] = []

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        unknown.append(key)
        return ""

    rendered = _PLACEHOLDER.sub(_sub, template)
    if unknown:
        log.warning("template_unknown_placeholders", placeholders=sorted(set(unknown)))
        rendered = re.sub(r"[ \t]{2,}", " ", rendered).strip()
    return rendered


# ── Timing ──────────────────────────────────────────────────────


def _parse_time(time_str: str) -> dt_time:
    """Parse 'HH:MM' string to time object."""
    parts = time_str.strip().split(":")
    return dt_time(int(parts[0]), int(parts[1]))


def _at_local(day: date, at: dt_time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)


def custom_reminder_time(job_at: datetime, timing: ReminderTiming, tz: ZoneInfo) -> datetime:
    """
    minutes/hours are subtracted as elapsed time; days/weeks as calendar days
    in the org zone. ``specific_time`` then replaces the time of day.
    """
    if timing.unit in (TimingUnit.MINUTES, TimingUnit.HOURS):
        delta = timedelta(minutes=timing.value) if timing.unit == TimingUnit.MINUTES else timedelta(hours=timing.value)
        result = job_at.astimezone(timezone.utc) - delta
        if timing.specific_time:
            local = result.astimezone(tz)
            result = _at_local(local.date(), _parse_time(timing.specific_time), tz)
        return result

    days = timing.value * (7 if timing.unit == TimingUnit.WEEKS else 1)
    local_job = job_at.astimezone(tz)
    at = _parse_time(timing.specific_time) if timing.specific_time else local_job.time()
    return _at_local(local_job.date() - timedelta(days=days), at, tz)


def compute_reminder_candidates(
    job_at: datetime,
    settings: ReminderSetting,
    now: datetime,
    tz: ZoneInfo,
    confirmation_delay: timedelta = timedelta(seconds=30),
) -> list[ReminderCandidate]:
    """All enabled reminders for a job instant, keeping only those strictly after ``now``."""
    local_job = job_at.astimezone(tz)
    candidates: list[ReminderCandidate] = []

    if settings.confirmation_enabled:
        candidates.append(
            ReminderCandidate(
                kind=ReminderKind.CONFIRMATION,
                scheduled_for=now + confirmation_delay,
                message_template=settings.confirmation_template,
            )
        )

    if settings.one_day_before_enabled:
        candidates.append(
            ReminderCandidate(
                kind=ReminderKind.ONE_DAY_BEFORE,
                scheduled_for=_at_local(
                    local_job.date() - timedelta(days=1), _parse_time(settings.one_day_before_time), tz
                ),
                message_template=settings.one_day_before_template,
            )
        )

    if settings.morning_of_enabled:
        weekend = local_job.weekday() >= 5
        if not (settings.skip_weekends_for_morning and weekend):
            candidates.append(
                ReminderCandidate(
                    kind=ReminderKind.MORNING_OF,
                    scheduled_for=_at_local(local_job.date(), _parse_time(settings.morning_of_time), tz),
                    message_template=settings.morning_of_template,
                )
            )

    if settings.two_hours_before_enabled:
        candidates.append(
            ReminderCandidate(
                kind=ReminderKind.TWO_HOURS_BEFORE,
                scheduled_for=job_at.astimezone(timezone.utc) - timedelta(hours=2),
                message_template=settings.two_hours_before_template,
            )
        )

    for custom in settings.custom_reminders:
        if not custom.enabled:
            continue
        candidates.append(
            ReminderCandidate(
                kind=ReminderKind.CUSTOM,
                scheduled_for=custom_reminder_time(job_at, custom.timing, tz),
                message_template=custom.template,
                custom_reminder_id=custom.id,
            )
        )

    return [c for c in candidates if c.scheduled_for > now]


# ── Scheduler ───────────────────────────────────────────────────


class ReminderScheduler:
    def __init__(self, settings: Settings, db: Database, sms: SmsSender, worker_id: Optional[str] = None):
        self.settings = settings
        self.db = db
        self.sms = sms
        self.worker_id = worker_id or uuid.uuid4().hex[:12]
        self._retry = RetryPolicy(
            max_attempts=settings.reminder_max_retries,
            backoff=timedelta(minutes=settings.reminder_retry_delay_minutes),
        )

    def _zone(self, reminder_settings: Optional[ReminderSetting]) -> ZoneInfo:
        name = (reminder_settings.timezone if reminder_settings else "") or self.settings.default_timezone
        return ZoneInfo(name)

    # ── Scheduling ──────────────────────────────────────────────

    async def schedule_reminders_for_job(self, job_id: str, now: Optional[datetime] = None) -> ScheduleResult:
        now = now or utcnow()
        job = await self.db.get_job(job_id)
        if not job:
            raise NotFoundError(f"Job not found: {job_id}")

        if not job.reminders_enabled:
            log.info("reminders_disabled_for_job", job_id=job_id)
            return ScheduleResult(scheduled=0, message="Reminders disabled for this job")

        settings = await self.db.get_reminder_settings(job.org_id) if job.org_id else None
        if not settings or not settings.enabled:
            log.info("reminders_disabled_for_org", job_id=job_id, org_id=job.org_id)
            return ScheduleResult(scheduled=0, message="Reminders not enabled for organization")

        if not job.scheduled_date or not job.scheduled_time:
            return ScheduleResult(scheduled=0, message="Job missing scheduled date or time")

        tz = self._zone(settings)
        job_at = datetime.combine(job.scheduled_date, job.scheduled_time, tzinfo=tz)
        if job_at <= now:
            log.info("job_in_past", job_id=job_id, job_at=job_at.isoformat())
            return ScheduleResult(scheduled=0, message="Job is in the past")

        if not job.customer_phone:
            log.warning("reminders_no_recipient", job_id=job_id)
            return ScheduleResult(scheduled=0, message="No recipient phone number for job")

        candidates = compute_reminder_candidates(
            job_at,
            settings,
            now,
            tz,
            confirmation_delay=timedelta(seconds=self.settings.reminder_confirmation_delay_seconds),
        )
        reminders = [
            ScheduledReminder(
                id=uuid.uuid4().hex,
                job_id=job.id,
                org_id=job.org_id,
                recipient_phone=job.customer_phone,
                kind=c.kind,
                custom_reminder_id=c.custom_reminder_id,
                scheduled_for=c.scheduled_for,
                message_template=c.message_template,
                max_retries=self.settings.reminder_max_retries,
                created_at=now,
            )
            for c in candidates
        ]
        cancelled = await self.db.replace_pending_reminders(job.id, reminders)

        log.info(
            "reminders_scheduled",
            job_id=job.id,
            scheduled=len(reminders),
            cancelled=len(cancelled),
            kinds=[r.kind.value for r in reminders],
        )
        return ScheduleResult(
            scheduled=len(reminders),
            message=f"Scheduled {len(reminders)} reminder(s)",
            reminders=reminders,
        )

    async def cancel_pending_reminders(self, job_id: str) -> int:
        cancelled = await self.db.cancel_pending_reminders(job_id)
        if cancelled:
            log.info("reminders_cancelled", job_id=job_id, count=len(cancelled))
        return len(cancelled)

    # ── Dispatch ────────────────────────────────────────────────

    async def process_pending_reminders(self, now: Optional[datetime] = None) -> dict:
        """Send every due reminder in one batch, oldest first."""
        now = now or utcnow()
        stats = {"processed": 0, "sent": 0, "failed": 0, "retried": 0, "skipped": 0}

        stale_before = now - _CLAIM_TTL
        due = await self.db.get_due_reminders(now, self.settings.reminder_batch_size, stale_before)
        if not due:
            return stats

        log.info("reminder_batch_starting", worker=self.worker_id, due=len(due))

        for reminder in due:
            if not await self.db.claim_reminder(reminder.id, self.worker_id, now, stale_before):
                stats["skipped"] += 1
                continue
            stats["processed"] += 1
            outcome = await self._dispatch(reminder, now)
            stats[outcome] += 1

        log.info("reminder_batch_complete", worker=self.worker_id, **stats)
        return stats

    async def _dispatch(self, reminder: ScheduledReminder, now: datetime) -> str:
        try:
            job = await self.db.get_job(reminder.job_id)
            if not job:
                raise NotFoundError(f"Job not found: {reminder.job_id}")
            message = render_template(reminder.message_template, template_values(job))
            sid = await self.sms.send(reminder.recipient_phone, message, from_number=job.business_number)
        except Exception as e:
            return await self._record_failure(reminder, now, str(e) or type(e).__name__)

        if not await self.db.mark_reminder_sent(reminder.id, self.worker_id, now, message, sid):
            log.warning("reminder_sent_after_cancel", reminder_id=reminder.id, job_id=reminder.job_id, sid=sid)
            return "skipped"
        await self.db.record_job_reminder_sent(job.id, now)
        await self.db.append_history(
            ReminderHistoryEntry(
                org_id=reminder.org_id,
                job_id=reminder.job_id,
                reminder_id=reminder.id,
                event_type="sent",
                message=message,
                recipient_phone=reminder.recipient_phone,
                provider_message_sid=sid,
                created_at=now,
            )
        )
        log.info("reminder_sent", reminder_id=reminder.id, job_id=reminder.job_id, kind=reminder.kind.value, sid=sid)
        return "sent"

    async def _record_failure(self, reminder: ScheduledReminder, now: datetime, error: str) -> str:
        policy = RetryPolicy(max_attempts=reminder.max_retries, backoff=self._retry.backoff)
        state = policy.after_failure(policy.state_for(reminder.retry_count), now)

        if state.exhausted:
            recorded = await self.db.mark_reminder_failed(reminder.id, self.worker_id, state.attempt, error)
        else:
            recorded = await self.db.mark_reminder_retry(
                reminder.id, self.worker_id, state.attempt, state.next_attempt_at, error
            )
        if not recorded:
            log.info("reminder_failure_after_cancel", reminder_id=reminder.id, error=error)
            return "skipped"

        await self.db.append_history(
            ReminderHistoryEntry(
                org_id=reminder.org_id,
                job_id=reminder.job_id,
                reminder_id=reminder.id,
                event_type="failed",
                message=error,
                recipient_phone=reminder.recipient_phone,
                created_at=now,
            )
        )
        log.warning(
            "reminder_send_failed",
            reminder_id=reminder.id,
            attempt=state.attempt,
            max_retries=reminder.max_retries,
            final=state.exhausted,
            error=error,
        )
        return "failed" if state.exhausted else "retried"

    # ── Immediate notifications ─────────────────────────────────

    async def send_on_the_way(self, job_id: str, eta_minutes: int = 15) -> dict:
        job = await self.db.get_job(job_id)
        if not job:
            raise NotFoundError(f"Job not found: {job_id}")
        if not job.customer_phone:
            raise ValidationError("Job is missing customer_phone")

        settings = await self.db.get_reminder_settings(job.org_id) if job.org_id else None
        template = settings.on_the_way_template if settings else ReminderSetting(org_id="").on_the_way_template
        message = render_template(template, template_values(job, eta_minutes=eta_minutes))

        sid = await self.sms.send(job.customer_phone, message, from_number=job.business_number)
        await self.db.append_history(
            ReminderHistoryEntry(
                org_id=job.org_id or "",
                job_id=job.id,
                event_type="sent",
                message=message,
                recipient_phone=job.customer_phone,
                provider_message_sid=sid,
            )
        )
        log.info("on_the_way_sent", job_id=job.id, eta=eta_minutes, sid=sid)
        return {"success": True, "message": message, "sid": sid}

    async def send_job_confirmation(self, job: Job) -> str:
        """Acknowledge a new job to the customer. Returns the message SID."""
        if not job.customer_phone:
            raise ValidationError("Job is missing customer_phone")
        sid = await self.sms.send(job.customer_phone, JOB_CONFIRMATION_MESSAGE, from_number=job.business_number)
        await self.db.append_history(
            ReminderHistoryEntry(
                org_id=job.org_id or "",
                job_id=job.id,
                event_type="sent",
                message=JOB_CONFIRMATION_MESSAGE,
                recipient_phone=job.customer_phone,
                provider_message_sid=sid,
            )
        )
        log.info("job_confirmation_queued", job_id=job.id, call_sid=job.source_call_id)
        return sid

    # ── Reporting ───────────────────────────────────────────────

    async def get_reminder_stats(
        self,
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict:
        reminders = await self.db.list_reminders_for_org(org_id, start, end)
        stats: dict = {"total": len(reminders), "by_kind": {}}
        for status in ReminderStatus:
            stats[status.value] = sum(1 for r in reminders if r.status == status)

        for r in reminders:
            bucket = stats["by_kind"].setdefault(r.kind.value, {"total": 0, "sent": 0, "failed": 0})
            bucket["total"] += 1
            if r.status == ReminderStatus.SENT:
                bucket["sent"] += 1
            elif r.status == ReminderStatus.FAILED:
                bucket["failed"] += 1
        return stats
