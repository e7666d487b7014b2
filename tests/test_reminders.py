"""Tests for reminder scheduling, templating and dispatch."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from leadline.errors import NotFoundError, UpstreamUnavailable, ValidationError
from leadline.models import (
    CustomReminder,
    Job,
    JobStatus,
    ReminderKind,
    ReminderSetting,
    ReminderStatus,
    ReminderTiming,
    ScheduledReminder,
    TimingUnit,
)
from leadline.reminders import (
    JOB_CONFIRMATION_MESSAGE,
    compute_reminder_candidates,
    custom_reminder_time,
    render_template,
    template_values,
)

from conftest import CALLER_NUMBER, OWNER_NUMBER

NY = ZoneInfo("America/New_York")
# Tuesday 08:00 EDT
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _job(**overrides) -> Job:
    data = dict(
        id="job-1",
        owner_user_id="user-1",
        org_id="org-1",
        source_call_id="CA1",
        customer_name="Dana Smith",
        customer_phone=CALLER_NUMBER,
        service_type="Leaky sink repair",
        scheduled_date=date(2026, 3, 11),
        scheduled_time=time(14, 0),
        location="12 Elm St",
        business_name="Acme Plumbing",
        business_number=OWNER_NUMBER,
    )
    data.update(overrides)
    return Job(**data)


# ── Templates ───────────────────────────────────────────────────


def test_template_values_format_date_and_time():
    values = template_values(_job())
    assert values["date"] == "Wed, Mar 11"
    assert values["time"] == "2:00 PM"
    assert values["clientName"] == "Dana Smith"


def test_template_values_fill_defaults():
    values = template_values(_job(customer_name=None, service_type=None, location=None, business_name=""))
    assert values["clientName"] == "there"
    assert values["serviceType"] == "appointment"
    assert values["location"] == "your location"
    assert values["businessName"] == "us"


def test_render_template_substitutes_with_spacing():
    assert render_template("Hi {{ clientName }}, see you at {{time}}", template_values(_job())) == (
        "Hi Dana Smith, see you at 2:00 PM"
    )


def test_render_template_drops_unknown_placeholders():
    rendered = render_template("Hi {{clientName}} {{techName}} is coming", template_values(_job()))
    assert rendered == "Hi Dana Smith is coming"
    assert "{{" not in rendered


# ── Timing ──────────────────────────────────────────────────────


def test_candidates_use_org_wall_clock():
    settings = ReminderSetting(
        org_id="org-1",
        timezone="America/New_York",
        confirmation_enabled=False,
        morning_of_enabled=True,
        two_hours_before_enabled=True,
    )
    job_at = datetime(2026, 3, 11, 14, 0, tzinfo=NY)

    by_kind = {c.kind: c.scheduled_for for c in compute_reminder_candidates(job_at, settings, NOW, NY)}

    assert by_kind[ReminderKind.ONE_DAY_BEFORE] == datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)
    assert by_kind[ReminderKind.MORNING_OF] == datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)
    assert by_kind[ReminderKind.TWO_HOURS_BEFORE] == datetime(2026, 3, 11, 16, 0, tzinfo=timezone.utc)


def test_candidates_in_the_past_are_dropped():
    settings = ReminderSetting(org_id="org-1", confirmation_enabled=False, morning_of_enabled=True)
    # Job later today: the day-before reminder has already passed.
    job_at = datetime(2026, 3, 10, 15, 0, tzinfo=NY)
    kinds = [c.kind for c in compute_reminder_candidates(job_at, settings, NOW, NY)]
    # The morning-of reminder lands exactly on now and is dropped too.
    assert kinds == []


def test_confirmation_follows_now():
    settings = ReminderSetting(org_id="org-1", one_day_before_enabled=False)
    job_at = datetime(2026, 3, 20, 10, 0, tzinfo=NY)
    [confirmation] = compute_reminder_candidates(job_at, settings, NOW, NY, confirmation_delay=timedelta(seconds=30))
    assert confirmation.kind == ReminderKind.CONFIRMATION
    assert confirmation.scheduled_for == NOW + timedelta(seconds=30)


def test_morning_of_skipped_on_weekends():
    settings = ReminderSetting(
        org_id="org-1",
        confirmation_enabled=False,
        one_day_before_enabled=False,
        morning_of_enabled=True,
        skip_weekends_for_morning=True,
    )
    saturday = datetime(2026, 3, 14, 10, 0, tzinfo=NY)
    monday = datetime(2026, 3, 16, 10, 0, tzinfo=NY)
    assert compute_reminder_candidates(saturday, settings, NOW, NY) == []
    assert len(compute_reminder_candidates(monday, settings, NOW, NY)) == 1


def test_custom_day_offset_keeps_wall_clock_across_dst():
    # Job Monday 09:00 EDT, the day after spring-forward.
    job_at = datetime(2026, 3, 9, 9, 0, tzinfo=NY)
    timing = ReminderTiming(value=2, unit=TimingUnit.DAYS, specificTime="18:00")
    result = custom_reminder_time(job_at, timing, NY)
    # Saturday 18:00 EST
    assert result == datetime(2026, 3, 7, 23, 0, tzinfo=timezone.utc)


def test_custom_hour_offset_is_elapsed_time_across_dst():
    job_at = datetime(2026, 3, 8, 9, 0, tzinfo=NY)  # 13:00 UTC
    timing = ReminderTiming(value=8, unit=TimingUnit.HOURS)
    assert custom_reminder_time(job_at, timing, NY) == datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc)


def test_custom_week_offset():
    job_at = datetime(2026, 3, 18, 14, 30, tzinfo=NY)
    timing = ReminderTiming(value=1, unit=TimingUnit.WEEKS)
    assert custom_reminder_time(job_at, timing, NY) == datetime(2026, 3, 11, 14, 30, tzinfo=NY)


# ── Scheduling ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_schedule_day_before_and_morning_of(services, reminder_settings):
    await services.db.insert_job(_job())

    result = await services.reminders.schedule_reminders_for_job("job-1", now=NOW)

    assert result.scheduled == 2
    rows = await services.db.list_reminders_for_job("job-1")
    assert [(r.kind, r.scheduled_for) for r in rows] == [
        (ReminderKind.ONE_DAY_BEFORE, datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)),
        (ReminderKind.MORNING_OF, datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)),
    ]
    assert all(r.status == ReminderStatus.PENDING for r in rows)
    assert all(r.recipient_phone == CALLER_NUMBER for r in rows)


@pytest.mark.asyncio
async def test_reschedule_replaces_pending_set(services, reminder_settings):
    await services.db.insert_job(_job())
    first = await services.reminders.schedule_reminders_for_job("job-1", now=NOW)

    await services.db.update_job_schedule("job-1", scheduled_date=date(2026, 3, 12), scheduled_time=time(10, 0))
    await services.reminders.schedule_reminders_for_job("job-1", now=NOW)

    rows = await services.db.list_reminders_for_job("job-1")
    pending = [r for r in rows if r.status == ReminderStatus.PENDING]
    cancelled = [r for r in rows if r.status == ReminderStatus.CANCELLED]
    assert len(pending) == 2
    assert {r.id for r in cancelled} == {r.id for r in first.reminders}
    assert pending[0].scheduled_for == datetime(2026, 3, 11, 13, 0, tzinfo=timezone.utc)

    history = await services.db.list_history(job_id="job-1")
    assert [h.event_type for h in history] == ["cancelled", "cancelled"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"reminders_enabled": False}, "Reminders disabled for this job"),
        ({"scheduled_time": None}, "Job missing scheduled date or time"),
        ({"scheduled_date": date(2026, 3, 9)}, "Job is in the past"),
        ({"customer_phone": None}, "No recipient phone number for job"),
        ({"org_id": "org-without-settings"}, "Reminders not enabled for organization"),
    ],
)
async def test_schedule_skips(services, reminder_settings, overrides, message):
    await services.db.insert_job(_job(**overrides))
    result = await services.reminders.schedule_reminders_for_job("job-1", now=NOW)
    assert result.scheduled == 0
    assert result.message == message
    assert await services.db.list_reminders_for_job("job-1") == []


@pytest.mark.asyncio
async def test_schedule_unknown_job(services):
    with pytest.raises(NotFoundError):
        await services.reminders.schedule_reminders_for_job("nope", now=NOW)


@pytest.mark.asyncio
async def test_custom_reminders_scheduled_per_id(services, db):
    await db.upsert_reminder_settings(
        ReminderSetting(
            org_id="org-1",
            timezone="America/New_York",
            confirmation_enabled=False,
            one_day_before_enabled=False,
            custom_reminders=[
                CustomReminder(id="prep", timing=ReminderTiming(value=3, unit=TimingUnit.HOURS), template="Prep"),
                CustomReminder(id="week", timing=ReminderTiming(value=1, unit=TimingUnit.WEEKS), template="Soon"),
                CustomReminder(
                    id="off", timing=ReminderTiming(value=1, unit=TimingUnit.DAYS), template="x", enabled=False
                ),
            ],
        )
    )
    await db.insert_job(_job(scheduled_date=date(2026, 3, 25)))

    await services.reminders.schedule_reminders_for_job("job-1", now=NOW)

    rows = await db.list_reminders_for_job("job-1")
    assert sorted(r.custom_reminder_id for r in rows) == ["prep", "week"]
    assert all(r.kind == ReminderKind.CUSTOM for r in rows)


# ── Dispatch ────────────────────────────────────────────────────


async def _due_reminder(db, template="Hi {{clientName}}, see you {{date}} at {{time}}"):
    await db.insert_job(_job())
    reminder = ScheduledReminder(
        id="rem-1",
        job_id="job-1",
        org_id="org-1",
        recipient_phone=CALLER_NUMBER,
        kind=ReminderKind.ONE_DAY_BEFORE,
        scheduled_for=NOW - timedelta(minutes=1),
        message_template=template,
    )
    await db.replace_pending_reminders("job-1", [reminder])
    return reminder


@pytest.mark.asyncio
async def test_due_reminder_is_sent_once(services, sms):
    await _due_reminder(services.db)

    stats = await services.reminders.process_pending_reminders(now=NOW)
    again = await services.reminders.process_pending_reminders(now=NOW + timedelta(minutes=1))

    assert stats["sent"] == 1
    assert again["processed"] == 0
    assert sms.sent == [
        {"to": CALLER_NUMBER, "body": "Hi Dana Smith, see you Wed, Mar 11 at 2:00 PM", "from": OWNER_NUMBER}
    ]

    row = await services.db.get_reminder("rem-1")
    assert row.status == ReminderStatus.SENT
    assert row.provider_message_sid == "SM0001"
    assert row.executed_at == NOW

    job = await services.db.get_job("job-1")
    assert job.reminder_count == 1
    assert job.last_reminder_sent_at == NOW

    history = await services.db.list_history(reminder_id="rem-1")
    assert [h.event_type for h in history] == ["sent"]


@pytest.mark.asyncio
async def test_future_reminder_not_sent(services, sms):
    await _due_reminder(services.db)
    stats = await services.reminders.process_pending_reminders(now=NOW - timedelta(minutes=5))
    assert stats["processed"] == 0
    assert sms.sent == []


@pytest.mark.asyncio
async def test_failures_retry_then_give_up(services, sms):
    sms.fail_times = 3
    await _due_reminder(services.db)

    first = await services.reminders.process_pending_reminders(now=NOW)
    row = await services.db.get_reminder("rem-1")
    assert first["retried"] == 1
    assert row.status == ReminderStatus.PENDING
    assert row.retry_count == 1
    assert row.scheduled_for == NOW + timedelta(minutes=5)

    # Not due again until the backoff elapses.
    assert (await services.reminders.process_pending_reminders(now=NOW + timedelta(minutes=2)))["processed"] == 0

    second = await services.reminders.process_pending_reminders(now=NOW + timedelta(minutes=6))
    third = await services.reminders.process_pending_reminders(now=NOW + timedelta(minutes=12))
    assert second["retried"] == 1
    assert third["failed"] == 1

    row = await services.db.get_reminder("rem-1")
    assert row.status == ReminderStatus.FAILED
    assert row.retry_count == 3
    assert row.error_message == "gateway timeout"
    history = await services.db.list_history(reminder_id="rem-1")
    assert [h.event_type for h in history] == ["failed", "failed", "failed"]

    later = await services.reminders.process_pending_reminders(now=NOW + timedelta(hours=1))
    assert later["processed"] == 0
    assert sms.sent == []


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failure(services, sms):
    sms.fail_times = 1
    await _due_reminder(services.db)

    await services.reminders.process_pending_reminders(now=NOW)
    stats = await services.reminders.process_pending_reminders(now=NOW + timedelta(minutes=5))

    assert stats["sent"] == 1
    history = await services.db.list_history(reminder_id="rem-1")
    assert [h.event_type for h in history] == ["failed", "sent"]


@pytest.mark.asyncio
async def test_cancelled_job_reminders_are_not_sent(services, sms):
    await _due_reminder(services.db)
    await services.db.update_job_status("job-1", "user-1", JobStatus.CANCELLED)
    assert await services.reminders.cancel_pending_reminders("job-1") == 1

    stats = await services.reminders.process_pending_reminders(now=NOW)
    assert stats["processed"] == 0
    assert sms.sent == []


class CancellingGateway:
    """Cancels the job's reminders while the message is in flight."""

    configured = True

    def __init__(self, db, fail: bool):
        self.db = db
        self.fail = fail

    async def send(self, to, body, from_number=None):
        await self.db.cancel_pending_reminders("job-1")
        if self.fail:
            raise UpstreamUnavailable("gateway timeout")
        return "SM9"


@pytest.mark.asyncio
@pytest.mark.parametrize("fail", [True, False])
async def test_cancel_during_send_stays_cancelled(services, fail):
    await _due_reminder(services.db)
    services.reminders.sms = CancellingGateway(services.db, fail=fail)

    stats = await services.reminders.process_pending_reminders(now=NOW)

    assert stats["skipped"] == 1
    row = await services.db.get_reminder("rem-1")
    assert row.status == ReminderStatus.CANCELLED
    history = await services.db.list_history(reminder_id="rem-1")
    assert [h.event_type for h in history] == ["cancelled"]
    assert (await services.db.get_job("job-1")).reminder_count == 0


@pytest.mark.asyncio
async def test_reminder_updates_require_the_claim(services):
    await _due_reminder(services.db)
    assert await services.db.claim_reminder("rem-1", "worker-a", NOW, NOW - timedelta(minutes=10))

    assert not await services.db.mark_reminder_sent("rem-1", "worker-b", NOW, "hi", "SM1")
    assert await services.db.mark_reminder_sent("rem-1", "worker-a", NOW, "hi", "SM1")
    assert not await services.db.mark_reminder_failed("rem-1", "worker-a", 1, "late")
    assert (await services.db.get_reminder("rem-1")).status == ReminderStatus.SENT
@pytest.mark.asyncio
async def test_send_on_the_way(services, sms, reminder_settings):
    await services.db.insert_job(_job())
    result = await services.reminders.send_on_the_way("job-1", eta_minutes=20)

    assert result["success"] is True
    assert result["sid"] == "SM0001"
    assert "approximately 20 minutes" in result["message"]
    assert sms.sent[0]["to"] == CALLER_NUMBER


@pytest.mark.asyncio
async def test_send_on_the_way_requires_phone(services):
    await services.db.insert_job(_job(customer_phone=None))
    with pytest.raises(ValidationError):
        await services.reminders.send_on_the_way("job-1")


@pytest.mark.asyncio
async def test_job_confirmation_recorded_in_history(services, sms):
    await services.db.insert_job(_job())
    sid = await services.reminders.send_job_confirmation(await services.db.get_job("job-1"))

    assert sid == "SM0001"
    assert sms.sent[0]["body"] == JOB_CONFIRMATION_MESSAGE
    history = await services.db.list_history(job_id="job-1")
    assert history[0].provider_message_sid == "SM0001"


@pytest.mark.asyncio
async def test_reminder_stats(services, sms, reminder_settings):
    sms.fail_times = 1
    await _due_reminder(services.db)
    await services.reminders.process_pending_reminders(now=NOW)

    stats = await services.reminders.get_reminder_stats("org-1")
    assert stats["total"] == 1
    assert stats["pending"] == 1
    assert stats["by_kind"] == {"one_day_before": {"total": 1, "sent": 0, "failed": 0}}
