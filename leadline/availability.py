"""
Availability calculator: free/busy slots from synced calendar events and
the owner's business hours. Used by the live receptionist to offer times
that don't double-book.

Overlap is half-open: a slot ending exactly when an event starts is free.
"""

from __future__ import annotations

from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from leadline.database import Database
from leadline.errors import ValidationError
from leadline.models import AvailabilityCheck, CalendarEvent, Slot, User, utcnow

log = structlog.get_logger(__name__)


def overlaps(start: datetime, end: datetime, event: CalendarEvent) -> bool:
    return start < event.end_time and event.start_time < end


def _parse_time(time_str: str) -> dt_time:
    """Parse 'HH:MM' (or 'HH:MM:SS') string to time object."""
    parts = time_str.strip().split(":")
    return dt_time(int(parts[0]), int(parts[1]))


def _time_label(value: datetime) -> str:
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{value.hour % 12 or 12}:{value.minute:02d} {suffix}"


def day_slots(
    day: date,
    tz: ZoneInfo,
    business_start: dt_time,
    business_end: dt_time,
    duration: timedelta,
    events: list[CalendarEvent],
) -> list[Slot]:
    """Tile one day's business hours into back-to-back slots of ``duration``."""
    if duration <= timedelta(0):
        raise ValueError("slot duration must be positive")
    day_start = datetime.combine(day, business_start, tzinfo=tz).astimezone(timezone.utc)
    day_end = datetime.combine(day, business_end, tzinfo=tz).astimezone(timezone.utc)

    slots = []
    current = day_start
    while current + duration <= day_end:
        end = current + duration
        local = current.astimezone(tz)
        slots.append(
            Slot(
                start=current,
                end=end,
                available=not any(overlaps(current, end, e) for e in events),
                day_of_week=f"{local:%A}",
                date_label=f"{local:%B} {local.day}",
                time_label=_time_label(local),
            )
        )
        current = end
    return slots


def _require_positive(duration_minutes: int) -> None:
    if duration_minutes <= 0:
        raise ValidationError("duration must be a positive number of minutes")


class AvailabilityCalculator:
    def __init__(self, db: Database, default_timezone: str):
        self.db = db
        self.default_timezone = default_timezone

    def _zone(self, user: User) -> ZoneInfo:
        return ZoneInfo(user.schedule_timezone or self.default_timezone)

    async def get_next_available_slot(
        self,
        user_id: str,
        duration_minutes: int = 60,
        search_days: int = 14,
        now: Optional[datetime] = None,
    ) -> Optional[Slot]:
        _require_positive(duration_minutes)
        now = now or utcnow()
        user = await self.db.get_user(user_id)
        if not user:
            log.warning("availability_unknown_user", user_id=user_id)
            return None
        if not user.calendar_sync_enabled:
            return None

        tz = self._zone(user)
        duration = timedelta(minutes=duration_minutes)
        business_start = _parse_time(user.business_hours_start)
        business_end = _parse_time(user.business_hours_end)

        today = now.astimezone(tz).date()
        window_end = datetime.combine(today + timedelta(days=search_days), dt_time(0), tzinfo=tz)
        events = await self.db.get_events_in_range(user_id, now, window_end.astimezone(timezone.utc))

        for offset in range(search_days):
            day = today + timedelta(days=offset)
            for slot in day_slots(day, tz, business_start, business_end, duration, events):
                if slot.available and slot.start > now:
                    return slot
        return None

    async def check_specific_time(
        self,
        user_id: str,
        start: datetime,
        duration_minutes: int = 60,
    ) -> AvailabilityCheck:
        """Single-interval overlap test. Lookup errors report unavailable rather than raising."""
        _require_positive(duration_minutes)
        try:
            if start.tzinfo is None:
                user = await self.db.get_user(user_id)
                tz = self._zone(user) if user else ZoneInfo(self.default_timezone)
                start = start.replace(tzinfo=tz)
            end = start + timedelta(minutes=duration_minutes)
            for event in await self.db.get_events_in_range(user_id, start, end):
                if overlaps(start, end, event):
                    return AvailabilityCheck(available=False, conflicting_event=event.title)
            return AvailabilityCheck(available=True)
        except Exception:
            log.exception("availability_check_failed", user_id=user_id)
            return AvailabilityCheck(available=False, error="Unable to check availability")

    async def get_availability_summary(self, user_id: str, days: int = 7, now: Optional[datetime] = None) -> dict:
        user = await self.db.get_user(user_id)
        if not user or not user.calendar_sync_enabled:
            return {"enabled": False, "summary": "Calendar sync is not enabled."}

        slot = await self.get_next_available_slot(user_id, 60, days, now=now)
        if not slot:
            return {"enabled": True, "available": False, "summary": f"No availability in the next {days} days."}

        return {
            "enabled": True,
            "available": True,
            "next_slot": slot.model_dump(mode="json"),
            "summary": f"Next available: {slot.day_of_week}, {slot.date_label} at {slot.time_label}",
            "business_hours": {"start": user.business_hours_start, "end": user.business_hours_end},
        }
