"""
Inbound call router: decides whether a call goes to the live AI
receptionist (intake) or to voicemail.

The decision is pure over injected lookups and never raises; any failure
degrades to voicemail with ``fallback=True``.
"""

from __future__ import annotations

from datetime import datetime, time as dt_time, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

import structlog

from leadline.models import (
    Caller,
    Route,
    RouteEvaluation,
    RouteReason,
    RoutingMode,
    ScheduleCheck,
    ScheduleWindow,
    User,
)
from leadline.phone_utils import lookup_key

log = structlog.get_logger(__name__)


class RoutingLookups(Protocol):
    async def get_user_by_phone_number(self, phone_number: str) -> Optional[User]: ...

    async def get_caller(self, owner_user_id: str, phone_number: str) -> Optional[Caller]: ...

    async def caller_has_history(
        self,
        owner_user_id: str,
        phone_number: str,
        exclude_call_sid: Optional[str] = None,
    ) -> bool: ...


def _parse_time(time_str: str) -> dt_time:
    """Parse 'HH:MM' string to time object."""
    parts = time_str.strip().split(":")
    return dt_time(int(parts[0]), int(parts[1]))


def normalise_mode(mode: object) -> RoutingMode:
    try:
        return RoutingMode(str(mode).strip().lower())
    except ValueError:
        return RoutingMode.SMART_AUTO


def is_within_window(local_now: datetime, window: ScheduleWindow) -> bool:
    """
    Windows are [start, end) in local wall-clock time. A window whose end is
    at or before its start wraps past midnight and belongs to the day it starts on.
    """
    start = _parse_time(window.start)
    end = _parse_time(window.end)
    current = local_now.time().replace(second=0, microsecond=0)
    weekday = local_now.strftime("%a").lower()

    if end <= start:
        # Early-morning tail of a window that opened the previous day.
        if current < end:
            yesterday = _previous_weekday(weekday)
            return not window.days or yesterday in window.days
        if current >= start:
            return not window.days or weekday in window.days
        return False

    if window.days and weekday not in window.days:
        return False
    return start <= current < end


_WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _previous_weekday(weekday: str) -> str:
    return _WEEKDAYS[(_WEEKDAYS.index(weekday) - 1) % 7]


def evaluate_schedule(user: User, now: datetime) -> ScheduleCheck:
    if not user.schedule_windows or not user.schedule_timezone:
        return ScheduleCheck(active=True, reason="no_schedule")

    zone = ZoneInfo(user.schedule_timezone)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(zone)

    active = any(is_within_window(local_now, w) for w in user.schedule_windows)
    return ScheduleCheck(
        active=active,
        reason="within_business_hours" if active else "after_hours",
        timezone=user.schedule_timezone,
    )


async def decide_route(
    lookups: RoutingLookups,
    to_number: str,
    from_number: str,
    now: datetime,
    call_sid: Optional[str] = None,
) -> RouteEvaluation:
    """Route one inbound call. Never raises."""
    try:
        return await _decide(lookups, to_number, from_number, now, call_sid)
    except Exception:
        log.exception("route_evaluation_failed", to=to_number, call_sid=call_sid)
        return RouteEvaluation(
            route=Route.VOICEMAIL,
            reason=RouteReason.EVALUATION_ERROR,
            fallback=True,
        )


async def _decide(
    lookups: RoutingLookups,
    to_number: str,
    from_number: str,
    now: datetime,
    call_sid: Optional[str],
) -> RouteEvaluation:
    to_key = lookup_key(to_number)
    from_key = lookup_key(from_number)

    user = await lookups.get_user_by_phone_number(to_key) if to_key else None
    if user is None:
        log.warning("route_unknown_number", to=to_key)
        return RouteEvaluation(
            route=Route.VOICEMAIL,
            reason=RouteReason.ALWAYS_VOICEMAIL,
            mode=RoutingMode.ALWAYS_VOICEMAIL,
            fallback=True,
        )

    mode = normalise_mode(user.routing_mode.value if user.routing_mode else None)
    caller = await lookups.get_caller(user.id, from_key) if from_key else None
    result = RouteEvaluation(user=user, caller=caller, mode=mode)

    override = (caller.routing_override or "auto").lower() if caller else "auto"
    if override in (Route.INTAKE.value, Route.VOICEMAIL.value):
        result.route = Route(override)
        result.reason = RouteReason.CALLER_OVERRIDE
        return result

    if mode == RoutingMode.ALWAYS_INTAKE:
        result.route, result.reason = Route.INTAKE, RouteReason.ALWAYS_INTAKE
        return result
    if mode == RoutingMode.ALWAYS_VOICEMAIL:
        result.route, result.reason = Route.VOICEMAIL, RouteReason.ALWAYS_VOICEMAIL
        return result

    if caller and caller.label.lower() == "spam":
        result.route, result.reason = Route.VOICEMAIL, RouteReason.CALLER_SPAM
        return result

    schedule = evaluate_schedule(user, now)
    result.schedule = schedule
    if not schedule.active:
        result.route, result.reason = user.after_hours_mode, RouteReason.SMART_AFTER_HOURS
        return result

    known = bool(from_key) and await lookups.caller_has_history(user.id, from_key, exclude_call_sid=call_sid)
    if known:
        result.route, result.reason = Route.VOICEMAIL, RouteReason.SMART_KNOWN
    else:
        result.route, result.reason = Route.INTAKE, RouteReason.SMART_UNKNOWN
    return result
