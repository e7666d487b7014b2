"""
HTTP entry point: telephony webhooks plus the jobs, reminders and
availability API.

Usage:
    leadline serve
    # or
    uvicorn leadline.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import Literal, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from leadline.config import Settings, get_settings
from leadline.errors import ConfigurationError, LeadlineError, NotFoundError, UpstreamUnavailable, ValidationError
from leadline.models import CalendarEvent, JobStatus, utcnow
from leadline.phone_utils import normalise_phone
from leadline.services import Services, build_services
from leadline.webhook import build_telephony_router
from leadline.worker import ReminderWorker

log = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


# ── Request bodies ──────────────────────────────────────────────
class JobStatusUpdate(BaseModel):
    status: str


class JobScheduleUpdate(BaseModel):
    scheduled_date: Optional[date] = Field(default=None, alias="scheduledDate")
    scheduled_time: Optional[time] = Field(default=None, alias="scheduledTime")
    reminders_enabled: Optional[bool] = Field(default=None, alias="remindersEnabled")

    model_config = {"populate_by_name": True}


class OnTheWayRequest(BaseModel):
    eta: int = Field(default=15, ge=1, le=600)


class CalendarSyncRequest(BaseModel):
    events: list[CalendarEvent] = Field(default_factory=list)


class CallerUpdate(BaseModel):
    label: Optional[str] = Field(default=None, max_length=50)
    routing_override: Optional[Literal["auto", "intake", "voicemail"]] = Field(default=None, alias="routingOverride")

    model_config = {"populate_by_name": True}


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Create the FastAPI app. When ``services`` is given (tests) it is used as
    is; otherwise the lifespan builds the container and starts the worker.
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = await build_services(settings)
        worker = None
        if owned and settings.reminder_worker_enabled:
            worker = ReminderWorker(app.state.services)
            worker.start()
        log.info("server_started", env=settings.app_env, worker=bool(worker))
        yield
        if worker:
            await worker.stop()
        if owned:
            await app.state.services.close()
            app.state.services = None
        log.info("server_stopped")

    app = FastAPI(title="Leadline: Call Intake & Follow-up", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(LeadlineError)
    async def _leadline_error(request: Request, exc: LeadlineError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{loc}: {first.get('msg', 'invalid')}" if loc else first.get("msg", "invalid")
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    def _svc(request: Request) -> Services:
        return request.app.state.services

    # ── Health check ────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(build_telephony_router())

    # ─────────────────────────────────────────────────────────
    #   Jobs
    # ─────────────────────────────────────────────────────────
    @app.get("/jobs")
    async def list_jobs(
        request: Request,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        status_filter = _parse_status(status) if status else None
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        jobs = await svc.db.list_jobs_for_user(user_id, status_filter, limit, offset)
        return {
            "jobs": [j.model_dump(mode="json") for j in jobs],
            "limit": limit,
            "offset": offset,
        }

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        job = await svc.db.get_job_for_user(job_id, user_id)
        if not job:
            raise NotFoundError("Job not found")
        return job.model_dump(mode="json")

    @app.patch("/jobs/{job_id}")
    async def update_job(job_id: str, body: JobStatusUpdate, request: Request):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        new_status = _parse_status(body.status)

        job = await svc.db.update_job_status(job_id, user_id, new_status)
        if not job:
            raise NotFoundError("Job not found")

        cancelled = 0
        if new_status in (JobStatus.CANCELLED, JobStatus.COMPLETED):
            cancelled = await svc.reminders.cancel_pending_reminders(job.id)
        log.info("job_status_updated", job_id=job.id, status=new_status.value, reminders_cancelled=cancelled)
        return job.model_dump(mode="json")

    @app.patch("/jobs/{job_id}/schedule")
    async def reschedule_job(job_id: str, body: JobScheduleUpdate, request: Request):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        if not await svc.db.get_job_for_user(job_id, user_id):
            raise NotFoundError("Job not found")

        changes = {name: getattr(body, name) for name in body.model_fields_set}
        job = await svc.db.update_job_schedule(job_id, **changes)
        if job.reminders_enabled and job.scheduled_date and job.scheduled_time:
            result = await svc.reminders.schedule_reminders_for_job(job.id)
            reminders = {"scheduled": result.scheduled, "message": result.message}
        else:
            cancelled = await svc.reminders.cancel_pending_reminders(job.id)
            reminders = {"scheduled": 0, "cancelled": cancelled, "message": "Pending reminders cancelled"}
        return {"job": job.model_dump(mode="json"), "reminders": reminders}

    @app.post("/jobs/{job_id}/confirm")
    async def confirm_job(job_id: str, request: Request):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        if not svc.sms.configured:
            log.error("sms_not_configured", route="confirm")
            raise ConfigurationError("Messaging not configured")

        job = await svc.db.get_job_for_user(job_id, user_id)
        if not job:
            raise NotFoundError("Job not found")
        if not job.customer_phone:
            raise ValidationError("Job is missing customer_phone")

        try:
            await svc.reminders.send_job_confirmation(job)
        except UpstreamUnavailable as e:
            log.error("job_confirmation_failed", job_id=job_id, error=e.message)
            return JSONResponse(status_code=500, content={"error": "Failed to send confirmation SMS"})
        return {"status": "queued"}

    @app.post("/jobs/{job_id}/on-the-way")
    async def on_the_way(job_id: str, request: Request, body: Optional[OnTheWayRequest] = None):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        if not await svc.db.get_job_for_user(job_id, user_id):
            raise NotFoundError("Job not found")
        eta = body.eta if body else 15
        return await svc.reminders.send_on_the_way(job_id, eta)

    # ─────────────────────────────────────────────────────────
    #   Reminders & calls
    # ─────────────────────────────────────────────────────────
    @app.get("/reminders/stats")
    async def reminder_stats(
        request: Request,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        user = await svc.db.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return await svc.reminders.get_reminder_stats(user.org_id, start, end)

    @app.post("/calls/{call_sid}/retry")
    async def retry_call(call_sid: str, request: Request):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        call = await svc.db.get_call(call_sid)
        if not call or call.owner_user_id != user_id:
            raise NotFoundError("Call not found")
        outcome = await svc.transcription.retry_transcription(call_sid)
        return outcome.model_dump()

    @app.put("/callers/{phone_number}")
    async def update_caller(phone_number: str, body: CallerUpdate, request: Request):
        """Label a caller (e.g. 'spam') or pin how their calls are routed."""
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        e164, ok = normalise_phone(phone_number)
        if not ok:
            raise ValidationError(f"Invalid phone number: {phone_number}")
        caller = await svc.db.set_caller_preferences(
            user_id, e164, utcnow(), label=body.label, routing_override=body.routing_override
        )
        log.info("caller_updated", user_id=user_id, label=caller.label, routing_override=caller.routing_override)
        return caller.model_dump(mode="json")

    # ─────────────────────────────────────────────────────────
    #   Availability
    # ─────────────────────────────────────────────────────────
    @app.get("/availability/next")
    async def next_available(request: Request, duration: int = 60, days: int = 14):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        if duration <= 0 or days <= 0:
            raise ValidationError("duration and days must be positive")
        slot = await svc.availability.get_next_available_slot(user_id, duration, min(days, 60))
        if not slot:
            return {"available": False, "slot": None}
        return {"available": True, "slot": slot.model_dump(mode="json")}

    @app.get("/availability/check")
    async def check_availability(request: Request, start: datetime, duration: int = 60):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        result = await svc.availability.check_specific_time(user_id, start, duration)
        return result.model_dump()

    @app.get("/availability/summary")
    async def availability_summary(request: Request, days: int = 7):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        return await svc.availability.get_availability_summary(user_id, max(1, min(days, 60)))

    @app.put("/calendar/events")
    async def sync_calendar(body: CalendarSyncRequest, request: Request):
        svc = _svc(request)
        user_id = svc.auth.require_auth(request)
        for event in body.events:
            if event.end_time <= event.start_time:
                raise ValidationError("Event end_time must be after start_time")
        synced = await svc.db.replace_calendar_events(user_id, body.events)
        log.info("calendar_synced", user_id=user_id, events=synced)
        return {"synced": synced}

    return app


def _parse_status(value: str) -> JobStatus:
    try:
        return JobStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in JobStatus)
        raise ValidationError(f"Invalid status '{value}'. Allowed: {allowed}") from None


# Create the main app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "leadline.server:app",
        host=_settings.host,
        port=_settings.port,
        reload=False,
        log_level="info",
    )
