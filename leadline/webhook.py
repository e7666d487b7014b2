"""
Telephony webhook routes: inbound call routing, recording completion and
live-intake conversation completion.
"""

from __future__ import annotations

import hmac
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError

from leadline.errors import AuthenticationError, ConfigurationError, LeadlineError, ValidationError
from leadline.models import ConversationCompletePayload, Route, utcnow
from leadline.routing import decide_route
from leadline.services import Services
from leadline.signature import canonical_urls, require_valid_signature
from leadline.voice_response import intake_response, voicemail_response

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-twilio-signature"
INTERNAL_TOKEN_HEADER = "x-internal-token"


def _services(request: Request) -> Services:
    return request.app.state.services


async def _form_params(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


def _verify_provider_request(request: Request, services: Services, params: dict[str, str]) -> None:
    urls = canonical_urls(
        services.settings.server_public_url,
        request.url.path,
        request.url.query,
        str(request.url),
    )
    require_valid_signature(services.settings, urls, params, request.headers.get(SIGNATURE_HEADER))


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except ValueError:
        return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Provider timestamps are RFC 2822 ('Tue, 10 Mar 2026 14:00:00 +0000')."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            log.warning("recording_timestamp_unparseable", value=value)
            return None


def _recording_callback_url(request: Request, services: Services) -> str:
    base = services.settings.server_public_url.rstrip("/") or str(request.base_url).rstrip("/")
    return f"{base}/telephony/recording-complete"


def build_telephony_router() -> APIRouter:
    router = APIRouter(prefix="/telephony")

    # ── Inbound call ────────────────────────────────────────────
    @router.post("/inbound-voice")
    async def inbound_voice(request: Request):
        services = _services(request)
        params = await _form_params(request)
        _verify_provider_request(request, services, params)

        call_sid = params.get("CallSid", "")
        from_number = params.get("From", "")
        to_number = params.get("To", "")
        if not call_sid:
            raise ValidationError("CallSid is required")

        now = utcnow()
        evaluation = await decide_route(services.db, to_number, from_number, now, call_sid=call_sid)
        route, fallback = evaluation.route, evaluation.fallback

        stream_url = services.settings.receptionist_stream_url
        if route == Route.INTAKE and not stream_url:
            log.warning("receptionist_not_configured", call_sid=call_sid)
            route, fallback = Route.VOICEMAIL, True

        user = evaluation.user
        try:
            await services.db.upsert_call(
                call_sid,
                from_number=from_number,
                to_number=to_number,
                owner_user_id=user.id if user else None,
                status="in-progress",
                route_decision=route,
                route_reason=evaluation.reason,
                route_fallback=fallback,
            )
            if user and from_number:
                await services.db.upsert_caller(user.id, from_number, now)
        except Exception:
            # The caller is still on the line; answer with the decision regardless.
            log.exception("route_persist_failed", call_sid=call_sid)

        log.info(
            "inbound_call_routed",
            call_sid=call_sid,
            owner=user.id if user else None,
            route=route.value,
            reason=evaluation.reason.value,
            fallback=fallback,
        )

        if route == Route.INTAKE:
            twiml = intake_response(stream_url, call_sid, user.id if user else None)
        else:
            twiml = voicemail_response(
                _recording_callback_url(request, services),
                business_name=user.business_name if user else "",
            )
        return Response(content=twiml, media_type="application/xml")

    # ── Recording complete ──────────────────────────────────────
    @router.post("/recording-complete")
    async def recording_complete(request: Request):
        services = _services(request)
        params = await _form_params(request)
        _verify_provider_request(request, services, params)

        call_sid = params.get("CallSid", "")
        log.info(
            "recording_webhook_received",
            call_sid=call_sid,
            recording_sid=params.get("RecordingSid", ""),
            duration=params.get("RecordingDuration"),
        )

        try:
            outcome = await services.transcription.handle_recording_complete(
                call_sid=call_sid,
                recording_url=params.get("RecordingUrl") or None,
                duration_seconds=_parse_int(params.get("RecordingDuration")),
                recorded_at=_parse_timestamp(params.get("Timestamp")),
                recording_sid=params.get("RecordingSid", ""),
                from_number=params.get("From", ""),
                to_number=params.get("To", ""),
            )
        except ValidationError:
            raise
        except LeadlineError as e:
            log.error("recording_pipeline_failed", call_sid=call_sid, error=e.message)
            return JSONResponse(status_code=500, content={"error": e.message})
        except Exception:
            log.exception("recording_pipeline_crashed", call_sid=call_sid)
            return JSONResponse(status_code=500, content={"error": "Transcription failed"})

        if outcome.status == "processing":
            return JSONResponse(status_code=202, content={"status": "processing"})
        return {"status": "transcribed"}

    # ── Live-intake conversation complete ───────────────────────
    @router.post("/conversation-complete")
    async def conversation_complete(request: Request):
        services = _services(request)
        expected = services.settings.internal_api_token
        if not expected:
            raise ConfigurationError("Internal API token is not configured")
        provided = request.headers.get(INTERNAL_TOKEN_HEADER, "")
        if not hmac.compare_digest(expected, provided):
            log.warning("internal_token_mismatch", path=request.url.path)
            raise AuthenticationError("Invalid internal token")

        try:
            payload = ConversationCompletePayload.model_validate(await request.json())
        except (PydanticValidationError, ValueError) as e:
            raise ValidationError(f"Invalid conversation payload: {e}") from e

        try:
            outcome = await services.transcription.handle_conversation_complete(payload)
        except ValidationError:
            raise
        except Exception:
            log.exception("conversation_pipeline_crashed", call_sid=payload.call_sid)
            return JSONResponse(status_code=500, content={"error": "Failed to process conversation"})

        return {"status": outcome.status, "job_id": outcome.job_id}

    return router
