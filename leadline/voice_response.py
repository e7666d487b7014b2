"""
Voice-control documents (TwiML) for the two call treatments.
"""

from __future__ import annotations

from typing import Optional

from twilio.twiml.voice_response import Connect, VoiceResponse

VOICEMAIL_GREETING = (
    "Hi, you've reached {business}. We can't take your call right now. "
    "Please leave your name, number and what you need after the tone."
)


def intake_response(stream_url: str, call_sid: str, user_id: Optional[str]) -> str:
    """Hand the call to the live receptionist over a media stream."""
    response = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=stream_url)
    stream.parameter(name="callSid", value=call_sid)
    if user_id:
        stream.parameter(name="userId", value=user_id)
    response.append(connect)
    return str(response)


def voicemail_response(
    recording_callback_url: str,
    business_name: str = "",
    max_length_seconds: int = 120,
) -> str:
    response = VoiceResponse()
    response.say(VOICEMAIL_GREETING.format(business=business_name or "us"), voice="alice")
    response.record(
        action=recording_callback_url,
        method="POST",
        max_length=max_length_seconds,
        play_beep=True,
        trim="trim-silence",
    )
    response.hangup()
    return str(response)
