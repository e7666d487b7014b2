"""Shared fixtures and in-process fakes for the external gateways."""

from __future__ import annotations

from typing import Optional

import pytest
import pytest_asyncio

from leadline.config import Settings
from leadline.database import Database
from leadline.errors import UpstreamUnavailable
from leadline.llm_client import SpeechResult
from leadline.models import ReminderSetting, ScheduleWindow, User
from leadline.recording import DownloadedRecording
from leadline.services import assemble_services

OWNER_NUMBER = "+15557770000"
CALLER_NUMBER = "+15550001111"


class FakeSms:
    def __init__(self, configured: bool = True, fail_times: int = 0):
        self.configured = configured
        self.fail_times = fail_times
        self.sent: list[dict] = []
        self.attempts = 0

    async def send(self, to: str, body: str, from_number: Optional[str] = None) -> str:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise UpstreamUnavailable("gateway timeout")
        self.sent.append({"to": to, "body": body, "from": from_number})
        return f"SM{len(self.sent):04d}"


class FakeLLM:
    def __init__(self, response: Optional[dict] = None):
        self.response = response if response is not None else {}
        self.calls: list[tuple[str, str]] = []

    async def complete_json(self, system_prompt: str, user_content: str) -> dict:
        self.calls.append((system_prompt, user_content))
        return dict(self.response)


class FakeSTT:
    def __init__(self, text: str = "Hi, this is Dana Smith, my kitchen sink is leaking."):
        self.text = text
        self.calls = 0

    async def transcribe(self, audio: bytes, filename: str, content_type: str) -> SpeechResult:
        self.calls += 1
        return SpeechResult(text=self.text, confidence=0.91, language="en")


class FakeFetcher:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.urls: list[str] = []

    async def fetch(self, recording_url: str) -> DownloadedRecording:
        self.urls.append(recording_url)
        if self.error:
            raise self.error
        return DownloadedRecording(
            content=b"ID3fake-audio",
            content_type="audio/mpeg",
            resolved_url=recording_url + ".mp3",
            extension="mp3",
        )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        app_env="test",
        twilio_account_sid="AC123",
        twilio_auth_token="secret-token",
        twilio_validate_signature=True,
        twilio_sms_from_number="+15559990000",
        server_public_url="https://hooks.example.test",
        receptionist_stream_url="wss://rx.example.test/stream",
        internal_api_token="internal-token",
        openai_api_key="sk-test",
        jwt_secret="jwt-secret",
        recordings_dir=tmp_path / "recordings",
        database_path=tmp_path / "test.db",
        log_dir=tmp_path / "logs",
        default_timezone="America/New_York",
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def llm():
    return FakeLLM(
        {
            "customer_name": "Dana Smith",
            "customer_phone": None,
            "service_type": "Leaky sink repair",
            "preferred_date": None,
            "preferred_time": None,
            "urgency": "high",
            "summary": "Kitchen sink leaking.",
        }
    )


@pytest.fixture
def stt():
    return FakeSTT()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def services(settings, db, sms, llm, stt, fetcher):
    return assemble_services(settings, db, sms=sms, llm=llm, stt=stt, fetcher=fetcher)


def make_owner(**overrides) -> User:
    data = dict(
        id="user-1",
        org_id="org-1",
        business_name="Acme Plumbing",
        business_type="plumber",
        phone_number=OWNER_NUMBER,
        schedule_timezone="America/New_York",
        schedule_windows=[ScheduleWindow(days=["mon", "tue", "wed", "thu", "fri"], start="08:00", end="17:00")],
    )
    data.update(overrides)
    return User(**data)


@pytest_asyncio.fixture
async def owner(db):
    user = make_owner()
    await db.upsert_user(user)
    return user


@pytest_asyncio.fixture
async def reminder_settings(db):
    rs = ReminderSetting(
        org_id="org-1",
        timezone="America/New_York",
        confirmation_enabled=False,
        one_day_before_enabled=True,
        one_day_before_time="09:00",
        morning_of_enabled=True,
        morning_of_time="08:00",
        skip_weekends_for_morning=False,
    )
    await db.upsert_reminder_settings(rs)
    return rs
