"""
Service container built once at process start and shared by the HTTP app,
the CLI and the reminder worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from leadline.auth import AuthManager
from leadline.availability import AvailabilityCalculator
from leadline.config import Settings
from leadline.database import Database
from leadline.lead_extractor import LeadExtractor
from leadline.llm_client import OpenAIClient
from leadline.recording import RecordingFetcher, RecordingStore
from leadline.reminders import ReminderScheduler
from leadline.sms_client import SmsClient
from leadline.transcription import TranscriptionCoordinator

log = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Database
    auth: AuthManager
    sms: Any
    reminders: ReminderScheduler
    extractor: LeadExtractor
    transcription: TranscriptionCoordinator
    availability: AvailabilityCalculator
    recording_store: RecordingStore
    # Objects with an async close(), closed in reverse order on shutdown.
    closeables: list = field(default_factory=list)

    async def close(self) -> None:
        for resource in reversed(self.closeables):
            await resource.close()
        await self.db.close()
        log.info("services_closed")


def assemble_services(
    settings: Settings,
    db: Database,
    *,
    sms: Any,
    llm: Any,
    stt: Any,
    fetcher: Any,
    closeables: list | None = None,
) -> Services:
    """Wire components together around an already-connected database."""
    reminders = ReminderScheduler(settings, db, sms)
    extractor = LeadExtractor(db, llm, reminders)
    store = RecordingStore(settings.recordings_dir, settings.recording_retention_days)
    transcription = TranscriptionCoordinator(settings, db, fetcher, store, stt, extractor)
    return Services(
        settings=settings,
        db=db,
        auth=AuthManager(settings.jwt_secret, allow_header_fallback=settings.is_development),
        sms=sms,
        reminders=reminders,
        extractor=extractor,
        transcription=transcription,
        availability=AvailabilityCalculator(db, settings.default_timezone),
        recording_store=store,
        closeables=closeables or [],
    )


async def build_services(settings: Settings) -> Services:
    """Connect the database and construct the real gateway clients."""
    settings.ensure_dirs()
    db = Database(settings.database_path)
    await db.connect()

    sms = SmsClient(settings)
    openai = OpenAIClient(settings)
    fetcher = RecordingFetcher(settings)

    if not sms.configured:
        log.warning("sms_not_configured")
    if not settings.openai_api_key:
        log.warning("openai_not_configured")

    services = assemble_services(
        settings,
        db,
        sms=sms,
        llm=openai,
        stt=openai,
        fetcher=fetcher,
        closeables=[sms, openai, fetcher],
    )
    log.info("services_ready", db=str(settings.database_path))
    return services
