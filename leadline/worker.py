"""
Periodic reminder worker. Runs the reminder batch and the recording purge
sweep on a fixed interval; a tick that fires while a run is still in
progress is skipped.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from leadline.models import utcnow
from leadline.recording import purge_expired_recordings
from leadline.services import Services

log = structlog.get_logger(__name__)


class ReminderWorker:
    def __init__(self, services: Services, interval_seconds: Optional[int] = None):
        self.services = services
        self.interval = interval_seconds or services.settings.reminder_interval_seconds
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run_once(self, now: Optional[datetime] = None) -> Optional[dict]:
        """One tick. Returns None when skipped because a run is in progress."""
        if self._lock.locked():
            log.warning("reminder_tick_skipped", reason="previous run still in progress")
            return None

        async with self._lock:
            now = now or utcnow()
            stats = await self.services.reminders.process_pending_reminders(now)
            stats["recordings_purged"] = await purge_expired_recordings(
                self.services.db, self.services.recording_store, now
            )
            return stats

    async def _loop(self) -> None:
        log.info("reminder_worker_started", interval=self.interval)
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                log.exception("reminder_tick_failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        log.info("reminder_worker_stopped")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task:
            await self._task
            self._task = None
