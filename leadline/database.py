"""
SQLite-backed persistence layer using aiosqlite.
Holds owners, caller memory, calls, transcripts, jobs, reminders and
synced calendar events. Every only-once guarantee of the pipeline is a
constraint or a guarded update in this module.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

from leadline.models import (
    TRANSCRIPTION_TRANSITIONS,
    CalendarEvent,
    CallRecord,
    Caller,
    Job,
    JobStatus,
    ReminderHistoryEntry,
    ReminderSetting,
    ReminderStatus,
    ScheduledReminder,
    Transcript,
    TranscriptionStatus,
    User,
)
from leadline.phone_utils import lookup_key

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id                      TEXT PRIMARY KEY,
    org_id                  TEXT NOT NULL,
    business_name           TEXT DEFAULT '',
    business_type           TEXT DEFAULT '',
    phone_number            TEXT NOT NULL UNIQUE,
    routing_mode            TEXT DEFAULT 'smart_auto',
    after_hours_mode        TEXT DEFAULT 'voicemail',
    schedule_timezone       TEXT DEFAULT '',
    schedule_windows        TEXT DEFAULT '[]',
    business_hours_start    TEXT DEFAULT '09:00',
    business_hours_end      TEXT DEFAULT '17:00',
    default_event_duration_minutes INTEGER DEFAULT 60,
    calendar_sync_enabled   INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS callers (
    owner_user_id     TEXT NOT NULL,
    phone_number      TEXT NOT NULL,
    label             TEXT DEFAULT '',
    routing_override  TEXT DEFAULT 'auto',
    first_seen_at     TEXT NOT NULL,
    last_seen_at      TEXT NOT NULL,
    PRIMARY KEY (owner_user_id, phone_number)
);

CREATE TABLE IF NOT EXISTS calls (
    call_sid                    TEXT PRIMARY KEY,
    from_number                 TEXT DEFAULT '',
    to_number                   TEXT DEFAULT '',
    owner_user_id               TEXT,
    status                      TEXT DEFAULT 'ringing',
    route_decision              TEXT,
    route_reason                TEXT,
    route_fallback              INTEGER DEFAULT 0,
    recording_sid               TEXT DEFAULT '',
    recording_url               TEXT DEFAULT '',
    recording_ref               TEXT,
    recording_duration_seconds  INTEGER,
    recorded_at                 TEXT,
    recording_expires_at        TEXT,
    transcription_status        TEXT DEFAULT 'pending',
    transcription_attempts      INTEGER DEFAULT 0,
    transcription_claimed_at    TEXT,
    last_error                  TEXT DEFAULT '',
    needs_review                INTEGER DEFAULT 0,
    review_reason               TEXT DEFAULT '',
    created_at                  TEXT NOT NULL,
    updated_at                  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transcripts (
    call_sid    TEXT PRIMARY KEY,
    engine      TEXT NOT NULL,
    text        TEXT NOT NULL,
    confidence  REAL DEFAULT 0.8,
    language    TEXT DEFAULT 'en',
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id                      TEXT PRIMARY KEY,
    owner_user_id           TEXT,
    org_id                  TEXT,
    source_call_id          TEXT UNIQUE,
    customer_name           TEXT,
    customer_phone          TEXT,
    service_type            TEXT,
    scheduled_date          TEXT,
    scheduled_time          TEXT,
    location                TEXT,
    urgency                 TEXT DEFAULT 'medium',
    notes                   TEXT,
    summary                 TEXT,
    business_name           TEXT DEFAULT '',
    business_number         TEXT,
    status                  TEXT DEFAULT 'new',
    reminders_enabled       INTEGER DEFAULT 1,
    reminder_count          INTEGER DEFAULT 0,
    last_reminder_sent_at   TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reminder_settings (
    org_id          TEXT PRIMARY KEY,
    settings_json   TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_reminders (
    id                    TEXT PRIMARY KEY,
    job_id                TEXT NOT NULL,
    org_id                TEXT NOT NULL,
    recipient_phone       TEXT NOT NULL,
    kind                  TEXT NOT NULL,
    custom_reminder_id    TEXT,
    scheduled_for         TEXT NOT NULL,
    message_template      TEXT NOT NULL,
    status                TEXT DEFAULT 'pending',
    retry_count           INTEGER DEFAULT 0,
    max_retries           INTEGER DEFAULT 3,
    executed_at           TEXT,
    error_message         TEXT,
    message_sent          TEXT,
    provider_message_sid  TEXT,
    claimed_by            TEXT,
    claimed_at            TEXT,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reminder_history (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id                TEXT NOT NULL,
    job_id                TEXT NOT NULL,
    reminder_id           TEXT,
    event_type            TEXT NOT NULL,
    message               TEXT DEFAULT '',
    recipient_phone       TEXT DEFAULT '',
    provider_message_sid  TEXT,
    created_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    start_time  TEXT NOT NULL,
    end_time    TEXT NOT NULL,
    title       TEXT DEFAULT '',
    source      TEXT DEFAULT 'calendar'
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_pending_reminder
    ON scheduled_reminders(job_id, kind, COALESCE(custom_reminder_id, ''))
    WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_reminders_due ON scheduled_reminders(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_reminder_history_job ON reminder_history(job_id);
CREATE INDEX IF NOT EXISTS idx_calls_owner_from ON calls(owner_user_id, from_number);
CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_user_id, status);
CREATE INDEX IF NOT EXISTS idx_calendar_user ON calendar_events(user_id, start_time);
"""

_CALL_COLUMNS = {
    "from_number",
    "to_number",
    "owner_user_id",
    "status",
    "route_decision",
    "route_reason",
    "route_fallback",
    "recording_sid",
    "recording_url",
    "recording_ref",
    "recording_duration_seconds",
    "recorded_at",
    "recording_expires_at",
    "last_error",
}


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> str:
    return to_db_time(datetime.now(timezone.utc))


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_time(value)
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):  # enums
        return value.value
    return value


class Database:
    """Async SQLite wrapper for the intake pipeline."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        # Held only for the duration of a write; never across network calls.
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._write_lock:
            try:
                yield self._db
            except BaseException:
                await self._db.rollback()
                raise
            else:
                await self._db.commit()

    async def _write(self, sql: str, params: tuple | list = ()) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(sql, params)
            return cursor.rowcount

    async def _fetchone(self, sql: str, params: tuple | list = ()) -> Optional[aiosqlite.Row]:
        cursor = await self._db.execute(sql, params)
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple | list = ()) -> list[aiosqlite.Row]:
        cursor = await self._db.execute(sql, params)
        return list(await cursor.fetchall())

    # ── Users ───────────────────────────────────────────────────

    async def upsert_user(self, user: User) -> None:
        await self._write(
            """
            INSERT INTO users
                (id, org_id, business_name, business_type, phone_number, routing_mode,
                 after_hours_mode, schedule_timezone, schedule_windows, business_hours_start,
                 business_hours_end, default_event_duration_minutes, calendar_sync_enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                org_id = excluded.org_id,
                business_name = excluded.business_name,
                business_type = excluded.business_type,
                phone_number = excluded.phone_number,
                routing_mode = excluded.routing_mode,
                after_hours_mode = excluded.after_hours_mode,
                schedule_timezone = excluded.schedule_timezone,
                schedule_windows = excluded.schedule_windows,
                business_hours_start = excluded.business_hours_start,
                business_hours_end = excluded.business_hours_end,
                default_event_duration_minutes = excluded.default_event_duration_minutes,
                calendar_sync_enabled = excluded.calendar_sync_enabled
            """,
            (
                user.id,
                user.org_id,
                user.business_name,
                user.business_type,
                lookup_key(user.phone_number),
                user.routing_mode.value,
                user.after_hours_mode.value,
                user.schedule_timezone,
                json.dumps([w.model_dump() for w in user.schedule_windows]),
                user.business_hours_start,
                user.business_hours_end,
                user.default_event_duration_minutes,
                int(user.calendar_sync_enabled),
            ),
        )

    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def get_user_by_phone_number(self, phone_number: str) -> Optional[User]:
        key = lookup_key(phone_number)
        if not key:
            return None
        row = await self._fetchone("SELECT * FROM users WHERE phone_number = ?", (key,))
        return self._row_to_user(row) if row else None

    # ── Caller memory ───────────────────────────────────────────

    async def get_caller(self, owner_user_id: str, phone_number: str) -> Optional[Caller]:
        row = await self._fetchone(
            "SELECT * FROM callers WHERE owner_user_id = ? AND phone_number = ?",
            (owner_user_id, lookup_key(phone_number)),
        )
        if not row:
            return None
        return Caller(
            owner_user_id=row["owner_user_id"],
            phone_number=row["phone_number"],
            label=row["label"] or "",
            routing_override=row["routing_override"] or "auto",
            first_seen_at=from_db_time(row["first_seen_at"]),
            last_seen_at=from_db_time(row["last_seen_at"]),
        )

    async def upsert_caller(
        self,
        owner_user_id: str,
        phone_number: str,
        seen_at: datetime,
        label: Optional[str] = None,
        routing_override: Optional[str] = None,
    ) -> None:
        seen = to_db_time(seen_at)
        await self._write(
            """
            INSERT INTO callers
                (owner_user_id, phone_number, label, routing_override, first_seen_at, last_seen_at)
            VALUES (?, ?, COALESCE(?, ''), COALESCE(?, 'auto'), ?, ?)
            ON CONFLICT(owner_user_id, phone_number) DO UPDATE SET
                label = COALESCE(?, callers.label),
                routing_override = COALESCE(?, callers.routing_override),
                last_seen_at = excluded.last_seen_at
            """,
            (
                owner_user_id,
                lookup_key(phone_number),
                label,
                routing_override,
                seen,
                seen,
                label,
                routing_override,
            ),
        )

    async def set_caller_preferences(
        self,
        owner_user_id: str,
        phone_number: str,
        now: datetime,
        label: Optional[str] = None,
        routing_override: Optional[str] = None,
    ) -> Caller:
        """Owner-set label / routing override. Does not count as the caller being seen."""
        key = lookup_key(phone_number)
        stamp = to_db_time(now)
        await self._write(
            """
            INSERT INTO callers
                (owner_user_id, phone_number, label, routing_override, first_seen_at, last_seen_at)
            VALUES (?, ?, COALESCE(?, ''), COALESCE(?, 'auto'), ?, ?)
            ON CONFLICT(owner_user_id, phone_number) DO UPDATE SET
                label = COALESCE(?, callers.label),
                routing_override = COALESCE(?, callers.routing_override)
            """,
            (owner_user_id, key, label, routing_override, stamp, stamp, label, routing_override),
        )
        return await self.get_caller(owner_user_id, key)

    async def caller_has_history(
        self,
        owner_user_id: str,
        phone_number: str,
        exclude_call_sid: Optional[str] = None,
    ) -> bool:
        """True when the caller has a prior completed call or a job with this owner."""
        key = lookup_key(phone_number)
        if not key:
            return False
        row = await self._fetchone(
            """
            SELECT 1 FROM calls
            WHERE owner_user_id = ? AND from_number = ?
              AND transcription_status = 'completed'
              AND call_sid != COALESCE(?, '')
            UNION ALL
            SELECT 1 FROM jobs
            WHERE owner_user_id = ? AND customer_phone = ?
            LIMIT 1
            """,
            (owner_user_id, key, exclude_call_sid, owner_user_id, key),
        )
        return row is not None

    # ── Calls ───────────────────────────────────────────────────

    async def get_call(self, call_sid: str) -> Optional[CallRecord]:
        row = await self._fetchone("SELECT * FROM calls WHERE call_sid = ?", (call_sid,))
        return self._row_to_call(row) if row else None

    async def upsert_call(self, call_sid: str, **fields: Any) -> CallRecord:
        """
        Insert the call if unseen, otherwise update only the given columns.
        Keyed on the provider CallSid, so webhook redelivery never duplicates a row.
        """
        unknown = set(fields) - _CALL_COLUMNS
        if unknown:
            raise ValueError(f"Unknown call columns: {sorted(unknown)}")

        for key in ("from_number", "to_number"):
            if fields.get(key):
                fields[key] = lookup_key(fields[key])
        values = {k: _db_value(v) for k, v in fields.items()}
        now = _now()

        columns = ["call_sid", "created_at", "updated_at", *values.keys()]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join([f"{c} = excluded.{c}" for c in values] + ["updated_at = excluded.updated_at"])
        await self._write(
            f"""
            INSERT INTO calls ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT(call_sid) DO UPDATE SET {updates}
            """,
            (call_sid, now, now, *values.values()),
        )
        return await self.get_call(call_sid)

    async def transition_transcription_status(
        self,
        call_sid: str,
        target: TranscriptionStatus,
        last_error: Optional[str] = None,
        attempts: Optional[int] = None,
        claimed_at: Optional[datetime] = None,
        stale_claim_before: Optional[datetime] = None,
    ) -> bool:
        """
        Move the call to ``target`` if its current status allows it.
        Returns False when the guard rejects the transition.

        A ``processing`` claim made before ``stale_claim_before`` counts as
        abandoned and may be taken over. ``failed`` only becomes ``completed``
        once a transcript row exists.
        """
        sources = [s.value for s in TRANSCRIPTION_TRANSITIONS[target]]
        placeholders = ", ".join("?" for _ in sources)
        where = f"transcription_status IN ({placeholders})"
        params: list = [*sources]
        if stale_claim_before is not None:
            where = f"({where} OR (transcription_status = 'processing' AND transcription_claimed_at < ?))"
            params.append(to_db_time(stale_claim_before))
        if target == TranscriptionStatus.COMPLETED:
            where += (
                " AND (transcription_status != 'failed'"
                " OR EXISTS (SELECT 1 FROM transcripts t WHERE t.call_sid = calls.call_sid))"
            )

        claim = None
        if target == TranscriptionStatus.PROCESSING:
            claim = to_db_time(claimed_at or datetime.now(timezone.utc))
        rowcount = await self._write(
            f"""
            UPDATE calls
            SET transcription_status = ?,
                last_error = COALESCE(?, last_error),
                transcription_attempts = COALESCE(?, transcription_attempts),
                transcription_claimed_at = ?,
                updated_at = ?
            WHERE call_sid = ? AND {where}
            """,
            (target.value, last_error, attempts, claim, _now(), call_sid, *params),
        )
        return rowcount == 1

    async def flag_call_for_review(self, call_sid: str, reason: str) -> None:
        await self._write(
            "UPDATE calls SET needs_review = 1, review_reason = ?, updated_at = ? WHERE call_sid = ?",
            (reason, _now(), call_sid),
        )

    async def list_calls_needing_review(self, owner_user_id: Optional[str] = None) -> list[CallRecord]:
        if owner_user_id:
            rows = await self._fetchall(
                "SELECT * FROM calls WHERE needs_review = 1 AND owner_user_id = ? ORDER BY created_at ASC",
                (owner_user_id,),
            )
        else:
            rows = await self._fetchall("SELECT * FROM calls WHERE needs_review = 1 ORDER BY created_at ASC")
        return [self._row_to_call(r) for r in rows]

    async def list_expired_recordings(self, now: datetime, limit: int = 50) -> list[CallRecord]:
        rows = await self._fetchall(
            """
            SELECT * FROM calls
            WHERE recording_ref IS NOT NULL
              AND recording_expires_at IS NOT NULL
              AND recording_expires_at <= ?
            ORDER BY recording_expires_at ASC
            LIMIT ?
            """,
            (to_db_time(now), limit),
        )
        return [self._row_to_call(r) for r in rows]

    async def clear_recording_ref(self, call_sid: str) -> None:
        await self._write(
            "UPDATE calls SET recording_ref = NULL, updated_at = ? WHERE call_sid = ?",
            (_now(), call_sid),
        )

    # ── Transcripts ─────────────────────────────────────────────

    async def get_transcript(self, call_sid: str) -> Optional[Transcript]:
        row = await self._fetchone("SELECT * FROM transcripts WHERE call_sid = ?", (call_sid,))
        if not row:
            return None
        return Transcript(
            call_sid=row["call_sid"],
            engine=row["engine"],
            text=row["text"],
            confidence=row["confidence"],
            language=row["language"],
            created_at=from_db_time(row["created_at"]),
        )

    async def insert_transcript(self, transcript: Transcript) -> bool:
        """Insert once per call. Returns False if a transcript already existed."""
        rowcount = await self._write(
            """
            INSERT INTO transcripts (call_sid, engine, text, confidence, language, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(call_sid) DO NOTHING
            """,
            (
                transcript.call_sid,
                transcript.engine,
                transcript.text,
                transcript.confidence,
                transcript.language,
                to_db_time(transcript.created_at),
            ),
        )
        return rowcount == 1

    # ── Jobs ────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        row = await self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    async def get_job_by_call_sid(self, call_sid: str) -> Optional[Job]:
        row = await self._fetchone("SELECT * FROM jobs WHERE source_call_id = ?", (call_sid,))
        return self._row_to_job(row) if row else None

    async def insert_job(self, job: Job) -> tuple[Job, bool]:
        """
        Insert a job. A conflict on ``source_call_id`` means another delivery
        already created it; the existing row is returned with ``created=False``.
        """
        now = _now()
        rowcount = await self._write(
            """
            INSERT INTO jobs
                (id, owner_user_id, org_id, source_call_id, customer_name, customer_phone,
                 service_type, scheduled_date, scheduled_time, location, urgency, notes, summary,
                 business_name, business_number, status, reminders_enabled, reminder_count,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                job.id,
                job.owner_user_id,
                job.org_id,
                job.source_call_id,
                job.customer_name,
                lookup_key(job.customer_phone) or None,
                job.service_type,
                job.scheduled_date.isoformat() if job.scheduled_date else None,
                job.scheduled_time.strftime("%H:%M") if job.scheduled_time else None,
                job.location,
                job.urgency.value,
                job.notes,
                job.summary,
                job.business_name,
                lookup_key(job.business_number) or None,
                job.status.value,
                int(job.reminders_enabled),
                job.reminder_count,
                to_db_time(job.created_at),
                now,
            ),
        )
        if rowcount == 1:
            return await self.get_job(job.id), True
        if job.source_call_id:
            existing = await self.get_job_by_call_sid(job.source_call_id)
            if existing:
                return existing, False
        return await self.get_job(job.id), False

    async def list_jobs_for_user(
        self,
        user_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Job]:
        if status:
            rows = await self._fetchall(
                """
                SELECT * FROM jobs WHERE owner_user_id = ? AND status = ?
                ORDER BY created_at DESC LIMIT ? OFFSET ?
                """,
                (user_id, status.value, limit, offset),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM jobs WHERE owner_user_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            )
        return [self._row_to_job(r) for r in rows]

    async def get_job_for_user(self, job_id: str, user_id: str) -> Optional[Job]:
        row = await self._fetchone(
            "SELECT * FROM jobs WHERE id = ? AND owner_user_id = ?",
            (job_id, user_id),
        )
        return self._row_to_job(row) if row else None

    async def update_job_status(self, job_id: str, user_id: str, status: JobStatus) -> Optional[Job]:
        rowcount = await self._write(
            "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND owner_user_id = ?",
            (status.value, _now(), job_id, user_id),
        )
        if rowcount == 0:
            return None
        return await self.get_job(job_id)

    async def update_job_schedule(self, job_id: str, **fields: Any) -> Optional[Job]:
        """Update only the given schedule columns. An explicit None clears a column."""
        unknown = set(fields) - {"scheduled_date", "scheduled_time", "reminders_enabled"}
        if unknown:
            raise ValueError(f"Unknown schedule columns: {sorted(unknown)}")

        values: dict[str, Any] = {}
        if "scheduled_date" in fields:
            value = fields["scheduled_date"]
            values["scheduled_date"] = value.isoformat() if value else None
        if "scheduled_time" in fields:
            value = fields["scheduled_time"]
            values["scheduled_time"] = value.strftime("%H:%M") if value else None
        if fields.get("reminders_enabled") is not None:
            values["reminders_enabled"] = int(fields["reminders_enabled"])

        assignments = ", ".join([f"{column} = ?" for column in values] + ["updated_at = ?"])
        rowcount = await self._write(
            f"UPDATE jobs SET {assignments} WHERE id = ?",
            (*values.values(), _now(), job_id),
        )
        if rowcount == 0:
            return None
        return await self.get_job(job_id)

    async def record_job_reminder_sent(self, job_id: str, sent_at: datetime) -> None:
        await self._write(
            """
            UPDATE jobs
            SET reminder_count = reminder_count + 1,
                last_reminder_sent_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (to_db_time(sent_at), _now(), job_id),
        )

    # ── Reminder settings ───────────────────────────────────────

    async def get_reminder_settings(self, org_id: str) -> Optional[ReminderSetting]:
        row = await self._fetchone("SELECT settings_json FROM reminder_settings WHERE org_id = ?", (org_id,))
        if not row:
            return None
        return ReminderSetting.model_validate_json(row["settings_json"])

    async def upsert_reminder_settings(self, settings: ReminderSetting) -> None:
        await self._write(
            """
            INSERT INTO reminder_settings (org_id, settings_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(org_id) DO UPDATE SET
                settings_json = excluded.settings_json,
                updated_at = excluded.updated_at
            """,
            (settings.org_id, settings.model_dump_json(), _now()),
        )

    # ── Scheduled reminders ─────────────────────────────────────

    async def replace_pending_reminders(
        self,
        job_id: str,
        reminders: list[ScheduledReminder],
    ) -> list[ScheduledReminder]:
        """
        Cancel every pending reminder of the job, then insert ``reminders``,
        in one transaction. Returns the rows that were cancelled.
        """
        async with self._transaction() as db:
            cancelled = await self._cancel_pending_in_tx(db, job_id)
            now = _now()
            await db.executemany(
                """
                INSERT INTO scheduled_reminders
                    (id, job_id, org_id, recipient_phone, kind, custom_reminder_id, scheduled_for,
                     message_template, status, retry_count, max_retries, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)
                """,
                [
                    (
                        r.id,
                        r.job_id,
                        r.org_id,
                        r.recipient_phone,
                        r.kind.value,
                        r.custom_reminder_id,
                        to_db_time(r.scheduled_for),
                        r.message_template,
                        r.max_retries,
                        now,
                        now,
                    )
                    for r in reminders
                ],
            )
        return cancelled

    async def cancel_pending_reminders(self, job_id: str) -> list[ScheduledReminder]:
        async with self._transaction() as db:
            return await self._cancel_pending_in_tx(db, job_id)

    async def _cancel_pending_in_tx(self, db: aiosqlite.Connection, job_id: str) -> list[ScheduledReminder]:
        cursor = await db.execute(
            "SELECT * FROM scheduled_reminders WHERE job_id = ? AND status = 'pending'",
            (job_id,),
        )
        pending = [self._row_to_reminder(r) for r in await cursor.fetchall()]
        if not pending:
            return []

        now = _now()
        await db.execute(
            """
            UPDATE scheduled_reminders
            SET status = 'cancelled', claimed_by = NULL, claimed_at = NULL, updated_at = ?
            WHERE job_id = ? AND status = 'pending'
            """,
            (now, job_id),
        )
        await db.executemany(
            """
            INSERT INTO reminder_history
                (org_id, job_id, reminder_id, event_type, message, recipient_phone, created_at)
            VALUES (?, ?, ?, 'cancelled', '', ?, ?)
            """,
            [(r.org_id, r.job_id, r.id, r.recipient_phone, now) for r in pending],
        )
        return [r.model_copy(update={"status": ReminderStatus.CANCELLED}) for r in pending]

    async def get_reminder(self, reminder_id: str) -> Optional[ScheduledReminder]:
        row = await self._fetchone("SELECT * FROM scheduled_reminders WHERE id = ?", (reminder_id,))
        return self._row_to_reminder(row) if row else None

    async def list_reminders_for_job(self, job_id: str) -> list[ScheduledReminder]:
        rows = await self._fetchall(
            "SELECT * FROM scheduled_reminders WHERE job_id = ? ORDER BY scheduled_for ASC",
            (job_id,),
        )
        return [self._row_to_reminder(r) for r in rows]

    async def list_reminders_for_org(
        self,
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ScheduledReminder]:
        sql = "SELECT * FROM scheduled_reminders WHERE org_id = ?"
        params: list[Any] = [org_id]
        if start:
            sql += " AND created_at >= ?"
            params.append(to_db_time(start))
        if end:
            sql += " AND created_at <= ?"
            params.append(to_db_time(end))
        rows = await self._fetchall(sql, params)
        return [self._row_to_reminder(r) for r in rows]

    async def get_due_reminders(
        self,
        now: datetime,
        limit: int,
        stale_claim_before: datetime,
    ) -> list[ScheduledReminder]:
        """Pending reminders due at ``now``, oldest first, skipping live claims."""
        rows = await self._fetchall(
            """
            SELECT * FROM scheduled_reminders
            WHERE status = 'pending'
              AND scheduled_for <= ?
              AND (claimed_at IS NULL OR claimed_at < ?)
            ORDER BY scheduled_for ASC
            LIMIT ?
            """,
            (to_db_time(now), to_db_time(stale_claim_before), limit),
        )
        return [self._row_to_reminder(r) for r in rows]

    async def claim_reminder(
        self,
        reminder_id: str,
        token: str,
        now: datetime,
        stale_claim_before: datetime,
    ) -> bool:
        """Take ownership of a due row. Only one worker can win the update."""
        rowcount = await self._write(
            """
            UPDATE scheduled_reminders
            SET claimed_by = ?, claimed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
              AND (claimed_at IS NULL OR claimed_at < ?)
            """,
            (token, to_db_time(now), _now(), reminder_id, to_db_time(stale_claim_before)),
        )
        return rowcount == 1

    async def mark_reminder_sent(
        self,
        reminder_id: str,
        claimed_by: str,
        executed_at: datetime,
        message: str,
        provider_message_sid: str,
    ) -> bool:
        """Each mark_* update only lands on a pending row still held by ``claimed_by``."""
        rowcount = await self._write(
            """
            UPDATE scheduled_reminders
            SET status = 'sent',
                executed_at = ?,
                message_sent = ?,
                provider_message_sid = ?,
                error_message = NULL,
                claimed_by = NULL,
                claimed_at = NULL,
                updated_at = ?
            WHERE id = ? AND status = 'pending' AND claimed_by = ?
            """,
            (to_db_time(executed_at), message, provider_message_sid, _now(), reminder_id, claimed_by),
        )
        return rowcount == 1

    async def mark_reminder_retry(
        self,
        reminder_id: str,
        claimed_by: str,
        retry_count: int,
        next_attempt_at: datetime,
        error_message: str,
    ) -> bool:
        rowcount = await self._write(
            """
            UPDATE scheduled_reminders
            SET retry_count = ?,
                scheduled_for = ?,
                error_message = ?,
                claimed_by = NULL,
                claimed_at = NULL,
                updated_at = ?
            WHERE id = ? AND status = 'pending' AND claimed_by = ?
            """,
            (retry_count, to_db_time(next_attempt_at), error_message, _now(), reminder_id, claimed_by),
        )
        return rowcount == 1

    async def mark_reminder_failed(
        self, reminder_id: str, claimed_by: str, retry_count: int, error_message: str
    ) -> bool:
        rowcount = await self._write(
            """
            UPDATE scheduled_reminders
            SET status = 'failed',
                retry_count = ?,
                error_message = ?,
                claimed_by = NULL,
                claimed_at = NULL,
                updated_at = ?
            WHERE id = ? AND status = 'pending' AND claimed_by = ?
            """,
            (retry_count, error_message, _now(), reminder_id, claimed_by),
        )
        return rowcount == 1

    # ── Reminder history (append-only) ──────────────────────────

    async def append_history(self, entry: ReminderHistoryEntry) -> None:
        await self._write(
            """
            INSERT INTO reminder_history
                (org_id, job_id, reminder_id, event_type, message, recipient_phone,
                 provider_message_sid, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.org_id,
                entry.job_id,
                entry.reminder_id,
                entry.event_type,
                entry.message,
                entry.recipient_phone,
                entry.provider_message_sid,
                to_db_time(entry.created_at),
            ),
        )

    async def list_history(
        self,
        job_id: Optional[str] = None,
        reminder_id: Optional[str] = None,
    ) -> list[ReminderHistoryEntry]:
        sql = "SELECT * FROM reminder_history WHERE 1 = 1"
        params: list[Any] = []
        if job_id:
            sql += " AND job_id = ?"
            params.append(job_id)
        if reminder_id:
            sql += " AND reminder_id = ?"
            params.append(reminder_id)
        rows = await self._fetchall(sql + " ORDER BY id ASC", params)
        return [
            ReminderHistoryEntry(
                id=r["id"],
                org_id=r["org_id"],
                job_id=r["job_id"],
                reminder_id=r["reminder_id"],
                event_type=r["event_type"],
                message=r["message"] or "",
                recipient_phone=r["recipient_phone"] or "",
                provider_message_sid=r["provider_message_sid"],
                created_at=from_db_time(r["created_at"]),
            )
            for r in rows
        ]

    # ── Calendar events ─────────────────────────────────────────

    async def replace_calendar_events(self, user_id: str, events: list[CalendarEvent]) -> int:
        async with self._transaction() as db:
            await db.execute("DELETE FROM calendar_events WHERE user_id = ?", (user_id,))
            await db.executemany(
                """
                INSERT INTO calendar_events (user_id, start_time, end_time, title, source)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (user_id, to_db_time(e.start_time), to_db_time(e.end_time), e.title, e.source)
                    for e in events
                ],
            )
        return len(events)

    async def get_events_in_range(self, user_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Events overlapping [start, end), ordered by start."""
        rows = await self._fetchall(
            """
            SELECT * FROM calendar_events
            WHERE user_id = ? AND start_time < ? AND end_time > ?
            ORDER BY start_time ASC
            """,
            (user_id, to_db_time(end), to_db_time(start)),
        )
        return [
            CalendarEvent(
                start_time=from_db_time(r["start_time"]),
                end_time=from_db_time(r["end_time"]),
                title=r["title"] or "",
                source=r["source"] or "calendar",
            )
            for r in rows
        ]

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=row["id"],
            org_id=row["org_id"],
            business_name=row["business_name"] or "",
            business_type=row["business_type"] or "",
            phone_number=row["phone_number"],
            routing_mode=row["routing_mode"] or "smart_auto",
            after_hours_mode=row["after_hours_mode"] or "voicemail",
            schedule_timezone=row["schedule_timezone"] or "",
            schedule_windows=json.loads(row["schedule_windows"] or "[]"),
            business_hours_start=row["business_hours_start"] or "09:00",
            business_hours_end=row["business_hours_end"] or "17:00",
            default_event_duration_minutes=row["default_event_duration_minutes"] or 60,
            calendar_sync_enabled=bool(row["calendar_sync_enabled"]),
        )

    @staticmethod
    def _row_to_call(row) -> CallRecord:
        return CallRecord(
            call_sid=row["call_sid"],
            from_number=row["from_number"] or "",
            to_number=row["to_number"] or "",
            owner_user_id=row["owner_user_id"],
            status=row["status"] or "ringing",
            route_decision=row["route_decision"],
            route_reason=row["route_reason"],
            route_fallback=bool(row["route_fallback"]),
            recording_sid=row["recording_sid"] or "",
            recording_url=row["recording_url"] or "",
            recording_ref=row["recording_ref"],
            recording_duration_seconds=row["recording_duration_seconds"],
            recorded_at=from_db_time(row["recorded_at"]),
            recording_expires_at=from_db_time(row["recording_expires_at"]),
            transcription_status=TranscriptionStatus(row["transcription_status"]),
            transcription_attempts=row["transcription_attempts"] or 0,
            transcription_claimed_at=from_db_time(row["transcription_claimed_at"]),
            last_error=row["last_error"] or "",
            needs_review=bool(row["needs_review"]),
            review_reason=row["review_reason"] or "",
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @staticmethod
    def _row_to_job(row) -> Job:
        return Job(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            org_id=row["org_id"],
            source_call_id=row["source_call_id"],
            customer_name=row["customer_name"],
            customer_phone=row["customer_phone"],
            service_type=row["service_type"],
            scheduled_date=date.fromisoformat(row["scheduled_date"]) if row["scheduled_date"] else None,
            scheduled_time=time.fromisoformat(row["scheduled_time"]) if row["scheduled_time"] else None,
            location=row["location"],
            urgency=row["urgency"] or "medium",
            notes=row["notes"],
            summary=row["summary"],
            business_name=row["business_name"] or "",
            business_number=row["business_number"],
            status=JobStatus(row["status"]),
            reminders_enabled=bool(row["reminders_enabled"]),
            reminder_count=row["reminder_count"] or 0,
            last_reminder_sent_at=from_db_time(row["last_reminder_sent_at"]),
            created_at=from_db_time(row["created_at"]),
        )

    @staticmethod
    def _row_to_reminder(row) -> ScheduledReminder:
        return ScheduledReminder(
            id=row["id"],
            job_id=row["job_id"],
            org_id=row["org_id"],
            recipient_phone=row["recipient_phone"],
            kind=row["kind"],
            custom_reminder_id=row["custom_reminder_id"],
            scheduled_for=from_db_time(row["scheduled_for"]),
            message_template=row["message_template"],
            status=ReminderStatus(row["status"]),
            retry_count=row["retry_count"] or 0,
            max_retries=row["max_retries"] or 3,
            executed_at=from_db_time(row["executed_at"]),
            error_message=row["error_message"],
            message_sent=row["message_sent"],
            provider_message_sid=row["provider_message_sid"],
            created_at=from_db_time(row["created_at"]),
        )
