"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = Field(default="production", description="'development' enables header auth fallback")

    # ── Twilio ──────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_validate_signature: bool = Field(default=True)
    twilio_sms_from_number: str = Field(default="")
    twilio_messaging_service_sid: str = Field(default="")

    # ── Public URLs ─────────────────────────────────────────────
    server_public_url: str = Field(default="", description="Base URL the provider calls us on")
    receptionist_stream_url: str = Field(default="", description="wss:// URL of the live receptionist")
    internal_api_token: str = Field(default="", description="Shared token for receptionist callbacks")

    # ── Speech-to-text / LLM (OpenAI-compatible) ────────────────
    openai_api_key: str = Field(default="")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    transcription_model: str = Field(default="whisper-1")
    transcription_language: str = Field(default="en")
    extraction_model: str = Field(default="gpt-4o-mini")

    # ── Auth ────────────────────────────────────────────────────
    jwt_secret: str = Field(default="")

    # ── Outbound calls ──────────────────────────────────────────
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # ── Recordings ──────────────────────────────────────────────
    recordings_dir: Path = Field(default=Path("data/recordings"))
    recording_retention_days: int = Field(default=30, ge=0)
    transcription_max_attempts: int = Field(default=3, ge=1)
    transcription_claim_ttl_minutes: int = Field(default=10, ge=1)

    # ── Reminders ───────────────────────────────────────────────
    reminder_interval_seconds: int = Field(default=60, ge=1)
    reminder_batch_size: int = Field(default=100, ge=1, le=1000)
    reminder_retry_delay_minutes: int = Field(default=5, ge=1)
    reminder_max_retries: int = Field(default=3, ge=1, le=10)
    reminder_confirmation_delay_seconds: int = Field(default=30, ge=0)
    reminder_worker_enabled: bool = Field(default=True)
    default_timezone: str = Field(default="America/New_York")

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/leadline.db"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [
            self.recordings_dir,
            self.log_dir,
            self.database_path.parent,
        ]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """Factory – cached at module level after first call."""
    return Settings()  # type: ignore[call-arg]
