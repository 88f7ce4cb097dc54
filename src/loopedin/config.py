from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel


class Settings(BaseModel):
    # Database URL:
    # - Default for local dev: sqlite file in the project root (loopedin.db)
    # - Override in Docker / production using the DATABASE_URL env var
    database_url: str = os.getenv(
        "DATABASE_URL",
        f"sqlite:///{(Path(__file__).resolve().parents[2] / 'loopedin.db')}",
    )

    # Prefix for shareable newsletter links sent over SMS
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # --- Twilio (inbound media fetch + outbound SMS) ---
    twilio_account_sid: str | None = os.getenv("TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = os.getenv("TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = os.getenv("TWILIO_FROM_NUMBER")

    # --- Text generation ---
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    # --- Media object store (S3) ---
    aws_access_key_id: str | None = os.getenv("AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str | None = os.getenv("AWS_SECRET_ACCESS_KEY")
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    s3_bucket_name: str | None = os.getenv("S3_BUCKET_NAME")
    # Optional CDN / custom domain in front of the bucket
    s3_public_base_url: str | None = os.getenv("S3_PUBLIC_BASE_URL")
    media_fetch_timeout_seconds: float = float(os.getenv("MEDIA_FETCH_TIMEOUT_SECONDS", "20"))

    # --- Reminder scheduler ---
    reminders_enabled: bool = os.getenv("REMINDERS_ENABLED", "true").lower() in ("1", "true", "yes")
    reminder_timezone: str = os.getenv("REMINDER_TIMEZONE", "America/New_York")
    reminder_interval_seconds: int = int(os.getenv("REMINDER_INTERVAL_SECONDS", "60"))

    def model_post_init(self, __context: object) -> None:  # type: ignore[override]
        object.__setattr__(self, "public_base_url", self.public_base_url.rstrip("/"))

    def newsletter_url(self, slug: str) -> str:
        return f"{self.public_base_url}/newsletters/{slug}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
