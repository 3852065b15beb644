"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. All keys use the
``SAFERELAY_`` prefix and may also be supplied through a ``.env`` file.
Dispatch and ranking values are policy defaults, not fixed law: every
one of them can be tuned per deployment.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the SafeRelay service."""

    model_config = SettingsConfigDict(
        env_prefix="SAFERELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Redis (chunk buffer) ───────────────────────────────────────────
    redis_url: str = ""

    # ── Admin API Key (audit endpoints) ────────────────────────────────
    admin_api_key: str = ""

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    # ── Evidence upload & custody ──────────────────────────────────────
    chunk_session_ttl_seconds: int = Field(default=3_600, ge=1)  # 1 hour
    chunk_gc_interval_seconds: float = Field(default=60.0, gt=0)
    max_chunk_bytes: int = Field(default=8 * 1024 * 1024, ge=1)  # 8 MiB
    evidence_storage_dir: str = ""  # empty -> in-memory object storage
    access_reference_ttl_seconds: int = Field(default=3_600, ge=1)
    signing_secret: str = ""

    # ── Responder directory ────────────────────────────────────────────
    default_search_radius_meters: float = Field(default=5_000.0, gt=0)
    max_candidates: int = Field(default=20, ge=1)
    recency_window_hours: float = Field(default=24.0, gt=0)
    offline_after_minutes: float = Field(default=10.0, gt=0)

    # ── Notification dispatch ──────────────────────────────────────────
    fanout_size: int = Field(default=5, ge=1)
    tier_deadline_seconds: float = Field(default=45.0, gt=0)
    max_tier: int = Field(default=3, ge=1)
    channel_send_timeout_seconds: float = Field(default=5.0, gt=0)
    channel_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # ── Channel gateways (empty -> log-only channels) ──────────────────
    push_gateway_url: str = ""
    push_gateway_token: str = ""
    sms_gateway_url: str = ""
    sms_api_key: str = ""
    sms_sender_id: str = "SAFRLY"

    # ── Identity service (empty -> in-memory directory) ────────────────
    identity_service_url: str = ""
    identity_service_token: str = ""

    # ── Escalation ─────────────────────────────────────────────────────
    authority_phone: str = "112"
    escalation_distress_threshold: float = Field(default=0.75, ge=0, le=1)

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
