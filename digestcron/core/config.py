from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "digestcron"
    log_level: str = "INFO"
    # Emit one JSON object per line when shipping logs to an aggregator.
    log_json: bool = False

    # SQL-backed blob namespace; sqlite keeps local runs dependency-free.
    database_url: str = "sqlite+aiosqlite:///./digestcron.db"
    # Choose where scheduler documents live: sql | filesystem | memory.
    blob_backend: str = "sql"
    blob_root: str = "./var/blobs"
    # Single logical folder that owns every scheduler document.
    app_folder_name: str = "digestcron"

    # Shared secret the external timer presents as a bearer token.
    cron_secret: str | None = None
    # Bearer token guarding ops/admin routes; unset disables them.
    admin_api_token: str | None = None

    # Lease length for the tick lock; a crashed holder is reclaimable after this.
    cron_lock_lease_ms: int = 240_000
    # UTC evaluation stays the default until timezone-aware matching is opted in.
    cron_timezone_aware: bool = False

    # Outbound send retry budget shared by slack and webhook channels.
    notify_retry_max_attempts: int = 3
    notify_retry_base_delay_ms: int = 200
    notify_retry_max_delay_ms: int = 1500
    notify_retry_max_total_ms: int = 3500
    # Per-call timeout applied to every outbound HTTP request.
    ext_call_timeout_ms: int = 8000

    # Escalating breaker thresholds: short burst mutes briefly, sustained failure mutes longer.
    cb_short_window_failures: int = 3
    cb_short_window_s: int = 1800
    cb_long_window_failures: int = 6
    cb_long_window_s: int = 21600

    # Bound the tail log so status reads stay cheap.
    job_runs_max_tail_lines: int = 300
    job_runs_tail_guard_bytes: int = 524_288
    job_runs_month_read_lines: int = 500

    # Per-route report caps.
    report_default_max_per_run: int = 5
    report_hard_cap_per_run: int = 25

    # Email delivery provider: gmail | noop.
    email_provider: str = "noop"
    email_from: str | None = None
    google_token_url: str = "https://oauth2.googleapis.com/token"
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_refresh_token: str | None = None
    # Static access token for local runs; skips the refresh exchange when set.
    google_access_token: str | None = None
    gmail_send_url: str = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

    # ARQ worker wiring for the periodic tick.
    redis_url: str = "redis://localhost:6379/0"
    scheduler_queue_name: str = "digestcron"
    scheduler_tick_minutes: int = 1

    # Bind address for the HTTP trigger and ops API.
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Links embedded in digests.
    app_base_url: str = ""
    dashboard_path: str = "/timeline/dashboard"
    report_link_template: str = "https://drive.google.com/file/d/{file_id}/view"


@lru_cache
def get_settings() -> Settings:
    return Settings()
