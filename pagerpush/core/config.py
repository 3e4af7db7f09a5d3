from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Gateway hosts for token-based HTTP/2 provider connections.
APNS_PRODUCTION_HOST = "https://api.push.apple.com"
APNS_SANDBOX_HOST = "https://api.sandbox.push.apple.com"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "pagerpush"
    log_level: str = "INFO"

    # Redis connection backing the durable notification queue.
    redis_url: str = "redis://localhost:6379/0"
    # Select redis (durable) or memory (single-process dev/test) queue storage.
    notify_queue_backend: str = "redis"
    # Keep queue name configurable for multi-environment isolation.
    notify_queue_name: str = "notifications"
    # Total delivery attempts per job before it is moved to failed.
    notify_max_attempts: int = 3
    # Exponential backoff base and multiplier between attempts.
    notify_backoff_ms: int = 2000
    notify_backoff_multiplier: int = 2
    # Jobs leased longer than this without ack return to waiting.
    notify_lease_timeout_s: int = 60
    # Completed jobs are kept briefly for audit, bounded by age and count.
    notify_completed_retention_s: int = 3600
    notify_completed_retention_count: int = 1000
    # Failed jobs are kept longer for diagnosis.
    notify_failed_retention_s: int = 86400
    # Number of concurrent worker routines sharing one gateway session.
    notify_worker_concurrency: int = 10
    # Global cap on send attempts per second across all workers.
    notify_rate_limit_per_s: float = 100
    # Poll cadence for the Redis queue when nothing is ready.
    notify_dequeue_poll_interval_ms: int = 250
    # Time in-flight jobs get to finish on shutdown before cancellation.
    notify_shutdown_grace_s: int = 30
    # "package.module:factory" returning the recipient directory the worker uses for
    # live activity fallbacks; the directory's clear_live_activity_token is the cleanup hook.
    notify_recipient_directory: str | None = None

    # Token-based APNs auth: inline PEM takes precedence over a key file path.
    apns_key: str | None = None
    apns_key_path: str | None = None
    apns_key_id: str | None = None
    apns_team_id: str | None = None
    apns_bundle_id: str = "com.pager2077.app"
    # Use the sandbox gateway unless explicitly running against production.
    apns_production: bool = False
    apns_connect_timeout_s: float = 30
    apns_request_timeout_s: float = 30
    # Provider tokens are valid for 60 minutes; refresh well before that.
    apns_token_refresh_s: int = 3000
    apns_token_ttl_s: int = 3600

    # Push-to-start tokens shorter than this are treated as absent.
    live_activity_min_token_length: int = 32
    # Message previews are truncated to fit the on-device display.
    message_preview_max_chars: int = 100

    @property
    def apns_host(self) -> str:
        return APNS_PRODUCTION_HOST if self.apns_production else APNS_SANDBOX_HOST

    @property
    def apns_configured(self) -> bool:
        return bool((self.apns_key or self.apns_key_path) and self.apns_key_id and self.apns_team_id)


@lru_cache
def get_settings() -> Settings:
    return Settings()
