from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_log_dir() -> Path:
    base = os.environ.get("APP_ROOT") or os.getcwd()
    return Path(base).resolve() / "logs"


class PublicConfig(BaseSettings):
    """
    Queue tuning, retention, logging and HTTP bind settings.

    Every field has a working default; env vars (or `.env`) override by alias.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- task queue (Redis) ---
    # Every queue lives under "<prefix>:<queue name>:..." so queues never share keys.
    queue_key_prefix: str = Field(default="queue", alias="QUEUE_KEY_PREFIX")
    # Bounded blocking pop used by the dispatch loop.
    queue_dequeue_timeout_s: float = Field(default=5.0, alias="QUEUE_DEQUEUE_TIMEOUT_S")
    queue_sweep_interval_s: float = Field(default=30.0, alias="QUEUE_SWEEP_INTERVAL_S")
    # One backoff unit; the n-th retry waits n^2 units.
    queue_retry_backoff_unit_s: float = Field(default=60.0, alias="QUEUE_RETRY_BACKOFF_UNIT_S")
    queue_default_priority: int = Field(default=0, alias="QUEUE_DEFAULT_PRIORITY")
    queue_default_max_retries: int = Field(default=3, alias="QUEUE_DEFAULT_MAX_RETRIES")

    # --- archives ---
    queue_completed_ttl_s: int = Field(default=24 * 3600, alias="QUEUE_COMPLETED_TTL_S")
    queue_failed_ttl_s: int = Field(default=7 * 24 * 3600, alias="QUEUE_FAILED_TTL_S")
    queue_cleanup_interval_s: float = Field(default=3600.0, alias="QUEUE_CLEANUP_INTERVAL_S")

    # 0 keeps fire-and-forget shutdown (in-flight handlers are not awaited).
    queue_shutdown_grace_s: float = Field(default=0.0, alias="QUEUE_SHUTDOWN_GRACE_S")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: Path = Field(default_factory=_default_log_dir, alias="MOSAIC_LOG_DIR")
    log_to_file: bool = Field(default=True, alias="LOG_TO_FILE")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- stats/health surface ---
    api_host: str = Field(default="0.0.0.0", alias="HOST")
    api_port: int = Field(default=8080, alias="PORT")
