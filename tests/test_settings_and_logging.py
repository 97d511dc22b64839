from __future__ import annotations

import json

import pytest

from config.settings import DEFAULT_REDIS_URL, ConfigError, get_safe_config_report, get_settings
from mosaic_pipeline.queue.redis_queue import TaskQueueConfig
from mosaic_pipeline.utils.log import _redact_str, add_contextvars, set_queue, set_task_id


def test_queue_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_RETRY_BACKOFF_UNIT_S", "5")
    monkeypatch.setenv("QUEUE_DEFAULT_MAX_RETRIES", "7")
    monkeypatch.setenv("QUEUE_SHUTDOWN_GRACE_S", "2.5")
    get_settings.cache_clear()
    cfg = TaskQueueConfig.from_settings()
    assert cfg.backoff_unit_s == 5.0
    assert cfg.default_max_retries == 7
    assert cfg.shutdown_grace_s == 2.5
    assert cfg.completed_ttl_s == 24 * 3600
    assert cfg.failed_ttl_s == 7 * 24 * 3600


def test_missing_redis_url_defaults_in_dev(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    assert get_settings().effective_redis_url() == DEFAULT_REDIS_URL


def test_production_requires_redis_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("ENV", "production")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        _ = get_settings()


def test_strict_secrets_requires_redis_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("STRICT_SECRETS", "1")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        _ = get_settings()


def test_secrets_not_in_logs_or_reports(monkeypatch: pytest.MonkeyPatch) -> None:
    pw = "redis-password-should-not-log-123"
    monkeypatch.setenv("REDIS_PASSWORD", pw)
    monkeypatch.setenv("REDIS_URL", f"redis://:{pw}@cache.internal:6379/0")
    get_settings.cache_clear()

    red = _redact_str(f"connecting to redis://:{pw}@cache.internal:6379/0")
    assert pw not in red
    assert "***REDACTED***" in red

    red = _redact_str(f"REDIS_PASSWORD={pw} other=1")
    assert pw not in red
    assert "other=1" in red

    # Configured secret literals are scrubbed wherever they appear.
    assert pw not in _redact_str(f"error: auth failed for {pw}")

    report_text = json.dumps(get_safe_config_report())
    assert pw not in report_text
    assert "cache.internal" not in report_text


def test_context_fields_are_attached() -> None:
    set_queue("images")
    set_task_id("t-123")
    try:
        ev = add_contextvars(None, None, {"event": "x"})
        assert ev["queue"] == "images"
        assert ev["task_id"] == "t-123"
        # Explicit fields win.
        ev = add_contextvars(None, None, {"event": "x", "queue": "other"})
        assert ev["queue"] == "other"
    finally:
        set_queue(None)
        set_task_id(None)
