from __future__ import annotations

import os

import pytest

# Logging is configured on first import; keep test runs off the filesystem.
os.environ.setdefault("LOG_TO_FILE", "0")

from mosaic_pipeline.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("mq_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("MOSAIC_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("LOG_TO_FILE", "0")
    monkeypatch.setenv("QUEUE_KEY_PREFIX", "test")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/15")
    monkeypatch.delenv("REDIS_PASSWORD", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("STRICT_SECRETS", raising=False)
    get_settings.cache_clear()
