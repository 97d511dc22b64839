from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Read-only view over public + secret config; `s.queue_key_prefix`, `s.redis_url`.

    A name defined in both resolves to the secret value.
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def effective_redis_url(self) -> str:
        return str(self.secret.redis_url or "").strip() or DEFAULT_REDIS_URL


def _is_production_env() -> bool:
    env = str(os.environ.get("ENV") or os.environ.get("APP_ENV") or "").strip().lower()
    return env in {"prod", "production"}


def _strict_secrets() -> bool:
    return str(os.environ.get("STRICT_SECRETS") or "0").strip() == "1"


def _validate_secrets(s: Settings) -> None:
    """
    A missing REDIS_URL is fatal in production (ENV=prod) or with STRICT_SECRETS=1.

    Elsewhere the localhost default is used and a warning is logged.
    """
    if str(s.secret.redis_url or "").strip():
        return
    if _is_production_env() or _strict_secrets():
        raise ConfigError(
            "Missing required configuration: REDIS_URL. "
            "Set it via environment variables or `.env.secrets`."
        )
    logging.getLogger("mosaic_pipeline").warning(
        "redis_url_defaulted", extra={"default": DEFAULT_REDIS_URL}
    )


def _secret_state(v: Any) -> str:
    if isinstance(v, SecretStr):
        v = v.get_secret_value()
    return "SET" if v is not None and str(v).strip() else "UNSET"


def get_safe_config_report() -> dict[str, Any]:
    """
    Effective configuration, safe to print: secrets appear only as SET/UNSET.
    """
    s = get_settings()
    public = {
        k: (str(v) if isinstance(v, Path) else v) for k, v in s.public.model_dump().items()
    }
    secrets = {
        k: _secret_state(getattr(s.secret, k, None)) for k in sorted(SecretConfig.model_fields)
    }
    return {
        "strict_secrets": _strict_secrets(),
        "public": public,
        "secrets": secrets,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate_secrets(s)
    return s
