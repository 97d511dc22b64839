from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as redis

from mosaic_pipeline.config import get_settings

from .models import MAX_PRIORITY, MIN_PRIORITY, PRIORITY_BANDS

# Atomic delayed -> ready move.
# KEYS[1]=delayed zset, KEYS[2]=ready band list, ARGV[1]=serialized task
# Only the sweeper whose ZREM succeeds pushes, so a due task is moved at most once
# even with several workers sweeping the same queue.
MOVE_DELAYED_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
  redis.call('LPUSH', KEYS[2], ARGV[1])
  return 1
end
return 0
"""

# Atomic failed-archive -> ready move (operator requeue).
# KEYS[1]=failed zset, KEYS[2]=ready band list, ARGV[1]=archived member, ARGV[2]=reset task
REQUEUE_FAILED_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
  redis.call('LPUSH', KEYS[2], ARGV[2])
  return 1
end
return 0
"""


def build_redis_client(url: str | None = None) -> redis.Redis:
    """
    Async Redis client shared by every queue of a process.

    Connection errors surface lazily on the first command, so constructing a client never
    blocks or fails for an unreachable server.
    """
    s = get_settings()
    redis_url = str(url or "").strip() or s.effective_redis_url()
    kwargs = {"decode_responses": True}
    pw = s.secret.redis_password
    if pw is not None and pw.get_secret_value():
        kwargs["password"] = pw.get_secret_value()
    return redis.Redis.from_url(redis_url, **kwargs)


@dataclass(frozen=True, slots=True)
class QueueKeys:
    """Key layout of one logical queue: 11 ready bands, a delay set and two archives."""

    name: str
    prefix: str = "queue"

    def band(self, priority: int) -> str:
        p = int(priority)
        if p < MIN_PRIORITY or p > MAX_PRIORITY:
            raise ValueError(f"priority out of range: {p}")
        return f"{self.prefix}:{self.name}:priority:{p}"

    def bands_desc(self) -> list[str]:
        return [self.band(p) for p in PRIORITY_BANDS]

    def priority_of(self, band_key: str | bytes) -> int:
        if isinstance(band_key, bytes):
            band_key = band_key.decode("utf-8")
        return int(str(band_key).rsplit(":", 1)[-1])

    @property
    def delayed(self) -> str:
        return f"{self.prefix}:{self.name}:delayed"

    @property
    def completed(self) -> str:
        return f"{self.prefix}:{self.name}:completed"

    @property
    def failed(self) -> str:
        return f"{self.prefix}:{self.name}:failed"


def queue_keys(name: str) -> QueueKeys:
    prefix = str(get_settings().queue_key_prefix or "queue").strip().strip(":") or "queue"
    return QueueKeys(name=str(name), prefix=prefix)
