from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

MIN_PRIORITY = 0
MAX_PRIORITY = 10
# Ready bands, highest priority first.
PRIORITY_BANDS = tuple(range(MAX_PRIORITY, MIN_PRIORITY - 1, -1))

DEFAULT_PRIORITY = 0
DEFAULT_MAX_RETRIES = 3


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _parse_ts(v: Any) -> datetime | None:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        s = str(v)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(slots=True)
class Task:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    max_retries: int = DEFAULT_MAX_RETRIES
    retries: int = 0
    created_at: datetime = field(default_factory=now_utc)
    scheduled_at: datetime | None = None
    processed_at: datetime | None = None
    error: str = ""

    def is_due(self, now: datetime | None = None) -> bool:
        if self.scheduled_at is None:
            return True
        return self.scheduled_at <= (now or now_utc())

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "priority": int(self.priority),
            "max_retries": int(self.max_retries),
            "retries": int(self.retries),
            "created_at": _ts(self.created_at),
        }
        if self.scheduled_at is not None:
            d["scheduled_at"] = _ts(self.scheduled_at)
        if self.processed_at is not None:
            d["processed_at"] = _ts(self.processed_at)
        if self.error:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Task:
        return cls(
            id=str(d["id"]),
            type=str(d["type"]),
            payload=dict(d.get("payload") or {}),
            priority=int(d.get("priority", DEFAULT_PRIORITY)),
            max_retries=int(d.get("max_retries", DEFAULT_MAX_RETRIES)),
            retries=int(d.get("retries") or 0),
            created_at=_parse_ts(d.get("created_at")) or now_utc(),
            scheduled_at=_parse_ts(d.get("scheduled_at")),
            processed_at=_parse_ts(d.get("processed_at")),
            error=str(d.get("error") or ""),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Task:
        return cls.from_dict(json.loads(raw))


TaskOption = Callable[[Task], None]


def with_priority(priority: int) -> TaskOption:
    def _apply(t: Task) -> None:
        t.priority = int(priority)

    return _apply


def with_max_retries(max_retries: int) -> TaskOption:
    def _apply(t: Task) -> None:
        t.max_retries = int(max_retries)

    return _apply


def with_delay(delay: float | timedelta) -> TaskOption:
    """Run no earlier than `delay` (seconds or timedelta) from when the option is applied."""
    td = delay if isinstance(delay, timedelta) else timedelta(seconds=float(delay))

    def _apply(t: Task) -> None:
        t.scheduled_at = now_utc() + td

    return _apply


def with_scheduled_time(scheduled_at: datetime) -> TaskOption:
    def _apply(t: Task) -> None:
        t.scheduled_at = _parse_ts(scheduled_at)

    return _apply


def retry_delay(retries: int, unit_s: float = 60.0) -> timedelta:
    """Quadratic backoff: the n-th retry waits n^2 units."""
    n = max(0, int(retries))
    return timedelta(seconds=float(n * n) * float(unit_s))
