"""Shared utilities."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

import orjson

_WORD_RE = re.compile(r"[a-z0-9']+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_dumps(obj: Any, indent: bool = False) -> bytes:
    option = orjson.OPT_SERIALIZE_NUMPY
    if indent:
        option |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, option=option)


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def iso_str(dt: datetime) -> str:
    return dt.isoformat()


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(s: str) -> datetime:
    s = s.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(s))


def to_datetime(raw: datetime | str | float | int | None) -> datetime:
    """Coerce a datetime, ISO string or epoch seconds to an aware UTC datetime."""
    if raw is None:
        return utcnow()
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    return parse_iso(raw)


def age_days(ts: datetime, now: datetime | None = None) -> float:
    now = ensure_utc(now) if now is not None else utcnow()
    return (now - ensure_utc(ts)).total_seconds() / 86400.0


def day_key(ts: datetime) -> str:
    return ensure_utc(ts).strftime("%Y-%m-%d")


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall((text or "").lower())
