"""Temporal reasoning: day-bucket index and natural-language time filters."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from recallspine.types import TemporalFilter
from recallspine.utils import age_days, day_key, ensure_utc, utcnow

# Relative phrase -> day offset from now.
RELATIVE_PATTERNS: dict[str, float] = {
    "last week": -7,
    "last month": -30,
    "last year": -365,
    "recently": -7,
    "yesterday": -1,
    "last time": -1,
    "earlier today": -0.5,
    "this morning": -0.25,
    "before the meeting": -0.1,
    "two days ago": -2,
    "a few days ago": -3,
    "today": 0,
}

_RELATIVE_RES = [
    (phrase, offset, re.compile(rf"\b{re.escape(phrase)}\b"))
    for phrase, offset in sorted(RELATIVE_PATTERNS.items(), key=lambda kv: -len(kv[0]))
]

_MONTHS = {
    name: i
    for i, names in enumerate(
        [
            ("january", "jan"), ("february", "feb"), ("march", "mar"), ("april", "apr"),
            ("may",), ("june", "jun"), ("july", "jul"), ("august", "aug"),
            ("september", "sep", "sept"), ("october", "oct"), ("november", "nov"),
            ("december", "dec"),
        ],
        start=1,
    )
    for name in names
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

_US_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_MONTH_FIRST_RE = re.compile(rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b")
_DAY_FIRST_RE = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_ALT})\.?,?\s+(\d{{4}})\b")


def _safe_date(year: int, month: int, day: int) -> datetime | None:
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_absolute(text: str) -> tuple[str, datetime] | None:
    lower = text.lower()
    m = _US_DATE_RE.search(lower)
    if m:
        target = _safe_date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
        if target:
            return m.group(0), target
    m = _ISO_DATE_RE.search(lower)
    if m:
        target = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if target:
            return m.group(0), target
    m = _MONTH_FIRST_RE.search(lower)
    if m:
        target = _safe_date(int(m.group(3)), _MONTHS[m.group(1)], int(m.group(2)))
        if target:
            return m.group(0), target
    m = _DAY_FIRST_RE.search(lower)
    if m:
        target = _safe_date(int(m.group(3)), _MONTHS[m.group(2)], int(m.group(1)))
        if target:
            return m.group(0), target
    return None


def parse_temporal_reference(text: str, now: datetime | None = None) -> TemporalFilter | None:
    """Recognise a relative or absolute time reference in *text*.

    Relative phrases win over absolute dates, and longer phrases are tried
    first so "earlier today" is not read as "today".
    """
    if not text:
        return None
    now = ensure_utc(now) if now is not None else utcnow()
    lower = text.lower()
    for phrase, offset, pattern in _RELATIVE_RES:
        if pattern.search(lower):
            return TemporalFilter(
                type="relative",
                pattern=phrase,
                days_offset=offset,
                target_date=now + timedelta(days=offset),
            )
    absolute = _parse_absolute(text)
    if absolute:
        pattern, target = absolute
        return TemporalFilter(type="absolute", pattern=pattern, target_date=target)
    return None


def matches_temporal_filter(
    timestamp: datetime,
    temporal_filter: TemporalFilter | None,
    now: datetime | None = None,
    tolerance_days: float = 1.0,
) -> bool:
    """True when *timestamp* falls within the filter's ±tolerance window."""
    if temporal_filter is None:
        return True
    if temporal_filter.type == "relative":
        offset = abs(temporal_filter.days_offset or 0.0)
        return abs(age_days(timestamp, now) - offset) <= tolerance_days
    if temporal_filter.type == "absolute":
        delta = ensure_utc(timestamp) - ensure_utc(temporal_filter.target_date)
        return abs(delta.total_seconds()) / 86400.0 <= tolerance_days
    return True


class TemporalIndex:
    """Day key (UTC ``YYYY-MM-DD``) -> ids of memories created that day."""

    def __init__(self, buckets: dict[str, list[str]] | None = None) -> None:
        self._buckets: dict[str, list[str]] = {
            k: list(v) for k, v in (buckets or {}).items()
        }

    def add(self, memory_id: str, timestamp: datetime) -> str:
        key = day_key(timestamp)
        ids = self._buckets.setdefault(key, [])
        if memory_id not in ids:
            ids.append(memory_id)
        return key

    def discard(self, memory_id: str, timestamp: datetime) -> None:
        key = day_key(timestamp)
        ids = self._buckets.get(key)
        if not ids:
            return
        if memory_id in ids:
            ids.remove(memory_id)
        if not ids:
            del self._buckets[key]

    def ids_for_day(self, day: datetime | str) -> list[str]:
        key = day if isinstance(day, str) else day_key(day)
        return list(self._buckets.get(key, []))

    def ids_between(self, start: datetime, end: datetime) -> list[str]:
        """Ids from every day bucket in ``[start, end]`` (inclusive, by day)."""
        lo, hi = day_key(start), day_key(end)
        out: list[str] = []
        for key in sorted(self._buckets):
            if lo <= key <= hi:
                out.extend(self._buckets[key])
        return out

    def days(self) -> list[str]:
        return sorted(self._buckets)

    def __len__(self) -> int:
        return sum(len(v) for v in self._buckets.values())

    def to_dict(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._buckets.items()}
