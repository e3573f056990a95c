"""Event time windows: when an event is active and when its storage lapses.

All comparisons happen on timezone-aware UTC instants. Stored instants are
naive UTC (database convention); raw values from clients or legacy documents
may also arrive as ISO strings or ``{"_seconds": ...}`` wrappers, and are
funnelled through :func:`normalize_instant`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from eventlens.services.plan_schema import load_custom_plan

DEFAULT_END_TIME = "23:59"
MAX_EVENT_DURATION = timedelta(hours=24)

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_instant(raw: Any) -> Optional[datetime]:
    """Return ``raw`` as an aware UTC datetime, or None for empty input.

    Accepts datetimes (naive ones are taken as UTC), dates, ISO-8601 strings,
    epoch seconds and timestamp wrappers such as ``{"_seconds": 1700000000,
    "_nanoseconds": 0}``. Anything else raises ValueError.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=timezone.utc)
        return raw.astimezone(timezone.utc)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
    if isinstance(raw, bool):
        raise ValueError(f"Unrecognised instant: {raw!r}")
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Unrecognised instant: {raw!r}") from e
        return normalize_instant(parsed)
    if isinstance(raw, dict):
        seconds = raw.get("_seconds", raw.get("seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            nanos = raw.get("_nanoseconds", raw.get("nanoseconds")) or 0
            return datetime.fromtimestamp(float(seconds) + float(nanos) / 1e9, tz=timezone.utc)
    raise ValueError(f"Unrecognised instant: {raw!r}")


def parse_hhmm(value: Any) -> Tuple[int, int]:
    match = _HHMM.match(str(value or "").strip())
    if not match:
        raise ValueError(f"Invalid time {value!r} (expected HH:MM)")
    return int(match.group(1)), int(match.group(2))


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone {name!r}") from e


def calendar_date(raw: Any) -> date:
    """Calendar day named by ``raw``.

    Plain ``YYYY-MM-DD`` strings and dates are taken literally; full instants
    contribute their UTC date.
    """
    if isinstance(raw, date) and not isinstance(raw, datetime):
        return raw
    if isinstance(raw, str) and _DATE_ONLY.match(raw.strip()):
        return date.fromisoformat(raw.strip())
    instant = normalize_instant(raw)
    if instant is None:
        raise ValueError("Missing event date")
    return instant.date()


@dataclass(frozen=True)
class EventWindow:
    start: datetime  # aware, in the event's zone
    end: datetime
    overnight: bool

    @property
    def duration(self) -> timedelta:
        # Nominal (wall-clock) length; unaffected by DST shifts inside the window
        return self.end.replace(tzinfo=None) - self.start.replace(tzinfo=None)


def compute_event_window(event_date: Any, start_time: Any, end_time: Any, tz_name: Optional[str]) -> EventWindow:
    """Combine an event day with its start/end times in the event's zone.

    An end time at or before the start time means the event runs past
    midnight, so the end moves to the following day. Raises ValueError for
    malformed input or a window longer than 24 hours.
    """
    zone = resolve_zone(tz_name)
    day = calendar_date(event_date)
    sh, sm = parse_hhmm(start_time)
    eh, em = parse_hhmm(end_time)
    start = datetime.combine(day, time(sh, sm), tzinfo=zone)
    end = datetime.combine(day, time(eh, em), tzinfo=zone)
    overnight = (eh, em) <= (sh, sm)
    if overnight:
        end = datetime.combine(day + timedelta(days=1), time(eh, em), tzinfo=zone)
    window = EventWindow(start=start, end=end, overnight=overnight)
    if window.duration > MAX_EVENT_DURATION:
        raise ValueError("Event end time cannot be more than 24 hours after start time")
    return window


def _field(event: Any, *names: str) -> Any:
    for name in names:
        if isinstance(event, dict):
            if name in event:
                return event[name]
        elif hasattr(event, name):
            return getattr(event, name)
    return None


def _optional_hhmm(value: Any) -> Optional[Tuple[int, int]]:
    if not value or not _HHMM.match(str(value).strip()):
        return None
    return parse_hhmm(value)


def _is_plain_date(raw: Any) -> bool:
    if isinstance(raw, datetime):
        return False
    if isinstance(raw, date):
        return True
    return isinstance(raw, str) and bool(_DATE_ONLY.match(raw.strip()))


def local_event_start(raw_date: Any, zone: ZoneInfo) -> datetime:
    """Start of the event day in ``zone``.

    Plain dates name the local calendar day; instants are converted into the
    zone first.
    """
    if _is_plain_date(raw_date):
        return datetime.combine(calendar_date(raw_date), time(0, 0), tzinfo=zone)
    return normalize_instant(raw_date).astimezone(zone)  # type: ignore[union-attr]


def event_end_instant(event: Any) -> Optional[datetime]:
    """End of the event as an aware UTC instant.

    Prefers the precomputed end; otherwise composes the event day with its
    end time (default 23:59) in the event's zone. An end at or before the
    start time rolls over to the next day.
    """
    precomputed = normalize_instant(_field(event, "EventEndDate", "eventEndDate"))
    if precomputed is not None:
        return precomputed
    raw_date = _field(event, "EventDate", "eventDate")
    if raw_date in (None, ""):
        return None
    zone = resolve_zone(_field(event, "TimeZone", "timeZone"))
    end_raw = _field(event, "EventEndTime", "eventEndTime") or DEFAULT_END_TIME
    try:
        hours, minutes = parse_hhmm(end_raw)
    except ValueError:
        hours, minutes = parse_hhmm(DEFAULT_END_TIME)
    local_day = local_event_start(raw_date, zone).date()
    start_hm = _optional_hhmm(_field(event, "EventStartTime", "eventStartTime"))
    if start_hm is not None and (hours, minutes) <= start_hm:
        local_day += timedelta(days=1)
    end = datetime.combine(local_day, time(hours, minutes), tzinfo=zone)
    return end.astimezone(timezone.utc)


def is_event_active(event: Any, now: Optional[datetime] = None) -> bool:
    end = event_end_instant(event)
    if end is None:
        return True
    current = normalize_instant(now) if now is not None else utcnow()
    return current <= end  # type: ignore[operator]


def storage_days_of(event: Any) -> Optional[int]:
    custom = _field(event, "CustomPlan", "customPlan")
    days = load_custom_plan(custom).get("storageDays") if custom is not None else None
    if isinstance(days, bool) or not isinstance(days, (int, float)):
        return None
    return int(days)


def storage_expiry_instant(event: Any) -> Optional[datetime]:
    """Event date plus the retention window, counted in calendar days locally."""
    raw_date = _field(event, "EventDate", "eventDate")
    days = storage_days_of(event)
    if raw_date in (None, "") or days is None:
        return None
    zone = resolve_zone(_field(event, "TimeZone", "timeZone"))
    local = local_event_start(raw_date, zone)
    # Aware + timedelta keeps the wall clock, so DST changes do not shift the hour
    return (local + timedelta(days=days)).astimezone(timezone.utc)


def is_storage_expired(event: Any, now: Optional[datetime] = None) -> bool:
    expiry = storage_expiry_instant(event)
    if expiry is None:
        return False
    current = normalize_instant(now) if now is not None else utcnow()
    return current > expiry  # type: ignore[operator]
