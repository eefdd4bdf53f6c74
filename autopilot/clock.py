from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

NY_OPEN_MINUTE = 30
LONDON_TZ = "Europe/London"


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    return ensure_utc(dt).astimezone(_get_zone(timezone_name))


def trading_day(dt: datetime, timezone_name: str = "UTC") -> date:
    return to_timezone(dt, timezone_name).date()


def london_date_key(dt: datetime) -> str:
    return trading_day(dt, LONDON_TZ).isoformat()


def timeframe_to_minutes(timeframe: str) -> int:
    normalized = timeframe.strip().upper()
    mapping = {
        "M1": 1,
        "M5": 5,
        "M15": 15,
        "M30": 30,
        "H1": 60,
        "H4": 240,
        "D1": 1440,
    }
    if normalized not in mapping:
        raise ValueError(f"Unsupported timeframe {timeframe}")
    return mapping[normalized]


def parse_hhmm(raw: str) -> time:
    hour_raw, minute_raw = str(raw).strip().split(":", 1)
    return time(hour=int(hour_raw), minute=int(minute_raw))


def _first_sunday(year: int, month: int) -> date:
    first = date(year, month, 1)
    return first + timedelta(days=(6 - first.weekday()) % 7)


def is_us_dst(day: date) -> bool:
    """US daylight time: second Sunday of March up to the first Sunday of November."""
    dst_start = _first_sunday(day.year, 3) + timedelta(days=7)
    dst_end = _first_sunday(day.year, 11)
    return dst_start <= day < dst_end


def ny_open_utc(day: date) -> datetime:
    hour = 13 if is_us_dst(day) else 14
    return datetime(day.year, day.month, day.day, hour, NY_OPEN_MINUTE, tzinfo=timezone.utc)


def interval_bucket(now: datetime, interval_minutes: int) -> tuple[str, int, int]:
    current = ensure_utc(now)
    return current.date().isoformat(), current.hour, current.minute // max(1, interval_minutes)


def is_session_open(
    now: datetime,
    *,
    timezone_name: str,
    start: str,
    end: str,
    weekdays_only: bool = True,
    end_inclusive: bool = False,
) -> bool:
    """True inside [start, end) local time; [start, end] with ``end_inclusive``, to the minute."""
    local = to_timezone(now, timezone_name)
    if weekdays_only and local.weekday() >= 5:
        return False
    current = local.time().replace(tzinfo=None)
    if end_inclusive:
        return parse_hhmm(start) <= current.replace(second=0, microsecond=0) <= parse_hhmm(end)
    return parse_hhmm(start) <= current < parse_hhmm(end)


def next_session_start(
    now: datetime,
    *,
    timezone_name: str,
    start: str,
    weekdays_only: bool = True,
    horizon_days: int = 8,
) -> datetime | None:
    zone = _get_zone(timezone_name)
    local_now = to_timezone(now, timezone_name)
    start_time = parse_hhmm(start)
    for offset in range(horizon_days):
        day = local_now.date() + timedelta(days=offset)
        if weekdays_only and day.weekday() >= 5:
            continue
        candidate = datetime.combine(day, start_time, tzinfo=zone)
        if candidate > local_now:
            return candidate.astimezone(timezone.utc)
    return None
