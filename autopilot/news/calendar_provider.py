from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Protocol

import requests

from autopilot.clock import parse_hhmm

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Event:
    event_id: str
    title: str
    currency: str
    impact: str
    time: datetime
    source: str = "unknown"


class CalendarProvider(Protocol):
    def get_high_impact_events(self, start_dt: datetime, end_dt: datetime) -> list[Event]:
        ...


def _parse_dt(value: str) -> datetime:
    normalized = value.replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _is_high_impact(event: Event) -> bool:
    return event.impact.upper() in {"HIGH", "3", "HIGH_IMPACT"}


def _event_from_dict(item: dict, index: int, source: str) -> Event | None:
    ts = item.get("time") or item.get("datetime") or item.get("date")
    if ts is None:
        return None
    try:
        return Event(
            event_id=str(item.get("id", index)),
            title=str(item.get("title") or item.get("event") or "Untitled"),
            currency=str(item.get("currency", "USD")).upper(),
            impact=str(item.get("impact") or item.get("importance") or "HIGH"),
            time=_parse_dt(str(ts)),
            source=source,
        )
    except ValueError:
        return None


class SyntheticCalendarProvider:
    """Default calendar: one high-impact USD release every weekday at a fixed UTC time."""

    def __init__(self, release_time_utc: str = "13:30", days: int = 7, currency: str = "USD"):
        self.release_time: time = parse_hhmm(release_time_utc)
        self.days = max(1, int(days))
        self.currency = currency

    def get_high_impact_events(self, start_dt: datetime, end_dt: datetime) -> list[Event]:
        events: list[Event] = []
        first_day = (start_dt - timedelta(days=1)).astimezone(timezone.utc).date()
        for offset in range(self.days + 2):
            day = first_day + timedelta(days=offset)
            if day.weekday() >= 5:
                continue
            when = datetime.combine(day, self.release_time, tzinfo=timezone.utc)
            if start_dt <= when <= end_dt:
                events.append(
                    Event(
                        event_id=f"synthetic-{day.isoformat()}",
                        title="US macro release",
                        currency=self.currency,
                        impact="HIGH",
                        time=when,
                        source="synthetic",
                    )
                )
        return events


class FileCalendarProvider:
    def __init__(self, json_path: str | Path):
        self.json_path = Path(json_path)

    def get_high_impact_events(self, start_dt: datetime, end_dt: datetime) -> list[Event]:
        if not self.json_path.exists():
            raise FileNotFoundError(f"calendar file {self.json_path} not found")
        payload = json.loads(self.json_path.read_text(encoding="utf-8"))
        raw_events = payload.get("events", []) if isinstance(payload, dict) else payload
        events: list[Event] = []
        for index, item in enumerate(raw_events):
            if not isinstance(item, dict):
                continue
            event = _event_from_dict(item, index, "file")
            if event is None:
                continue
            if start_dt <= event.time <= end_dt and _is_high_impact(event):
                events.append(event)
        return sorted(events, key=lambda x: x.time)


class HttpCalendarProvider:
    """
    Generic HTTP calendar provider.

    Expected response: list[dict] or {"events": list[dict]}.
    Fields used (fallback keys supported):
    - time: "time" | "datetime" | "date"
    - impact: "impact" | "importance"
    - currency: "currency"
    - title: "title" | "event"
    """

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_seconds: int = 10,
        cache_ttl_seconds: int = 300,
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache_events: list[Event] = []
        self._cache_expiry: datetime = datetime.min.replace(tzinfo=timezone.utc)

    def get_high_impact_events(self, start_dt: datetime, end_dt: datetime) -> list[Event]:
        now = datetime.now(timezone.utc)
        if now >= self._cache_expiry:
            self._cache_events = self._fetch_events()
            self._cache_expiry = now + timedelta(seconds=self.cache_ttl_seconds)
        return [event for event in self._cache_events if start_dt <= event.time <= end_dt]

    def _fetch_events(self) -> list[Event]:
        headers: dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = requests.get(self.url, headers=headers, timeout=self.timeout_seconds)
        response.raise_for_status()
        payload = response.json()
        raw_events = payload.get("events", payload) if isinstance(payload, dict) else payload
        if not isinstance(raw_events, list):
            return []
        events: list[Event] = []
        for index, item in enumerate(raw_events):
            if not isinstance(item, dict):
                continue
            event = _event_from_dict(item, index, "http")
            if event is not None and _is_high_impact(event):
                events.append(event)
        return sorted(events, key=lambda x: x.time)


def build_calendar_provider(
    *,
    provider_name: str,
    file_path: str | Path,
    http_url: str | None,
    http_token: str | None,
    timeout_seconds: int,
    cache_ttl_seconds: int,
    synthetic_time_utc: str = "13:30",
    synthetic_days: int = 7,
) -> CalendarProvider:
    name = provider_name.lower()
    if name == "http" and http_url:
        LOGGER.info("Using HTTP calendar provider: %s", http_url)
        return HttpCalendarProvider(
            url=http_url,
            token=http_token,
            timeout_seconds=timeout_seconds,
            cache_ttl_seconds=cache_ttl_seconds,
        )
    if name == "file":
        LOGGER.info("Using file calendar provider: %s", file_path)
        return FileCalendarProvider(file_path)
    if name == "http":
        LOGGER.warning("HTTP calendar selected without a URL; using synthetic calendar")
    LOGGER.info("Using synthetic calendar provider (%s UTC)", synthetic_time_utc)
    return SyntheticCalendarProvider(release_time_utc=synthetic_time_utc, days=synthetic_days)
