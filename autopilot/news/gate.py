from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import requests

from autopilot.news.calendar_provider import CalendarProvider, Event, SyntheticCalendarProvider

LOGGER = logging.getLogger(__name__)


def blocking_events(now: datetime, events: list[Event], block_minutes: int) -> list[Event]:
    window = timedelta(minutes=block_minutes)
    return [event for event in events if abs(event.time - now) <= window]


def is_blocked(now: datetime, events: list[Event], block_minutes: int = 15) -> bool:
    return len(blocking_events(now, events, block_minutes)) > 0


@dataclass(slots=True)
class NewsCheck:
    blocked: bool
    reason: str = ""
    events: list[Event] | None = None


class NewsLock:
    """Blocks entries within ``lock_minutes`` of a high-impact event in the symbol's currencies."""

    def __init__(
        self,
        provider: CalendarProvider,
        *,
        lock_minutes: int = 15,
        symbol_currencies: dict[str, list[str]] | None = None,
        fallback: CalendarProvider | None = None,
    ):
        self.provider = provider
        self.lock_minutes = lock_minutes
        self.symbol_currencies = symbol_currencies or {}
        self.fallback = fallback or SyntheticCalendarProvider()

    def currencies_for(self, symbol: str) -> set[str]:
        configured = self.symbol_currencies.get(symbol.upper())
        if configured:
            return set(configured)
        raw = symbol.upper().split(":")[-1].replace("_", "")
        if len(raw) == 6 and raw.isalpha():
            return {raw[:3], raw[3:]}
        return {"USD"}

    def _events(self, start: datetime, end: datetime) -> list[Event]:
        try:
            return self.provider.get_high_impact_events(start, end)
        except (requests.RequestException, OSError, ValueError) as exc:
            LOGGER.warning("Calendar unavailable, using synthetic calendar: %s", exc)
            return self.fallback.get_high_impact_events(start, end)

    def check(self, symbol: str, now: datetime) -> NewsCheck:
        if self.lock_minutes <= 0:
            return NewsCheck(blocked=False)
        window = timedelta(minutes=self.lock_minutes)
        currencies = self.currencies_for(symbol)
        events = [event for event in self._events(now - window, now + window) if event.currency in currencies]
        hits = blocking_events(now, events, self.lock_minutes)
        if not hits:
            return NewsCheck(blocked=False)
        first = hits[0]
        return NewsCheck(
            blocked=True,
            reason=f"news lock: {first.title} ({first.currency}) at {first.time:%H:%M}Z",
            events=hits,
        )
