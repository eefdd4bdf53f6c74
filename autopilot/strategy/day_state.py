from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class DailyStateStore(Generic[T]):
    """Per-day strategy state keyed by an ISO date string.

    Records are treated as immutable: callers replace the whole record with
    :meth:`put`. Only the ``max_days`` most recent dates are retained.
    """

    def __init__(self, factory: Callable[[], T], max_days: int = 5):
        self._factory = factory
        self._max_days = max(1, int(max_days))
        self._items: dict[str, T] = {}

    def get(self, day_key: str) -> T:
        state = self._items.get(day_key)
        if state is None:
            state = self._factory()
            self.put(day_key, state)
        return state

    def put(self, day_key: str, state: T) -> None:
        self._items[day_key] = state
        while len(self._items) > self._max_days:
            del self._items[min(self._items)]

    def keys(self) -> list[str]:
        return sorted(self._items)

    def __contains__(self, day_key: object) -> bool:
        return day_key in self._items

    def __len__(self) -> int:
        return len(self._items)
