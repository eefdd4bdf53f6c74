from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from autopilot.data.candles import Candle


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1


@dataclass(slots=True)
class Signal:
    side: Side
    entry: float
    stop: float
    take_profit: float
    reason: str
    strategy_name: str
    bar_time: int

    @property
    def risk_reward_ratio(self) -> float:
        risk = abs(self.entry - self.stop)
        if risk <= 0:
            return 0.0
        return abs(self.take_profit - self.entry) / risk


@dataclass(slots=True)
class Evaluation:
    signal: Signal | None
    reasons: list[str] = field(default_factory=list)

    def skip(self, reason: str) -> "Evaluation":
        self.reasons.append(reason)
        return self


@dataclass(slots=True)
class ScanResult:
    bot_id: str
    symbol: str
    signals: list[Signal] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TradeIntent:
    side: Side
    entry_price: float
    stop_price: float
    take_profit_price: float
    reason: str
    strategy_type: str
    slippage_bps: float
    fee_bps: float
    risk_reward_ratio: float
    timeframe: str
    bar_time: int

    def __post_init__(self) -> None:
        for name in ("entry_price", "stop_price", "take_profit_price"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a finite positive price, got {value}")
        direction = self.side.sign
        if (self.entry_price - self.stop_price) * direction <= 0:
            raise ValueError(f"stop {self.stop_price} is not on the losing side of entry {self.entry_price}")
        if (self.take_profit_price - self.entry_price) * direction <= 0:
            raise ValueError(
                f"take profit {self.take_profit_price} is not on the winning side of entry {self.entry_price}"
            )
        if self.slippage_bps < 0 or self.fee_bps < 0:
            raise ValueError("slippage_bps and fee_bps must be >= 0")

    @classmethod
    def from_signal(
        cls,
        signal: Signal,
        *,
        slippage_bps: float,
        fee_bps: float,
        timeframe: str,
    ) -> "TradeIntent":
        return cls(
            side=signal.side,
            entry_price=float(signal.entry),
            stop_price=float(signal.stop),
            take_profit_price=float(signal.take_profit),
            reason=signal.reason,
            strategy_type=signal.strategy_name,
            slippage_bps=float(slippage_bps),
            fee_bps=float(fee_bps),
            risk_reward_ratio=signal.risk_reward_ratio,
            timeframe=timeframe,
            bar_time=signal.bar_time,
        )


class CandleSource(Protocol):
    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        ...


class Strategy(Protocol):
    bot_id: str
    strategy_name: str
    symbol: str
    timeframe: str

    def is_enabled(self) -> bool:
        ...

    def is_window_open(self, now: datetime) -> bool:
        ...

    def next_window_open(self, now: datetime) -> datetime | None:
        ...

    def scan(self, now: datetime) -> ScanResult:
        ...

    def select_signals(self, signals: list[Signal]) -> tuple[list[TradeIntent], list[str]]:
        ...
