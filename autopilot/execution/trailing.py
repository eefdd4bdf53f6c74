from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from autopilot.config import ContinuousTrailConfig, PartialCloseConfig
from autopilot.execution.sizing import floor_to_step, r_multiple
from autopilot.storage.models import PositionRecord


@dataclass(slots=True)
class TrailStep:
    """One management action. ``new_stop``/``new_take_profit`` of None leave the level unchanged."""

    stage: str
    new_stop: float | None = None
    close_quantity: float = 0.0
    new_take_profit: float | None = None
    note: str = ""


class TrailPolicy(Protocol):
    def plan(self, position: PositionRecord, price: float, atr_value: float | None) -> list[TrailStep]:
        ...


def tightens(side: str, current_stop: float, candidate: float) -> bool:
    if side == "LONG":
        return candidate > current_stop
    return candidate < current_stop


class PartialClosePolicy:
    """Staged management: bank part at break-even R, more at TP2, then trail by ATR.

    Close sizes are floored to ``quantity_step``; a stage whose share rounds
    to zero is still logged so later stages can run.
    """

    def __init__(self, config: PartialCloseConfig, quantity_step: float | None = None):
        self.config = config
        self.quantity_step = quantity_step

    def close_size(self, quantity: float, fraction: float) -> float:
        size = quantity * fraction
        if self.quantity_step is None:
            return size
        return round(floor_to_step(size, self.quantity_step), 8)

    def plan(self, position: PositionRecord, price: float, atr_value: float | None) -> list[TrailStep]:
        cfg = self.config
        side = position.side
        sign = position.direction
        r_now = r_multiple(side, position.entry_price, position.initial_stop_price, price)
        steps: list[TrailStep] = []
        stop = position.stop_price
        quantity = position.quantity
        tp1_done = position.has_stage("TP1CLOSE")

        if r_now >= cfg.break_even_r and not tp1_done:
            if tightens(side, stop, position.entry_price):
                steps.append(TrailStep(stage="BE", new_stop=position.entry_price, note=f"{r_now:.2f}R"))
                stop = position.entry_price
            close_qty = self.close_size(quantity, cfg.partial_close_fraction)
            note = f"closed {cfg.partial_close_fraction:.0%} at {r_now:.2f}R"
            if close_qty <= 0:
                note = f"{quantity:g} units too small to split at {r_now:.2f}R"
            steps.append(TrailStep(stage="TP1CLOSE", close_quantity=close_qty, note=note))
            quantity -= close_qty
            tp1_done = True

        if r_now >= cfg.tp2_r and tp1_done and not position.has_stage("TP2CLOSE"):
            close_qty = self.close_size(quantity, cfg.tp2_fraction)
            far = position.entry_price * cfg.far_take_profit_factor
            if sign < 0:
                far = position.entry_price / cfg.far_take_profit_factor
            note = f"closed {cfg.tp2_fraction:.0%} of remainder at {r_now:.2f}R"
            if close_qty <= 0:
                note = f"{quantity:g} units too small to split at {r_now:.2f}R"
            steps.append(
                TrailStep(
                    stage="TP2CLOSE",
                    close_quantity=close_qty,
                    new_take_profit=far,
                    note=note,
                )
            )

        if r_now >= cfg.atr_trail_start_r and atr_value is not None and atr_value > 0:
            candidate = price - sign * cfg.atr_multiple * atr_value
            if tightens(side, stop, candidate):
                steps.append(
                    TrailStep(stage="ATR", new_stop=candidate, note=f"{cfg.atr_multiple}xATR {atr_value:.2f}")
                )
        return steps


class ContinuousTrailPolicy:
    """Single trailing stop: the tightest of break-even, R-lock and ATR candidates."""

    def __init__(self, config: ContinuousTrailConfig):
        self.config = config

    def candidates(
        self, position: PositionRecord, price: float, atr_value: float | None
    ) -> list[tuple[str, float]]:
        cfg = self.config
        sign = position.direction
        risk = position.initial_risk
        r_now = r_multiple(position.side, position.entry_price, position.initial_stop_price, price)
        found: list[tuple[str, float]] = []
        if r_now >= cfg.break_even_r:
            found.append(("BE", position.entry_price + sign * cfg.break_even_buffer))
        if r_now >= cfg.lock_r:
            found.append(("LOCK", position.entry_price + sign * cfg.lock_offset_r * risk))
        if r_now >= cfg.atr_start_r and atr_value is not None and atr_value > 0:
            found.append(("ATR", price - sign * cfg.atr_multiple * atr_value))
        return found

    def plan(self, position: PositionRecord, price: float, atr_value: float | None) -> list[TrailStep]:
        found = self.candidates(position, price, atr_value)
        if not found:
            return []
        if position.side == "LONG":
            stage, level = max(found, key=lambda item: item[1])
        else:
            stage, level = min(found, key=lambda item: item[1])
        if not tightens(position.side, position.stop_price, level):
            return []
        return [TrailStep(stage=stage, new_stop=level)]


def build_policy(
    name: str,
    *,
    partial_close: PartialCloseConfig,
    continuous: ContinuousTrailConfig,
    quantity_step: float | None = None,
) -> TrailPolicy:
    if name == "continuous":
        return ContinuousTrailPolicy(continuous)
    return PartialClosePolicy(partial_close, quantity_step=quantity_step)
