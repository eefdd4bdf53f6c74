from __future__ import annotations

import math


def floor_to_step(value: float, step: float) -> float:
    if step <= 0:
        raise ValueError("step must be > 0")
    return math.floor(value / step) * step


def adjusted_entry(side: str, entry_price: float, slippage_bps: float, fee_bps: float) -> float:
    """Entry worsened by slippage and fees: higher for longs, lower for shorts."""
    cost = (slippage_bps + fee_bps) / 10_000.0
    if side == "LONG":
        return entry_price * (1.0 + cost)
    return entry_price * (1.0 - cost)


def position_size_from_risk(
    *,
    equity: float,
    risk_per_trade: float,
    entry_price: float,
    stop_price: float,
    min_size: float,
    size_step: float,
) -> float:
    """Units risking ``equity * risk_per_trade`` to the stop; 0.0 when the stop distance is zero."""
    risk_distance = abs(entry_price - stop_price)
    if risk_distance <= 0:
        return 0.0
    risk_amount = max(0.0, equity * risk_per_trade)
    sized = floor_to_step(risk_amount / risk_distance, size_step)
    return round(max(min_size, sized), 8)


def r_multiple(side: str, entry_price: float, stop_price: float, current_price: float) -> float:
    risk = abs(entry_price - stop_price)
    if risk == 0:
        return 0.0
    if side == "LONG":
        return (current_price - entry_price) / risk
    return (entry_price - current_price) / risk


def pnl(side: str, entry_price: float, exit_price: float, quantity: float) -> float:
    direction = 1.0 if side == "LONG" else -1.0
    return (exit_price - entry_price) * direction * quantity
