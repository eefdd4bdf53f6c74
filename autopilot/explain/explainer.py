from __future__ import annotations

from typing import Protocol

from autopilot.storage.models import PositionRecord
from autopilot.strategy.contracts import TradeIntent


class Explainer(Protocol):
    def entry_text(self, symbol: str, intent: TradeIntent, quantity: float) -> str:
        ...

    def beginner_text(self, symbol: str, intent: TradeIntent) -> str:
        ...

    def failure_analysis(self, position: PositionRecord, exit_reason: str) -> str:
        ...


class TemplateExplainer:
    """Plain-text narratives built from the trade itself; no external service."""

    def entry_text(self, symbol: str, intent: TradeIntent, quantity: float) -> str:
        risk = abs(intent.entry_price - intent.stop_price)
        return (
            f"{intent.strategy_type} opened {intent.side.value} {quantity:g} {symbol} at "
            f"{intent.entry_price:.2f}. Stop {intent.stop_price:.2f} ({risk:.2f} risk), "
            f"target {intent.take_profit_price:.2f} (R:R {intent.risk_reward_ratio:.2f}). "
            f"Setup: {intent.reason}"
        )

    def beginner_text(self, symbol: str, intent: TradeIntent) -> str:
        direction = "rise" if intent.side.value == "LONG" else "fall"
        return (
            f"The bot expects {symbol} to {direction}. If price reaches {intent.take_profit_price:.2f} "
            f"the trade takes profit; if it reaches {intent.stop_price:.2f} the trade closes with a "
            f"small, pre-planned loss. The potential gain is about {intent.risk_reward_ratio:.1f} "
            "times the risk."
        )

    def failure_analysis(self, position: PositionRecord, exit_reason: str) -> str:
        notes: list[str] = [f"Closed by {exit_reason} at {position.exit_price}."]
        if position.r_multiple is not None:
            notes.append(f"Result {position.r_multiple:.2f}R.")
        if not position.stop_change_log:
            notes.append("Price never reached the break-even threshold, so the initial stop was hit.")
        elif position.has_stage("BE"):
            notes.append("The trade moved into profit but reversed after the stop was trailed.")
        if position.booked_pnl > 0:
            notes.append(f"Partial profits of {position.booked_pnl:.2f} were booked before the exit.")
        return " ".join(notes)
