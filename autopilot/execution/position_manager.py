from __future__ import annotations

import logging
from datetime import datetime

from autopilot.broker.contracts import BrokerClient, map_instrument
from autopilot.broker.errors import BrokerAPIError
from autopilot.config import AppConfig
from autopilot.data.market_data import MarketDataError
from autopilot.execution.sizing import pnl, r_multiple
from autopilot.execution.trailing import TrailPolicy, TrailStep, build_policy
from autopilot.explain.explainer import Explainer
from autopilot.monitoring.notifier import Notifier
from autopilot.storage.contracts import Store
from autopilot.storage.models import LedgerEntry, PositionClosedError, PositionRecord, StopChange
from autopilot.strategy.contracts import CandleSource
from autopilot.strategy.indicators import atr, latest_value

LOGGER = logging.getLogger(__name__)


class PositionManager:
    def __init__(
        self,
        *,
        config: AppConfig,
        store: Store,
        broker: BrokerClient,
        candles: CandleSource,
        explainer: Explainer,
        notifier: Notifier | None = None,
    ):
        self.config = config
        self.store = store
        self.broker = broker
        self.candles = candles
        self.explainer = explainer
        self.notifier = notifier

    def policy_for(self, position: PositionRecord) -> TrailPolicy:
        trailing = self.config.trailing
        return build_policy(
            position.trail_policy,
            partial_close=trailing.partial_close_for(position.symbol),
            continuous=trailing.continuous_for(position.symbol),
            quantity_step=self.config.risk.quantity_step,
        )

    def _atr_period(self, position: PositionRecord) -> int:
        if position.trail_policy == "continuous":
            return self.config.trailing.continuous.atr_period
        return self.config.trailing.partial_close.atr_period

    def _mid_price(self, symbol: str) -> float | None:
        if not self.broker.supports_pricing():
            return None
        try:
            return self.broker.get_instrument_mid_price(map_instrument(symbol))
        except BrokerAPIError as exc:
            LOGGER.warning("Mid price unavailable for %s: %s", symbol, exc)
            return None

    def price_context(self, position: PositionRecord) -> tuple[float, float, float | None]:
        """(management price, exit-detection price, ATR) for one heartbeat."""
        period = self._atr_period(position)
        try:
            history = self.candles.fetch_ohlcv(position.symbol, position.timeframe, max(50, period * 3))
        except MarketDataError as exc:
            LOGGER.warning("Candles unavailable for %s: %s", position.symbol, exc)
            history = []
        atr_value = latest_value(atr(history, period)) if len(history) > period else None
        mid = self._mid_price(position.symbol)
        price: float | None = history[-1].close if history else None
        if price is None:
            price = mid
        if price is None:
            signals = self.store.get_signals(position.symbol, limit=1)
            price = signals[0].price if signals else position.entry_price
        return price, mid if mid is not None else price, atr_value

    def heartbeat(self, now: datetime) -> list[str]:
        messages: list[str] = []
        for position in self.store.get_open_positions():
            try:
                message = self.manage(position, now)
            except PositionClosedError as exc:
                LOGGER.warning("Skipping closed position %s: %s", position.id, exc)
                continue
            if message:
                messages.append(message)
        return messages

    def manage(self, position: PositionRecord, now: datetime) -> str | None:
        """Apply the trail policy, then close if the live price is through the (updated) stop or target."""
        price, current, atr_value = self.price_context(position)
        managed: str | None = None
        steps = self.policy_for(position).plan(position, price, atr_value)
        if steps:
            notes = [self._apply_step(position, step, price, now) for step in steps]
            self.store.update_position(position)
            managed = f"{position.symbol} {position.id}: " + "; ".join(notes)
            LOGGER.info("Managed %s", managed)
            if self.notifier is not None:
                self.notifier.send(event="POSITION_MANAGED", message=managed)

        exit_level = self._exit_level(position, current)
        if exit_level is None:
            return managed
        level, reason = exit_level
        closed = self.close_position(position, level, reason, now)
        if managed:
            return f"{managed} | {closed}"
        return closed

    @staticmethod
    def _exit_level(position: PositionRecord, price: float) -> tuple[float, str] | None:
        if position.side == "LONG":
            if price <= position.stop_price:
                return position.stop_price, "STOP"
            if price >= position.take_profit_price:
                return position.take_profit_price, "TAKE_PROFIT"
        else:
            if price >= position.stop_price:
                return position.stop_price, "STOP"
            if price <= position.take_profit_price:
                return position.take_profit_price, "TAKE_PROFIT"
        return None

    def _apply_step(self, position: PositionRecord, step: TrailStep, price: float, now: datetime) -> str:
        old_stop = position.stop_price
        if step.close_quantity > 0:
            realized = pnl(position.side, position.entry_price, price, step.close_quantity)
            position.quantity -= step.close_quantity
            position.booked_pnl += realized
            self.store.add_ledger_entry(
                LedgerEntry(ts=now, delta_amount=realized, ref_type="EXIT", ref_id=position.id)
            )
            if position.broker_ref:
                try:
                    self.broker.close_trade_units(position.broker_ref, step.close_quantity)
                except BrokerAPIError as exc:
                    LOGGER.warning("Broker partial close failed for %s: %s", position.id, exc)
        if step.new_stop is not None:
            position.stop_price = step.new_stop
            if position.broker_ref:
                try:
                    self.broker.update_stop_loss(
                        position.broker_ref, step.new_stop, instrument=map_instrument(position.symbol)
                    )
                except BrokerAPIError as exc:
                    LOGGER.warning("Broker stop update failed for %s: %s", position.id, exc)
        if step.new_take_profit is not None:
            position.take_profit_price = step.new_take_profit
        position.stop_change_log.append(
            StopChange(ts=now, old_stop=old_stop, new_stop=position.stop_price, stage=step.stage, note=step.note)
        )
        if step.close_quantity > 0:
            return f"{step.stage} closed {step.close_quantity:g} @ {price:.2f}"
        if step.stage in {"TP1CLOSE", "TP2CLOSE"}:
            return f"{step.stage} {step.note}"
        return f"{step.stage} stop {old_stop:.2f} -> {position.stop_price:.2f}"

    def close_position(self, position: PositionRecord, exit_price: float, reason: str, now: datetime) -> str:
        if not position.is_open:
            raise PositionClosedError(f"position {position.id} is already closed")
        final_leg = pnl(position.side, position.entry_price, exit_price, position.quantity)
        realized = position.booked_pnl + final_leg
        if reason not in {"STOP", "TAKE_PROFIT"} and position.broker_ref:
            try:
                self.broker.close_trade(position.broker_ref)
            except BrokerAPIError as exc:
                LOGGER.warning("Broker close failed for %s: %s", position.id, exc)

        position.status = "CLOSED"
        position.exit_time = now
        position.exit_price = exit_price
        position.realized_pnl = realized
        position.r_multiple = r_multiple(
            position.side, position.entry_price, position.initial_stop_price, exit_price
        )
        self.store.add_ledger_entry(
            LedgerEntry(ts=now, delta_amount=final_leg, ref_type="EXIT", ref_id=position.id)
        )
        self.store.update_position(position)

        if realized < 0:
            analysis = self.explainer.failure_analysis(position, reason)
            self.store.update_explanation(position.id, analysis, now)

        message = (
            f"{position.symbol} {position.id} closed {reason} @ {exit_price:.2f} "
            f"P/L {realized:.2f} ({position.r_multiple:.2f}R)"
        )
        LOGGER.info(message)
        if self.notifier is not None:
            self.notifier.send(
                event="POSITION_CLOSED",
                message=message,
                level="warning" if realized < 0 else "info",
            )
        return message
