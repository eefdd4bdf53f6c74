from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from autopilot.broker.contracts import BrokerClient, map_instrument
from autopilot.broker.errors import BrokerAPIError
from autopilot.config import AppConfig, BotConfig
from autopilot.execution.sizing import adjusted_entry, position_size_from_risk
from autopilot.explain.explainer import Explainer
from autopilot.monitoring.notifier import Notifier
from autopilot.storage.contracts import Store
from autopilot.storage.models import Explanation, LedgerEntry, PositionRecord
from autopilot.strategy.contracts import TradeIntent

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionResult:
    position: PositionRecord | None
    message: str

    @property
    def placed(self) -> bool:
        return self.position is not None


def new_position_id() -> str:
    return f"POS-{uuid.uuid4().hex[:12]}"


class TradeExecutor:
    """Sizes an approved intent, sends the market order and records the open position."""

    def __init__(
        self,
        *,
        config: AppConfig,
        broker: BrokerClient,
        store: Store,
        explainer: Explainer,
        notifier: Notifier | None = None,
    ):
        self.config = config
        self.broker = broker
        self.store = store
        self.explainer = explainer
        self.notifier = notifier

    def equity(self) -> float:
        return self.config.risk.base_account + self.store.latest_ledger_balance()

    def execute(
        self,
        bot: BotConfig,
        intent: TradeIntent,
        now: datetime,
        *,
        risk_multiplier: float = 1.0,
    ) -> ExecutionResult:
        side = intent.side.value
        entry = adjusted_entry(side, intent.entry_price, intent.slippage_bps, intent.fee_bps)
        risk_pct = (bot.risk_percent or self.config.risk.risk_pct) * risk_multiplier
        quantity = position_size_from_risk(
            equity=self.equity(),
            risk_per_trade=risk_pct,
            entry_price=entry,
            stop_price=intent.stop_price,
            min_size=self.config.risk.min_quantity,
            size_step=self.config.risk.quantity_step,
        )
        if quantity <= 0:
            return ExecutionResult(None, f"[{bot.id}] rejected: zero risk distance")

        tag = f"{self.config.broker.order_tag_prefix}-{bot.id}"
        units = quantity if side == "LONG" else -quantity
        try:
            order = self.broker.place_market_order(
                map_instrument(bot.symbol),
                units,
                intent.stop_price,
                intent.take_profit_price,
                client_tag=tag,
            )
        except BrokerAPIError as exc:
            LOGGER.warning("Order failed bot=%s symbol=%s side=%s: %s", bot.id, bot.symbol, side, exc)
            return ExecutionResult(None, f"[{bot.id}] order failed: {exc}")
        if order.fill_price is not None and order.fill_price > 0:
            entry = order.fill_price

        position = PositionRecord(
            id=new_position_id(),
            status="OPEN",
            side=side,
            symbol=bot.symbol,
            entry_time=now,
            entry_price=entry,
            quantity=quantity,
            stop_price=intent.stop_price,
            initial_stop_price=intent.stop_price,
            take_profit_price=intent.take_profit_price,
            strategy_id=bot.id,
            method_name=intent.strategy_type,
            timeframe=intent.timeframe,
            trail_policy=self.config.trail_policy_for(bot),
            slippage_bps=intent.slippage_bps,
            fee_bps=intent.fee_bps,
            broker_ref=order.order_ref,
        )
        self.store.add_position(position)

        fee = entry * quantity * intent.fee_bps / 10_000.0
        if fee > 0:
            self.store.add_ledger_entry(
                LedgerEntry(ts=now, delta_amount=-fee, ref_type="FEE", ref_id=position.id)
            )

        self.store.add_explanation(
            Explanation(
                position_id=position.id,
                entry_text=self.explainer.entry_text(bot.symbol, intent, quantity),
                beginner_text=self.explainer.beginner_text(bot.symbol, intent),
                updated_at=now,
            )
        )
        message = (
            f"[{bot.id}] opened {side} {quantity:g} {bot.symbol} @ {entry:.2f} "
            f"SL {intent.stop_price:.2f} TP {intent.take_profit_price:.2f}"
        )
        LOGGER.info("%s ref=%s", message, order.order_ref)
        if self.notifier is not None:
            self.notifier.send(
                event="POSITION_OPENED",
                message=message,
                context={"position": position.id, "reason": intent.reason},
            )
        return ExecutionResult(position, message)
