from __future__ import annotations

from autopilot.config import AppConfig
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import CandleSource
from autopilot.strategy.fixed_orb_fvg_lvn import FixedOrbFvgLvnBot
from autopilot.strategy.london_continuation import LondonContinuationBot
from autopilot.strategy.london_sweep import LondonSweepBot
from autopilot.strategy.orb import OrbBot
from autopilot.strategy.trend_pullback import TrendPullbackBot
from autopilot.strategy.vwap_reversion import VwapReversionBot

BOT_CLASSES: dict[str, type[StrategyBot]] = {
    "orb": OrbBot,
    "fixed_orb_fvg_lvn": FixedOrbFvgLvnBot,
    "london_sweep": LondonSweepBot,
    "london_continuation": LondonContinuationBot,
    "trend_pullback": TrendPullbackBot,
    "vwap_reversion": VwapReversionBot,
}


def build_bots(config: AppConfig, candles: CandleSource) -> list[StrategyBot]:
    return [
        BOT_CLASSES[bot.kind](bot, candles, enabled_bots=config.enabled_bots)
        for bot in config.bots
    ]
