from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from autopilot.clock import parse_hhmm, timeframe_to_minutes

BOT_KINDS = {
    "orb",
    "fixed_orb_fvg_lvn",
    "london_sweep",
    "london_continuation",
    "trend_pullback",
    "vwap_reversion",
}
TRAIL_POLICIES = {"partial_close", "continuous"}


class ConfigError(RuntimeError):
    """Unrecoverable startup misconfiguration."""


class SessionWindowConfig(BaseModel):
    timezone: str = "UTC"
    start: str = "00:00"
    end: str = "23:59"
    weekdays_only: bool = True
    end_inclusive: bool = False

    @model_validator(mode="after")
    def validate_times(self) -> "SessionWindowConfig":
        start = parse_hhmm(self.start)
        end = parse_hhmm(self.end)
        if start >= end:
            raise ValueError("window.start must be earlier than window.end")
        return self


class BotConfig(BaseModel):
    id: str
    kind: str
    symbol: str
    timeframe: str = "M15"
    enabled: bool = True
    candle_count: int = 150
    min_rr: float = 1.0
    slippage_bps: float = 5.0
    fee_bps: float = 10.0
    risk_percent: float | None = None
    take_profit_r: float | None = None
    trail_policy: str | None = None
    daily_cap: int | None = None
    window: SessionWindowConfig | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def normalize(self) -> "BotConfig":
        self.id = str(self.id).strip()
        if not self.id:
            raise ValueError("bot id must not be empty")
        self.kind = str(self.kind).strip().lower()
        if self.kind not in BOT_KINDS:
            raise ValueError(f"bot '{self.id}' has unknown kind '{self.kind}'")
        self.symbol = str(self.symbol).strip().upper()
        self.timeframe = str(self.timeframe).strip().upper()
        timeframe_to_minutes(self.timeframe)
        if self.candle_count < 20:
            raise ValueError(f"bot '{self.id}' candle_count must be >= 20")
        if self.min_rr < 0:
            raise ValueError(f"bot '{self.id}' min_rr must be >= 0")
        if self.slippage_bps < 0 or self.fee_bps < 0:
            raise ValueError(f"bot '{self.id}' slippage_bps/fee_bps must be >= 0")
        if self.risk_percent is not None and not (0 < self.risk_percent < 1):
            raise ValueError(f"bot '{self.id}' risk_percent must be in (0, 1)")
        if self.trail_policy is not None:
            self.trail_policy = str(self.trail_policy).strip().lower()
            if self.trail_policy not in TRAIL_POLICIES:
                raise ValueError(f"bot '{self.id}' trail_policy must be one of {sorted(TRAIL_POLICIES)}")
        if self.daily_cap is not None and self.daily_cap < 0:
            raise ValueError(f"bot '{self.id}' daily_cap must be >= 0")
        return self


def _default_bots() -> list[BotConfig]:
    return [
        BotConfig(
            id="fixed_orb_fvg_lvn_xau",
            kind="fixed_orb_fvg_lvn",
            symbol="XAUUSD",
            timeframe="M15",
            candle_count=150,
            trail_policy="partial_close",
        ),
        BotConfig(
            id="fixed_orb_fvg_lvn_nas",
            kind="fixed_orb_fvg_lvn",
            symbol="NAS100",
            timeframe="M15",
            candle_count=150,
            trail_policy="partial_close",
        ),
        BotConfig(
            id="orb",
            kind="orb",
            symbol="NAS100",
            timeframe="M15",
            window=SessionWindowConfig(timezone="UTC", start="12:15", end="20:00"),
            trail_policy="continuous",
        ),
        BotConfig(
            id="vwap_reversion",
            kind="vwap_reversion",
            symbol="XAUUSD",
            timeframe="M15",
            window=SessionWindowConfig(timezone="UTC", start="14:00", end="17:00"),
            trail_policy="continuous",
        ),
        BotConfig(
            id="trend_pullback",
            kind="trend_pullback",
            symbol="XAUUSD",
            timeframe="M15",
            window=SessionWindowConfig(timezone="UTC", start="12:00", end="20:00"),
            trail_policy="continuous",
        ),
        BotConfig(
            id="london_sweep_xau",
            kind="london_sweep",
            symbol="XAUUSD",
            timeframe="M5",
            candle_count=200,
            window=SessionWindowConfig(timezone="Europe/London", start="06:45", end="09:00", end_inclusive=True),
            trail_policy="partial_close",
        ),
        BotConfig(
            id="london_continuation_xau",
            kind="london_continuation",
            symbol="XAUUSD",
            timeframe="M5",
            candle_count=200,
            window=SessionWindowConfig(timezone="Europe/London", start="08:30", end="11:00", end_inclusive=True),
            trail_policy="partial_close",
        ),
    ]


class SchedulerConfig(BaseModel):
    enabled: bool = True
    scan_interval_minutes: int = 2
    heartbeat_seconds: int = 60
    min_sleep_seconds: int = 30
    max_messages: int = 50

    @model_validator(mode="after")
    def validate_values(self) -> "SchedulerConfig":
        if not (1 <= self.scan_interval_minutes <= 60):
            raise ValueError("scheduler.scan_interval_minutes must be in [1, 60]")
        if self.heartbeat_seconds <= 0:
            raise ValueError("scheduler.heartbeat_seconds must be > 0")
        if self.min_sleep_seconds <= 0:
            raise ValueError("scheduler.min_sleep_seconds must be > 0")
        if self.max_messages <= 0:
            raise ValueError("scheduler.max_messages must be > 0")
        return self


class RiskConfig(BaseModel):
    base_account: float = 250.0
    risk_pct: float = 0.02
    min_quantity: float = 1.0
    quantity_step: float = 1.0
    volatility_filter_enabled: bool = True
    atr_pct_min: float = 0.25
    atr_pct_max: float = 1.0
    atr_period: int = 14
    spread_filter_enabled: bool = True
    spread_filter_mult: float = 1.2
    spread_sample_count: int = 20
    spread_granularity: str = "M1"
    news_lock_minutes: int = 15
    block_duplicate_symbol_side: bool = True
    max_trades_per_symbol_side_per_day: int = 2
    max_trades_per_day: int | None = None
    single_open_position: bool = False

    @model_validator(mode="after")
    def validate_values(self) -> "RiskConfig":
        if self.base_account < 0:
            raise ValueError("risk.base_account must be >= 0")
        if not (0 < self.risk_pct < 1):
            raise ValueError("risk.risk_pct must be in (0, 1)")
        if self.min_quantity <= 0:
            raise ValueError("risk.min_quantity must be > 0")
        if self.quantity_step <= 0:
            raise ValueError("risk.quantity_step must be > 0")
        if self.atr_pct_min < 0 or self.atr_pct_max <= self.atr_pct_min:
            raise ValueError("risk.atr_pct_min must be >= 0 and < risk.atr_pct_max")
        if self.spread_filter_mult <= 0:
            raise ValueError("risk.spread_filter_mult must be > 0")
        if self.news_lock_minutes < 0:
            raise ValueError("risk.news_lock_minutes must be >= 0")
        if self.max_trades_per_symbol_side_per_day < 0:
            raise ValueError("risk.max_trades_per_symbol_side_per_day must be >= 0")
        if self.max_trades_per_day is not None and self.max_trades_per_day < 0:
            raise ValueError("risk.max_trades_per_day must be >= 0 when provided")
        self.spread_granularity = self.spread_granularity.strip().upper()
        return self


class PartialCloseConfig(BaseModel):
    break_even_r: float = 1.0
    partial_close_fraction: float = 0.5
    tp2_r: float = 3.0
    tp2_fraction: float = 0.5
    atr_trail_start_r: float = 3.0
    atr_multiple: float = 1.5
    atr_period: int = 14
    far_take_profit_factor: float = 1000.0


class ContinuousTrailConfig(BaseModel):
    break_even_r: float = 1.0
    break_even_buffer: float = 0.0004
    lock_r: float = 1.5
    lock_offset_r: float = 0.5
    atr_start_r: float = 2.0
    atr_multiple: float = 1.2
    atr_period: int = 14


class TrailingConfig(BaseModel):
    default_policy: str = "partial_close"
    partial_close: PartialCloseConfig = Field(default_factory=PartialCloseConfig)
    continuous: ContinuousTrailConfig = Field(default_factory=ContinuousTrailConfig)
    by_symbol: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {"XAUUSD": {"break_even_buffer": 0.05}}
    )

    @model_validator(mode="after")
    def validate_values(self) -> "TrailingConfig":
        self.default_policy = str(self.default_policy).strip().lower()
        if self.default_policy not in TRAIL_POLICIES:
            raise ValueError(f"trailing.default_policy must be one of {sorted(TRAIL_POLICIES)}")
        for policy in (self.partial_close, self.continuous):
            if policy.break_even_r <= 0:
                raise ValueError("trailing break_even_r must be > 0")
            if policy.atr_multiple <= 0:
                raise ValueError("trailing atr_multiple must be > 0")
        if not (0 < self.partial_close.partial_close_fraction < 1):
            raise ValueError("trailing.partial_close.partial_close_fraction must be in (0, 1)")
        if not (0 < self.partial_close.tp2_fraction < 1):
            raise ValueError("trailing.partial_close.tp2_fraction must be in (0, 1)")
        if self.continuous.lock_r < self.continuous.break_even_r:
            raise ValueError("trailing.continuous.lock_r must be >= break_even_r")
        self.by_symbol = {str(key).strip().upper(): dict(value) for key, value in self.by_symbol.items()}
        return self

    def partial_close_for(self, symbol: str) -> PartialCloseConfig:
        overrides = self.by_symbol.get(symbol.strip().upper(), {})
        fields = PartialCloseConfig.model_fields
        return self.partial_close.model_copy(update={k: v for k, v in overrides.items() if k in fields})

    def continuous_for(self, symbol: str) -> ContinuousTrailConfig:
        overrides = self.by_symbol.get(symbol.strip().upper(), {})
        fields = ContinuousTrailConfig.model_fields
        return self.continuous.model_copy(update={k: v for k, v in overrides.items() if k in fields})


class BrokerConfig(BaseModel):
    provider: str = "paper"
    environment: str = "practice"
    practice_url: str = "https://api-fxpractice.oanda.com/v3"
    live_url: str = "https://api-fxtrade.oanda.com/v3"
    api_token: str | None = None
    account_id: str | None = None
    timeout_seconds: int = 10
    rate_limit_rps: float = 2.0
    rate_limit_burst: int = 5
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0
    order_tag_prefix: str = "autopilot"

    @model_validator(mode="after")
    def validate_values(self) -> "BrokerConfig":
        self.provider = str(self.provider).strip().lower()
        if self.provider not in {"paper", "oanda"}:
            raise ValueError("broker.provider must be paper or oanda")
        self.environment = str(self.environment).strip().lower()
        if self.environment not in {"practice", "live"}:
            raise ValueError("broker.environment must be practice or live")
        if self.timeout_seconds <= 0:
            raise ValueError("broker.timeout_seconds must be > 0")
        return self

    @property
    def base_url(self) -> str:
        return self.live_url if self.environment == "live" else self.practice_url


class MarketDataConfig(BaseModel):
    use_broker: bool = True
    yahoo_enabled: bool = True
    yahoo_symbols: dict[str, str] = Field(
        default_factory=lambda: {"XAUUSD": "XAUUSD=X", "NAS100": "^NDX"}
    )
    yahoo_range: str = "5d"
    csv_dir: str | None = None
    synthetic_enabled: bool = True
    synthetic_base_prices: dict[str, float] = Field(
        default_factory=lambda: {"XAUUSD": 2000.0, "NAS100": 18000.0}
    )
    timeout_seconds: int = 10

    @model_validator(mode="after")
    def normalize(self) -> "MarketDataConfig":
        self.yahoo_symbols = {str(k).strip().upper(): str(v) for k, v in self.yahoo_symbols.items()}
        self.synthetic_base_prices = {
            str(k).strip().upper(): float(v) for k, v in self.synthetic_base_prices.items()
        }
        return self


class CalendarConfig(BaseModel):
    provider: str = "synthetic"
    file: str = "data/calendar.json"
    http_url: str | None = None
    http_token: str | None = None
    http_timeout_seconds: int = 10
    http_cache_ttl_seconds: int = 300
    synthetic_time_utc: str = "13:30"
    synthetic_days: int = 7
    symbol_currencies: dict[str, list[str]] = Field(
        default_factory=lambda: {"XAUUSD": ["USD"], "NAS100": ["USD"]}
    )

    @model_validator(mode="after")
    def validate_values(self) -> "CalendarConfig":
        self.provider = str(self.provider).strip().lower()
        if self.provider not in {"synthetic", "file", "http"}:
            raise ValueError("calendar.provider must be synthetic, file or http")
        parse_hhmm(self.synthetic_time_utc)
        self.symbol_currencies = {
            str(k).strip().upper(): [str(c).strip().upper() for c in v]
            for k, v in self.symbol_currencies.items()
        }
        return self


class NotificationsConfig(BaseModel):
    enabled: bool = True
    webhook_url: str | None = None
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    timeout_seconds: int = 10


class StorageConfig(BaseModel):
    sqlite_path: str = "autopilot.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    enabled_bots: list[str] = Field(default_factory=list)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    trailing: TrailingConfig = Field(default_factory=TrailingConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    bots: list[BotConfig] = Field(default_factory=_default_bots)

    @model_validator(mode="after")
    def normalize_bots(self) -> "AppConfig":
        self.enabled_bots = [str(item).strip().lower() for item in self.enabled_bots if str(item).strip()]
        seen: set[str] = set()
        for bot in self.bots:
            key = bot.id.lower()
            if key in seen:
                raise ValueError(f"duplicate bot id '{bot.id}'")
            seen.add(key)
        return self

    def universe(self) -> list[str]:
        symbols: list[str] = []
        for bot in self.bots:
            if bot.symbol not in symbols:
                symbols.append(bot.symbol)
        return symbols

    def bot_by_id(self, bot_id: str) -> BotConfig | None:
        for bot in self.bots:
            if bot.id == bot_id:
                return bot
        return None

    def trail_policy_for(self, bot: BotConfig | None) -> str:
        if bot is not None and bot.trail_policy:
            return bot.trail_policy
        return self.trailing.default_policy


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# env var -> (section, key, parser); section None means top level
_ENV_OVERRIDES: dict[str, tuple[str | None, str, Any]] = {
    "AUTOPILOT_ENABLED": ("scheduler", "enabled", _parse_bool),
    "AUTOPILOT_SCAN_MINUTES": ("scheduler", "scan_interval_minutes", int),
    "AUTOPILOT_HEARTBEAT_SECONDS": ("scheduler", "heartbeat_seconds", int),
    "AUTOPILOT_ENABLED_BOTS": (None, "enabled_bots", _parse_csv),
    "AUTOPILOT_RISK_PCT": ("risk", "risk_pct", float),
    "AUTOPILOT_ACCOUNT_BASE": ("risk", "base_account", float),
    "AUTOPILOT_SPREAD_FILTER_MULT": ("risk", "spread_filter_mult", float),
    "AUTOPILOT_NEWS_LOCK_MINUTES": ("risk", "news_lock_minutes", int),
    "AUTOPILOT_BLOCK_DUPLICATE_SYMBOL_SIDE": ("risk", "block_duplicate_symbol_side", _parse_bool),
    "AUTOPILOT_SYMBOL_SIDE_CAP": ("risk", "max_trades_per_symbol_side_per_day", int),
    "AUTOPILOT_DAILY_CAP": ("risk", "max_trades_per_day", int),
    "AUTOPILOT_SINGLE_POSITION": ("risk", "single_open_position", _parse_bool),
    "AUTOPILOT_TRAIL_POLICY": ("trailing", "default_policy", str),
    "AUTOPILOT_BROKER": ("broker", "provider", str),
    "OANDA_ENV": ("broker", "environment", str),
    "OANDA_API_TOKEN": ("broker", "api_token", str),
    "OANDA_ACCOUNT_ID": ("broker", "account_id", str),
    "NEWS_PROVIDER": ("calendar", "provider", str),
    "NEWS_HTTP_URL": ("calendar", "http_url", str),
    "NEWS_HTTP_TOKEN": ("calendar", "http_token", str),
    "ALERT_WEBHOOK_URL": ("notifications", "webhook_url", str),
    "ALERT_DISCORD_WEBHOOK": ("notifications", "discord_webhook", str),
    "ALERT_TELEGRAM_BOT_TOKEN": ("notifications", "telegram_bot_token", str),
    "ALERT_TELEGRAM_CHAT_ID": ("notifications", "telegram_chat_id", str),
    "SQLITE_PATH": ("storage", "sqlite_path", str),
    "LOG_LEVEL": (None, "log_level", str),
}

# thresholds that apply to both trailing policies
_ENV_TRAILING: dict[str, tuple[str, str]] = {
    "AUTOPILOT_BREAK_EVEN_R": ("break_even_r", "break_even_r"),
    "AUTOPILOT_ATR_START_R": ("atr_trail_start_r", "atr_start_r"),
}


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    raw = config.model_dump()
    for name, (section, key, parser) in _ENV_OVERRIDES.items():
        value = env.get(name)
        if value is None or not value.strip():
            continue
        target = raw if section is None else raw[section]
        try:
            target[key] = parser(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
    for name, (partial_key, continuous_key) in _ENV_TRAILING.items():
        value = env.get(name)
        if value is None or not value.strip():
            continue
        try:
            parsed = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
        raw["trailing"]["partial_close"][partial_key] = parsed
        raw["trailing"]["continuous"][continuous_key] = parsed
    lock_r = env.get("AUTOPILOT_LOCK_R")
    if lock_r is not None and lock_r.strip():
        try:
            raw["trailing"]["continuous"]["lock_r"] = float(lock_r)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for AUTOPILOT_LOCK_R: {lock_r!r}") from exc
    return AppConfig.model_validate(raw)
