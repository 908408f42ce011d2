"""
Load configuration from config.yaml and .env. API keys only from env.

Strategy, risk and filter parameters live in an immutable, versioned
Settings snapshot. Runtime updates build a new snapshot; nothing mutates one
in place.
"""

from __future__ import annotations
import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from futures_bot.core.errors import ConfigurationError
from futures_bot.utils.timeframes import timeframe_seconds

# config.yaml sections whose keys are Settings fields
SETTINGS_SECTIONS = ("strategy", "risk", "execution", "filters", "indicators")

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")


@dataclass(frozen=True)
class Settings:
    """Trading parameters. `version` increases by one on every accepted update."""

    symbol: str = "BTCUSDT"
    interval: str = "5m"
    leverage: int = 10
    margin_type: str = "CROSSED"
    hedge_mode: bool = True
    qty_usdt: float = 20.0
    take_profit_percent: float = 0.6
    stop_loss_percent: float = 0.3
    roi_based_tp: bool = False
    # Signal
    rsi_long_threshold: float = 30.0
    rsi_short_threshold: float = 70.0
    check_interval_seconds: float = 30.0
    # Daily limits (percent of start balance)
    daily_target_percent: float = 5.0
    daily_max_loss_percent: float = 3.0
    # Filters
    enable_trend_filter: bool = True
    enable_band_filter: bool = True
    enable_volume_filter: bool = True
    enable_time_filter: bool = True
    blackout_hours: frozenset = frozenset({12, 14, 16, 20})
    band_long_max: float = 0.8
    band_short_min: float = 0.2
    min_volume_ratio: float = 1.2
    # Indicators
    history_limit: int = 200
    rsi_period: int = 14
    ema_fast: int = 20
    ema_slow: int = 50
    sma_fast: int = 20
    sma_slow: int = 50
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bb_period: int = 20
    bb_std: float = 2.0
    stoch_k: int = 14
    stoch_d: int = 3
    volume_ma_len: int = 20
    atr_len: int = 14
    # Order supervision
    fill_confirm_attempts: int = 5
    fill_confirm_delay: float = 0.5
    bracket_retry_base_delay: float = 1.0
    bracket_retry_max_delay: float = 60.0
    version: int = 1

    def validate(self) -> "Settings":
        """Raise ConfigurationError on the first invalid value; return self."""
        if not self.symbol or not self.symbol.isalnum() or self.symbol != self.symbol.upper():
            raise ConfigurationError(f"symbol must be an upper-case pair like BTCUSDT, got {self.symbol!r}")
        try:
            timeframe_seconds(self.interval)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if not 1 <= self.leverage <= 125:
            raise ConfigurationError(f"leverage must be within 1..125, got {self.leverage}")
        if self.margin_type not in ("CROSSED", "ISOLATED"):
            raise ConfigurationError(f"margin_type must be CROSSED or ISOLATED, got {self.margin_type!r}")
        for name in ("qty_usdt", "take_profit_percent", "stop_loss_percent", "check_interval_seconds",
                     "daily_target_percent", "daily_max_loss_percent", "bb_std"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.stop_loss_percent >= 100:
            raise ConfigurationError("stop_loss_percent must be below 100")
        if not 0 < self.rsi_long_threshold < self.rsi_short_threshold < 100:
            raise ConfigurationError(
                f"need 0 < rsi_long_threshold < rsi_short_threshold < 100, "
                f"got {self.rsi_long_threshold} / {self.rsi_short_threshold}"
            )
        bad_hours = [h for h in self.blackout_hours if not 0 <= h <= 23]
        if bad_hours:
            raise ConfigurationError(f"blackout_hours must be UTC hours 0..23, got {sorted(bad_hours)}")
        if not 0 < self.band_long_max <= 1 or not 0 <= self.band_short_min < 1:
            raise ConfigurationError("band_long_max must be in (0, 1] and band_short_min in [0, 1)")
        if self.min_volume_ratio < 0:
            raise ConfigurationError("min_volume_ratio must not be negative")
        for name in ("rsi_period", "ema_fast", "ema_slow", "sma_fast", "sma_slow", "macd_fast", "macd_slow",
                     "macd_signal", "bb_period", "stoch_k", "stoch_d", "volume_ma_len", "atr_len",
                     "fill_confirm_attempts"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.ema_fast >= self.ema_slow:
            raise ConfigurationError("ema_fast must be shorter than ema_slow")
        if self.macd_fast >= self.macd_slow:
            raise ConfigurationError("macd_fast must be shorter than macd_slow")
        if self.history_limit <= self.ema_slow:
            raise ConfigurationError(f"history_limit must exceed ema_slow ({self.ema_slow})")
        if self.fill_confirm_delay < 0 or self.bracket_retry_base_delay <= 0:
            raise ConfigurationError("retry delays must be positive")
        if self.bracket_retry_max_delay < self.bracket_retry_base_delay:
            raise ConfigurationError("bracket_retry_max_delay must be >= bracket_retry_base_delay")
        return self

    def updated(self, partial: Mapping[str, Any]) -> "Settings":
        """Return a validated copy with `partial` applied and version bumped."""
        unknown = set(partial) - _SETTINGS_FIELDS
        if "version" in partial:
            unknown.add("version")
        if unknown:
            raise ConfigurationError(f"unknown settings: {', '.join(sorted(unknown))}")
        values = {key: coerce_setting(key, value) for key, value in partial.items()}
        candidate = dataclasses.replace(self, version=self.version + 1, **values)
        return candidate.validate()


_DEFAULTS = Settings()
_SETTINGS_FIELDS = {f.name for f in dataclasses.fields(Settings)} - {"version"}


def coerce_setting(key: str, value: Any) -> Any:
    """Convert a raw value (yaml, env string, operator input) to the field's type."""
    default = getattr(_DEFAULTS, key)
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if isinstance(default, frozenset):
            if isinstance(value, str):
                value = [v for v in value.replace(" ", "").split(",") if v]
            return frozenset(int(v) for v in value)
        if isinstance(default, int):
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"not an integer: {value!r}")
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value).strip().upper() if key in ("symbol", "margin_type") else str(value).strip()
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid value for {key}: {e}") from e


def _env_path(project_root: Optional[Path] = None) -> Path:
    root = project_root or Path(__file__).resolve().parents[2]
    return root / ".env"


def load_dotenv_if_exists(project_root: Optional[Path] = None) -> None:
    """Load .env from project root if present."""
    path = _env_path(project_root)
    if path.exists():
        load_dotenv(path)


def load_config(config_path: Optional[Path] = None, project_root: Optional[Path] = None) -> "Config":
    """Load config.yaml and overlay with env. Returns Config."""
    load_dotenv_if_exists(project_root)
    root = project_root or Path(__file__).resolve().parents[2]
    path = config_path or root / "config.yaml"
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    def env(key: str, default: str = "") -> str:
        return os.getenv(key, default).strip()

    def env_bool(key: str, default: bool = False) -> bool:
        return os.getenv(key, str(default)).lower() in _TRUE

    api = data.get("api", {})
    telegram = data.get("telegram", {})
    logging_cfg = data.get("logging", {})
    gateway = data.get("gateway", {})

    raw: dict[str, Any] = {}
    for section in SETTINGS_SECTIONS:
        raw.update(data.get(section) or {})
    # Env overrides: every settings field can be set as its upper-case name
    for name in _SETTINGS_FIELDS:
        value = os.getenv(name.upper())
        if value is not None and value.strip():
            raw[name] = value
    settings = _DEFAULTS.updated(raw) if raw else _DEFAULTS.validate()
    settings = dataclasses.replace(settings, version=1)

    use_testnet = env_bool("USE_TESTNET", api.get("use_testnet", True))
    # Dedicated testnet/mainnet keys can both live in .env; USE_TESTNET picks one pair
    if use_testnet:
        binance_api_key = env("BINANCE_TESTNET_API_KEY") or env("BINANCE_API_KEY")
        binance_api_secret = env("BINANCE_TESTNET_API_SECRET") or env("BINANCE_API_SECRET")
    else:
        binance_api_key = env("BINANCE_MAINNET_API_KEY") or env("BINANCE_API_KEY")
        binance_api_secret = env("BINANCE_MAINNET_API_SECRET") or env("BINANCE_API_SECRET")

    try:
        return Config(
            binance_api_key=binance_api_key,
            binance_api_secret=binance_api_secret,
            use_testnet=use_testnet,
            settings=settings,
            telegram_bot_token=env("TELEGRAM_BOT_TOKEN", telegram.get("bot_token", "")),
            telegram_chat_id=env("TELEGRAM_CHAT_ID", str(telegram.get("chat_id", ""))),
            log_level=env("LOG_LEVEL", logging_cfg.get("level", "INFO")),
            log_dir=Path(logging_cfg.get("log_dir", "logs")),
            log_file=logging_cfg.get("log_file", "futures_bot.log"),
            max_retries=int(gateway.get("max_retries", 4)),
            retry_base_delay=float(gateway.get("retry_base_delay", 0.5)),
            retry_max_delay=float(gateway.get("retry_max_delay", 8.0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid gateway/logging config: {e}") from e


class Config:
    """Process configuration: credentials, notifier, logging, gateway and the initial Settings."""

    __slots__ = (
        "binance_api_key", "binance_api_secret", "use_testnet", "settings",
        "telegram_bot_token", "telegram_chat_id",
        "log_level", "log_dir", "log_file",
        "max_retries", "retry_base_delay", "retry_max_delay",
    )

    def __init__(
        self,
        binance_api_key: str = "",
        binance_api_secret: str = "",
        use_testnet: bool = True,
        settings: Optional[Settings] = None,
        telegram_bot_token: str = "",
        telegram_chat_id: str = "",
        log_level: str = "INFO",
        log_dir: Path = None,
        log_file: str = "futures_bot.log",
        max_retries: int = 4,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
    ):
        self.binance_api_key = binance_api_key
        self.binance_api_secret = binance_api_secret
        self.use_testnet = use_testnet
        self.settings = settings or Settings()
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.log_level = log_level
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.log_file = log_file
        if max_retries < 1:
            raise ConfigurationError("gateway max_retries must be at least 1")
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
