# src/config.py
from pathlib import Path

import yaml
from pydantic import BaseModel


class ExchangeConfig(BaseModel):
    enabled: bool = True


class ExchangesConfig(BaseModel):
    binance_spot: ExchangeConfig = ExchangeConfig()
    binance_futures: ExchangeConfig = ExchangeConfig()
    binance_liquidations: ExchangeConfig = ExchangeConfig()


class TimeframesConfig(BaseModel):
    base: str = "1m"
    # 派生周期: 名称 -> 基础 K 线倍数
    derived: dict[str, int] = {"3m": 3, "15m": 15}


class VolumeConfig(BaseModel):
    alpha: float = 0.1
    sample_cap: int = 100
    min_samples: int = 5
    multiplier_threshold: float = 3.0
    price_bonus_pct: float = 2.0
    trade_bonus_count: int = 1000
    # (最低倍数, 强度) 从高到低
    strength_bands: list[tuple[float, int]] = [(10, 5), (7, 4), (3.5, 3), (3, 2)]
    alert_ttl_hours: int = 24
    baseline_stale_minutes: int = 120
    max_alerts: int = 200


class LiquidationConfig(BaseModel):
    min_amount_usd: dict[str, float] = {"high": 20000, "mid": 10000, "low": 6000}
    history_size: int = 20
    stale_minutes: int = 30
    top_limit: int = 50
    intensity_unit_usd: float = 30000


class PatternsConfig(BaseModel):
    flip_min_usd: float = 25000
    cascade_min_usd: float = 30000
    squeeze_min_usd: float = 40000
    squeeze_balance: float = 0.6
    whale_min_usd: float = 300000
    snapshot_min_change_usd: float = 10000
    snapshot_window_minutes: int = 10
    snapshot_history: int = 5
    signal_ttl_minutes: int = 15
    max_signals: int = 100


class ThrottleConfig(BaseModel):
    cooldown_minutes: float = 5


class MarketCapConfig(BaseModel):
    enabled: bool = True
    api_url: str = "https://api.coingecko.com/api/v3/simple/price"
    cache_minutes: int = 30
    request_delay_seconds: float = 1.0
    timeout_seconds: float = 10
    high_cap_usd: float = 10_000_000_000
    mid_cap_usd: float = 1_000_000_000


class OracleConfig(BaseModel):
    enabled: bool = False
    url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 10
    cache_minutes: int = 5
    similarity_threshold: float = 0.85


class PersistenceConfig(BaseModel):
    enabled: bool = True
    criteria_required: int = 2
    high_cap_amount_usd: float = 50000
    low_cap_amount_usd: float = 10000
    min_intensity: int = 3
    min_side_total_usd: float = 100000
    min_multiplier: float = 5.0
    min_price_movement_pct: float = 1.0
    min_notional_usd: float = 100000
    min_signal_severity: str = "HIGH"


class DatabaseConfig(BaseModel):
    path: str = "data/radar.db"
    retention_days: int = 7


class IntervalsConfig(BaseModel):
    sweep_seconds: int = 60
    cleanup_hours: int = 24


class WarmupConfig(BaseModel):
    enabled: bool = True
    candles: int = 30


class TelegramConfig(BaseModel):
    bot_token: str
    chat_id: str
    notify_min_severity: str = "HIGH"
    notify_min_strength: int = 4


class Config(BaseModel):
    exchanges: ExchangesConfig = ExchangesConfig()
    spot_symbols: list[str] = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
    futures_symbols: list[str] = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "DOGEUSDT"]
    timeframes: TimeframesConfig = TimeframesConfig()
    volume: VolumeConfig = VolumeConfig()
    liquidation: LiquidationConfig = LiquidationConfig()
    patterns: PatternsConfig = PatternsConfig()
    throttle: ThrottleConfig = ThrottleConfig()
    market_cap: MarketCapConfig = MarketCapConfig()
    oracle: OracleConfig = OracleConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    database: DatabaseConfig = DatabaseConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    warmup: WarmupConfig = WarmupConfig()
    telegram: TelegramConfig | None = None


def load_config(path: Path) -> Config:
    with open(path) as f:
        data = yaml.safe_load(f)
    return Config(**(data or {}))
