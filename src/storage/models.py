# src/storage/models.py
from dataclasses import dataclass, field
from enum import Enum

from src.aggregator.ring_buffer import RingBuffer


class MarketType(Enum):
    SPOT = "spot"
    FUTURES = "futures"


class AlertSide(Enum):
    BUY = "buy"
    SELL = "sell"
    LONG = "long"
    SHORT = "short"


class LiquidationSide(Enum):
    LONG = "long"
    SHORT = "short"


class MarketCapTier(Enum):
    HIGH = "high"
    MID = "mid"
    LOW = "low"


class PatternType(Enum):
    FLIP = "FLIP"
    CASCADE = "CASCADE"
    SQUEEZE = "SQUEEZE"
    WHALE = "WHALE"


class Severity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.EXTREME: 4,
}


class SignalSource(Enum):
    LOCAL = "LOCAL"
    REMOTE = "REMOTE"
    CACHED = "CACHED"


def asset_from_ticker(ticker: str) -> str:
    """BTCUSDT -> BTC"""
    for quote in ("USDT", "USDC", "BUSD"):
        if ticker.endswith(quote) and len(ticker) > len(quote):
            return ticker[: -len(quote)]
    return ticker


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: str
    market_type: MarketType
    open_time: int
    close_time: int
    open: float
    close: float
    volume: float
    trade_count: int
    is_closed: bool = True

    @property
    def price_movement_pct(self) -> float:
        if self.open == 0:
            return 0.0
        return (self.close - self.open) / self.open * 100


@dataclass
class VolumeBaseline:
    average: float
    sample_count: int
    last_updated: int


@dataclass(frozen=True)
class VolumeAlert:
    id: str
    symbol: str
    asset: str
    timeframe: str
    market_type: MarketType
    side: AlertSide
    baseline: float
    current: float
    multiplier: float
    price_movement_pct: float
    price: float
    strength: int  # 1..5
    trade_count: int
    timestamp: int  # ms
    expires_at: int  # ms
    session_region: str = ""

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class LiquidationEvent:
    ticker: str
    side: LiquidationSide
    amount_usd: float
    price: float
    timestamp: int  # ms


@dataclass(frozen=True)
class LiquidationRecord:
    side: LiquidationSide
    amount: float
    timestamp: int


@dataclass
class SideLiquidationAsset:
    asset: str
    ticker: str
    side: LiquidationSide
    price: float
    market_cap: MarketCapTier
    position_count: int
    liquidated_total: float
    first_detection_time: int
    last_update_time: int
    intensity: int  # 1..5
    history: RingBuffer[LiquidationRecord] = field(default_factory=lambda: RingBuffer(20))


@dataclass(frozen=True)
class UnifiedAsset:
    """多空合并视图, 只读, 每次按需重算"""

    asset: str
    ticker: str
    price: float
    market_cap: MarketCapTier
    long_positions: int
    long_liquidated: float
    short_positions: int
    short_liquidated: float
    intensity: int
    first_detection_time: int
    last_update_time: int
    history: tuple[LiquidationRecord, ...] = ()

    @property
    def total_positions(self) -> int:
        return self.long_positions + self.short_positions

    @property
    def combined_total(self) -> float:
        return self.long_liquidated + self.short_liquidated

    @property
    def dominant_type(self) -> LiquidationSide:
        if self.long_liquidated > self.short_liquidated:
            return LiquidationSide.LONG
        return LiquidationSide.SHORT


@dataclass(frozen=True)
class AssetSnapshot:
    asset: str
    long_volume: float
    short_volume: float
    dominant_type: LiquidationSide
    timestamp: int

    @property
    def total_volume(self) -> float:
        return self.long_volume + self.short_volume

    def volume_of(self, side: LiquidationSide) -> float:
        return self.long_volume if side is LiquidationSide.LONG else self.short_volume

    @classmethod
    def from_unified(cls, unified: UnifiedAsset, timestamp: int) -> "AssetSnapshot":
        return cls(
            asset=unified.asset,
            long_volume=unified.long_liquidated,
            short_volume=unified.short_liquidated,
            dominant_type=unified.dominant_type,
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class SignalMetrics:
    long_volume: float
    short_volume: float
    dominant_type: LiquidationSide
    volume_ratio: float
    intensity: int  # 0..10
    previous_dominant: LiquidationSide | None = None


@dataclass(frozen=True)
class PatternSignal:
    id: str
    asset: str
    pattern_type: PatternType
    description: str
    confidence: float  # 0..100
    severity: Severity
    timestamp: int  # ms
    metrics: SignalMetrics
    source: SignalSource = SignalSource.LOCAL


@dataclass(frozen=True)
class AssetFeatures:
    """远程分析器使用的紧凑特征"""

    asset: str
    longs: float
    shorts: float
    velocity: float  # USD / 分钟
    ratio: float
    volume: float
    price: float
