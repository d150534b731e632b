# src/alert/volume_anomaly.py
import logging
import math
import time
import uuid
from datetime import UTC, datetime

from src.aggregator.baseline import BaselineTracker
from src.storage.models import AlertSide, MarketType, VolumeAlert, asset_from_ticker

logger = logging.getLogger(__name__)

DEFAULT_STRENGTH_BANDS: list[tuple[float, int]] = [(10, 5), (7, 4), (3.5, 3), (3, 2)]


def get_session_region(timestamp_ms: int) -> str:
    hour = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).hour
    if hour < 8:
        return "asia"
    elif hour < 16:
        return "europe"
    else:
        return "america"


def calculate_strength(
    multiplier: float,
    price_movement_pct: float,
    trade_count: int,
    bands: list[tuple[float, int]] | None = None,
    price_bonus_pct: float = 2.0,
    trade_bonus_count: int = 1000,
) -> int:
    """倍数分档 + 价格/成交笔数加成, 结果 1..5"""
    if bands is None:
        bands = DEFAULT_STRENGTH_BANDS

    strength = 1
    for min_multiplier, level in sorted(bands, key=lambda b: b[0], reverse=True):
        if multiplier >= min_multiplier:
            strength = level
            break

    if abs(price_movement_pct) > price_bonus_pct:
        strength = min(5, strength + 1)
    if trade_count > trade_bonus_count:
        strength = min(5, strength + 1)

    return max(1, min(5, strength))


def resolve_side(market_type: MarketType, price_movement_pct: float) -> AlertSide:
    if market_type is MarketType.SPOT:
        return AlertSide.BUY if price_movement_pct > 0 else AlertSide.SELL
    return AlertSide.LONG if price_movement_pct > 0 else AlertSide.SHORT


class VolumeAnomalyDetector:
    """基于基线的成交量异动检测"""

    def __init__(
        self,
        baselines: BaselineTracker,
        min_samples: int = 5,
        threshold: float = 3.0,
        price_bonus_pct: float = 2.0,
        trade_bonus_count: int = 1000,
        strength_bands: list[tuple[float, int]] | None = None,
        ttl_hours: int = 24,
    ):
        self.baselines = baselines
        self.min_samples = min_samples
        self.threshold = threshold
        self.price_bonus_pct = price_bonus_pct
        self.trade_bonus_count = trade_bonus_count
        self.strength_bands = strength_bands or DEFAULT_STRENGTH_BANDS
        self.ttl_ms = ttl_hours * 3600 * 1000

    def detect(
        self,
        symbol: str,
        timeframe: str,
        market_type: MarketType,
        volume: float,
        price_movement_pct: float,
        price: float,
        trade_count: int,
        now: int | None = None,
    ) -> VolumeAlert | None:
        baseline = self.baselines.get(symbol, timeframe, market_type)
        if baseline is None or baseline.sample_count < self.min_samples:
            return None

        multiplier = volume / max(baseline.average, 1)
        # 恰好等于阈值不触发
        if not multiplier > self.threshold:
            return None

        if now is None:
            now = int(time.time() * 1000)

        strength = calculate_strength(
            multiplier,
            price_movement_pct,
            trade_count,
            self.strength_bands,
            self.price_bonus_pct,
            self.trade_bonus_count,
        )

        numbers = (baseline.average, volume, multiplier, price_movement_pct, price)
        if not all(math.isfinite(n) for n in numbers):
            logger.warning(f"Suppressed non-finite volume alert for {symbol} {timeframe}")
            return None

        alert = VolumeAlert(
            id=str(uuid.uuid4()),
            symbol=symbol,
            asset=asset_from_ticker(symbol),
            timeframe=timeframe,
            market_type=market_type,
            side=resolve_side(market_type, price_movement_pct),
            baseline=baseline.average,
            current=volume,
            multiplier=multiplier,
            price_movement_pct=price_movement_pct,
            price=price,
            strength=strength,
            trade_count=trade_count,
            timestamp=now,
            expires_at=now + self.ttl_ms,
            session_region=get_session_region(now),
        )
        logger.info(
            f"Volume alert: {market_type.value} {symbol} {timeframe} "
            f"{multiplier:.2f}x {price_movement_pct:+.2f}% strength={strength} {alert.side.value}"
        )
        return alert
