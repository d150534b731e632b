# src/aggregator/baseline.py
import logging
import math
import time

from src.storage.models import MarketType, VolumeBaseline

logger = logging.getLogger(__name__)


class BaselineTracker:
    """
    按 (市场, 交易对, 周期) 维护成交量指数移动平均

    Args:
        alpha: EWMA 权重, 越小基线越平稳
        sample_cap: 样本计数上限
        stale_minutes: 超过该时长未更新的基线会被清理
    """

    def __init__(self, alpha: float = 0.1, sample_cap: int = 100, stale_minutes: int = 120):
        if not 0 < alpha <= 1:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self.sample_cap = sample_cap
        self.stale_ms = stale_minutes * 60 * 1000
        self._baselines: dict[tuple[MarketType, str, str], VolumeBaseline] = {}

    def update(
        self,
        symbol: str,
        timeframe: str,
        volume: float,
        market_type: MarketType = MarketType.FUTURES,
        now: int | None = None,
    ) -> VolumeBaseline:
        if not math.isfinite(volume) or volume < 0:
            raise ValueError(f"invalid volume for {symbol} {timeframe}: {volume}")
        if now is None:
            now = int(time.time() * 1000)

        key = (market_type, symbol, timeframe)
        baseline = self._baselines.get(key)
        if baseline is None:
            baseline = VolumeBaseline(average=volume, sample_count=1, last_updated=now)
            self._baselines[key] = baseline
            logger.debug(f"New baseline: {market_type.value} {symbol} {timeframe} = {volume:.2f}")
            return baseline

        baseline.average = baseline.average * (1 - self.alpha) + volume * self.alpha
        baseline.sample_count = min(baseline.sample_count + 1, self.sample_cap)
        baseline.last_updated = now
        return baseline

    def get(
        self,
        symbol: str,
        timeframe: str,
        market_type: MarketType = MarketType.FUTURES,
    ) -> VolumeBaseline | None:
        return self._baselines.get((market_type, symbol, timeframe))

    def sweep(self, now: int | None = None) -> int:
        if now is None:
            now = int(time.time() * 1000)
        cutoff = now - self.stale_ms
        stale = [k for k, b in self._baselines.items() if b.last_updated < cutoff]
        for key in stale:
            del self._baselines[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._baselines)
