# src/aggregator/timeframe.py
import logging

from src.aggregator.ring_buffer import RingBuffer
from src.storage.models import Candle, MarketType

logger = logging.getLogger(__name__)


class TimeframeAggregator:
    """用基础周期 K 线合成更长周期 K 线, 无需单独订阅"""

    def __init__(self, base_timeframe: str = "1m", derived: dict[str, int] | None = None):
        if derived is None:
            derived = {"3m": 3, "15m": 15}
        if not derived or min(derived.values()) < 2:
            raise ValueError(f"derived multiples must be >= 2, got {derived}")
        self.base_timeframe = base_timeframe
        # 按倍数升序输出
        self.derived = sorted(derived.items(), key=lambda item: item[1])
        self.capacity = max(derived.values())
        self._buffers: dict[tuple[str, MarketType], RingBuffer[Candle]] = {}

    def on_closed_candle(self, candle: Candle) -> list[Candle]:
        if not candle.is_closed or candle.timeframe != self.base_timeframe:
            return []

        key = (candle.symbol, candle.market_type)
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = RingBuffer(self.capacity)
            self._buffers[key] = buffer
        buffer.append(candle)

        results: list[Candle] = []
        for timeframe, multiple in self.derived:
            if len(buffer) < multiple:
                continue
            window = buffer.last(multiple)
            results.append(
                Candle(
                    symbol=candle.symbol,
                    timeframe=timeframe,
                    market_type=candle.market_type,
                    open_time=window[0].open_time,
                    close_time=window[-1].close_time,
                    open=window[0].open,
                    close=window[-1].close,
                    volume=sum(c.volume for c in window),
                    trade_count=sum(c.trade_count for c in window),
                )
            )
        return results

    def buffered(self, symbol: str, market_type: MarketType) -> int:
        buffer = self._buffers.get((symbol, market_type))
        return len(buffer) if buffer else 0

    def reset(self, symbol: str, market_type: MarketType) -> None:
        self._buffers.pop((symbol, market_type), None)
