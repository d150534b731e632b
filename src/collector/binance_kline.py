# src/collector/binance_kline.py
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from src.storage.models import Candle, MarketType

from .base import BaseCollector

logger = logging.getLogger(__name__)

BINANCE_STREAM_URLS = {
    MarketType.FUTURES: "wss://fstream.binance.com/stream",
    MarketType.SPOT: "wss://stream.binance.com:9443/stream",
}


class BinanceKlineCollector(BaseCollector):
    """组合流订阅多个交易对 K 线, 只转发已收盘 K 线"""

    def __init__(
        self,
        symbols: list[str],
        market_type: MarketType,
        on_candle: Callable[[Candle], Coroutine[Any, Any, None]],
        interval: str = "1m",
    ):
        super().__init__(f"{market_type.value} klines")
        self.symbols = [s.upper() for s in symbols]
        self.market_type = market_type
        self.interval = interval
        self.on_candle = on_candle

    def stream_url(self) -> str:
        streams = "/".join(f"{s.lower()}@kline_{self.interval}" for s in self.symbols)
        return f"{BINANCE_STREAM_URLS[self.market_type]}?streams={streams}"

    def _parse_kline(self, data: dict[str, Any]) -> Candle | None:
        # 组合流外层为 {"stream": ..., "data": {...}}
        payload = data.get("data", data)
        if payload.get("e") != "kline":
            return None

        k = payload["k"]
        if not k.get("x"):
            return None

        return Candle(
            symbol=k["s"],
            timeframe=k["i"],
            market_type=self.market_type,
            open_time=int(k["t"]),
            close_time=int(k["T"]),
            open=float(k["o"]),
            close=float(k["c"]),
            volume=float(k["v"]),
            trade_count=int(k["n"]),
            is_closed=True,
        )

    async def _process_message(self, message: str) -> None:
        try:
            candle = self._parse_kline(json.loads(message))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            self.parse_errors += 1
            logger.warning(f"Failed to parse kline message: {e}")
            return
        if candle:
            await self.on_candle(candle)
