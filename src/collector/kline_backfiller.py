# src/collector/kline_backfiller.py
import asyncio
import logging
import time
from typing import Any

import ccxt.async_support as ccxt

from src.storage.models import Candle, MarketType

logger = logging.getLogger(__name__)


def to_ccxt_symbol(symbol: str, market_type: MarketType) -> str:
    """BTCUSDT -> BTC/USDT (现货) 或 BTC/USDT:USDT (U 本位合约)"""
    for quote in ("USDT", "USDC"):
        if symbol.endswith(quote) and len(symbol) > len(quote):
            base = symbol[: -len(quote)]
            if market_type is MarketType.FUTURES:
                return f"{base}/{quote}:{quote}"
            return f"{base}/{quote}"
    return symbol


class KlineBackfiller:
    """启动时拉取最近 K 线, 用于预热成交量基线"""

    def __init__(
        self,
        spot_symbols: list[str],
        futures_symbols: list[str],
        timeframe: str = "1m",
        candles: int = 30,
    ):
        self.spot_symbols = spot_symbols
        self.futures_symbols = futures_symbols
        self.timeframe = timeframe
        self.candles = candles
        self.exchanges: dict[MarketType, Any] = {}

    async def init(self) -> None:
        self.exchanges = {
            MarketType.SPOT: ccxt.binance(),
            MarketType.FUTURES: ccxt.binanceusdm(),
        }

    async def close(self) -> None:
        for exchange in self.exchanges.values():
            await exchange.close()
        self.exchanges = {}

    async def fetch_candles(self, symbol: str, market_type: MarketType) -> list[Candle]:
        exchange = self.exchanges.get(market_type)
        if exchange is None:
            return []

        try:
            # 多取一根, 最后一根可能尚未收盘
            rows: list[list[Any]] = await exchange.fetch_ohlcv(
                to_ccxt_symbol(symbol, market_type), self.timeframe, limit=self.candles + 1
            )
        except Exception as e:
            logger.error(f"Failed to fetch {market_type.value} klines for {symbol}: {e}")
            return []

        interval_ms = ccxt.Exchange.parse_timeframe(self.timeframe) * 1000
        now = int(time.time() * 1000)
        candles: list[Candle] = []
        for row in rows:
            open_time, open_, _high, _low, close, volume = row[:6]
            if open_ is None or close is None or volume is None:
                continue
            close_time = int(open_time) + interval_ms - 1
            if close_time >= now:
                continue
            candles.append(
                Candle(
                    symbol=symbol,
                    timeframe=self.timeframe,
                    market_type=market_type,
                    open_time=int(open_time),
                    close_time=close_time,
                    open=float(open_),
                    close=float(close),
                    volume=float(volume),
                    trade_count=0,
                )
            )
        return candles[-self.candles :]

    async def fetch_all(self) -> list[Candle]:
        tasks = [self.fetch_candles(s, MarketType.SPOT) for s in self.spot_symbols]
        tasks += [self.fetch_candles(s, MarketType.FUTURES) for s in self.futures_symbols]

        results = await asyncio.gather(*tasks, return_exceptions=True)
        candles: list[Candle] = []
        for result in results:
            if isinstance(result, list):
                candles.extend(result)
        logger.info(f"Backfilled {len(candles)} klines")
        return candles
