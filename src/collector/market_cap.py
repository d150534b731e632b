# src/collector/market_cap.py
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

from src.storage.models import MarketCapTier, asset_from_ticker

logger = logging.getLogger(__name__)

COINGECKO_SIMPLE_PRICE = "https://api.coingecko.com/api/v3/simple/price"

HIGH_CAP_SYMBOLS = {
    "BTC", "ETH", "BNB", "XRP", "ADA", "SOL", "DOGE", "DOT", "LINK", "MATIC", "AVAX", "LTC", "BCH",
}

MID_CAP_SYMBOLS = {
    "UNI", "ATOM", "XLM", "VET", "FIL", "ETC", "MANA", "SAND", "AXS", "APE", "CHZ", "GALA",
    "ENJ", "FLOW", "ICP", "THETA", "XTZ", "MKR", "FTM", "AAVE", "SNX", "CRV", "COMP",
    "ARB", "OP", "LDO", "INJ", "SUI", "APT", "STX", "MINA", "TON", "HBAR", "RENDER", "IMX",
    "FET", "GRT",
}

# 交易对符号 -> CoinGecko ID
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "ADA": "cardano",
    "SOL": "solana",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "LINK": "chainlink",
    "MATIC": "matic-network",
    "AVAX": "avalanche-2",
    "LTC": "litecoin",
    "BCH": "bitcoin-cash",
    "UNI": "uniswap",
    "ATOM": "cosmos",
    "XLM": "stellar",
    "VET": "vechain",
    "FIL": "filecoin",
    "ETC": "ethereum-classic",
    "MANA": "decentraland",
    "SAND": "the-sandbox",
    "AXS": "axie-infinity",
    "APE": "apecoin",
    "CHZ": "chiliz",
    "GALA": "gala",
    "AAVE": "aave",
    "MKR": "maker",
    "CRV": "curve-dao-token",
    "ARB": "arbitrum",
    "OP": "optimism",
    "LDO": "lido-dao",
    "INJ": "injective-protocol",
    "SUI": "sui",
    "APT": "aptos",
    "TON": "the-open-network",
    "HBAR": "hedera-hashgraph",
    "RENDER": "render-token",
    "FET": "fetch-ai",
    "GRT": "the-graph",
    "PEPE": "pepe",
    "SHIB": "shiba-inu",
    "WIF": "dogwifcoin",
}


def get_static_tier(ticker: str) -> MarketCapTier:
    symbol = asset_from_ticker(ticker)
    if symbol in HIGH_CAP_SYMBOLS:
        return MarketCapTier.HIGH
    if symbol in MID_CAP_SYMBOLS:
        return MarketCapTier.MID
    return MarketCapTier.LOW


@dataclass
class MarketCapEntry:
    market_cap: float
    tier: MarketCapTier
    updated_at: float  # seconds


class MarketCapService:
    """
    市值分级查询 (CoinGecko)

    get_tier 为同步接口, 永不阻塞: 命中缓存直接返回, 否则先返回过期缓存或静态分级,
    同时在后台刷新
    """

    def __init__(
        self,
        api_url: str = COINGECKO_SIMPLE_PRICE,
        cache_minutes: int = 30,
        request_delay_seconds: float = 1.0,
        timeout_seconds: float = 10,
        high_cap_usd: float = 10_000_000_000,
        mid_cap_usd: float = 1_000_000_000,
    ):
        self.api_url = api_url
        self.cache_seconds = cache_minutes * 60
        self.request_delay_seconds = request_delay_seconds
        self.timeout_seconds = timeout_seconds
        self.high_cap_usd = high_cap_usd
        self.mid_cap_usd = mid_cap_usd
        self.cache: dict[str, MarketCapEntry] = {}
        self._session: aiohttp.ClientSession | None = None
        self._last_request = 0.0
        self._lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Task[MarketCapTier]] = {}

    async def init(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )

    async def close(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        if self._session:
            await self._session.close()
            self._session = None

    def categorize(self, market_cap: float) -> MarketCapTier:
        if market_cap >= self.high_cap_usd:
            return MarketCapTier.HIGH
        if market_cap >= self.mid_cap_usd:
            return MarketCapTier.MID
        return MarketCapTier.LOW

    def _is_fresh(self, entry: MarketCapEntry, now: float) -> bool:
        return now - entry.updated_at < self.cache_seconds

    async def _fetch_market_cap(self, symbol: str) -> float | None:
        coin_id = COINGECKO_IDS.get(symbol)
        if not coin_id:
            return None
        if self._session is None:
            return None

        try:
            async with self._lock:
                wait = self.request_delay_seconds - (time.monotonic() - self._last_request)
                if wait > 0:
                    await asyncio.sleep(wait)
                self._last_request = time.monotonic()
                response = await self._session.get(
                    self.api_url,
                    params={"ids": coin_id, "vs_currencies": "usd", "include_market_cap": "true"},
                )

            if response.status != 200:
                logger.warning(f"CoinGecko returned {response.status} for {symbol}")
                return None

            data: dict[str, Any] = await response.json()
            market_cap = data.get(coin_id, {}).get("usd_market_cap")
            if isinstance(market_cap, (int, float)):
                return float(market_cap)
            return None
        except Exception as e:
            logger.warning(f"Failed to fetch market cap for {symbol}: {e}")
            return None

    async def fetch_tier(self, ticker: str) -> MarketCapTier:
        symbol = asset_from_ticker(ticker)
        now = time.time()
        cached = self.cache.get(symbol)
        if cached and self._is_fresh(cached, now):
            return cached.tier

        market_cap = await self._fetch_market_cap(symbol)
        if market_cap is not None:
            tier = self.categorize(market_cap)
            self.cache[symbol] = MarketCapEntry(market_cap, tier, time.time())
            logger.debug(f"Market cap {symbol}: ${market_cap / 1e9:.2f}B -> {tier.value}")
            return tier

        if cached:
            return cached.tier
        return get_static_tier(ticker)

    def get_tier(self, ticker: str) -> MarketCapTier:
        symbol = asset_from_ticker(ticker)
        cached = self.cache.get(symbol)
        if cached and self._is_fresh(cached, time.time()):
            return cached.tier

        self._schedule_refresh(symbol, ticker)
        if cached:
            return cached.tier
        return get_static_tier(ticker)

    def _schedule_refresh(self, symbol: str, ticker: str) -> None:
        if symbol in self._pending or symbol not in COINGECKO_IDS or self._session is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.fetch_tier(ticker))
        self._pending[symbol] = task
        task.add_done_callback(lambda _: self._pending.pop(symbol, None))

    def clear_expired_cache(self) -> int:
        now = time.time()
        expired = [s for s, e in self.cache.items() if not self._is_fresh(e, now)]
        for symbol in expired:
            del self.cache[symbol]
        return len(expired)
