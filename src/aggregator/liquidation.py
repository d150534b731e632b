# src/aggregator/liquidation.py
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from src.aggregator.ring_buffer import RingBuffer
from src.collector.market_cap import get_static_tier
from src.storage.models import (
    LiquidationEvent,
    LiquidationRecord,
    LiquidationSide,
    MarketCapTier,
    SideLiquidationAsset,
    UnifiedAsset,
    asset_from_ticker,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_AMOUNT_USD = {"high": 20000.0, "mid": 10000.0, "low": 6000.0}


@dataclass
class LiqStats:
    long: float = 0.0
    short: float = 0.0
    long_assets: int = 0
    short_assets: int = 0
    by_tier: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> float:
        return self.long + self.short


def calculate_intensity(amount: float, unit_usd: float = 30000) -> int:
    """单笔爆仓强度: 原始分 0..10, 折算为 1..5"""
    raw = min(10, int(amount // max(unit_usd, 1)))
    return max(1, math.ceil(raw / 2))


class SideLiquidationBook:
    """单边 (多或空) 爆仓累加器, 只接收本方向事件"""

    def __init__(self, side: LiquidationSide, history_size: int = 20):
        self.side = side
        self.history_size = history_size
        self._assets: dict[str, SideLiquidationAsset] = {}

    def ingest(
        self,
        event: LiquidationEvent,
        market_cap: MarketCapTier,
        intensity: int,
        now: int,
    ) -> SideLiquidationAsset:
        if event.side is not self.side:
            raise ValueError(f"{self.side.value} book cannot ingest {event.side.value} event")

        asset_name = asset_from_ticker(event.ticker)
        record = LiquidationRecord(side=event.side, amount=event.amount_usd, timestamp=now)

        existing = self._assets.get(asset_name)
        if existing is None:
            existing = SideLiquidationAsset(
                asset=asset_name,
                ticker=event.ticker,
                side=self.side,
                price=event.price,
                market_cap=market_cap,
                position_count=0,
                liquidated_total=0.0,
                first_detection_time=now,
                last_update_time=now,
                intensity=intensity,
                history=RingBuffer(self.history_size),
            )
            self._assets[asset_name] = existing

        existing.price = event.price
        existing.market_cap = market_cap
        existing.position_count += 1
        existing.liquidated_total += event.amount_usd
        existing.last_update_time = now
        existing.intensity = max(existing.intensity, intensity)
        existing.history.append(record)
        return existing

    def get(self, asset: str) -> SideLiquidationAsset | None:
        return self._assets.get(asset)

    def get_all(self) -> list[SideLiquidationAsset]:
        return sorted(self._assets.values(), key=lambda a: a.liquidated_total, reverse=True)

    def sweep(self, cutoff: int) -> int:
        stale = [name for name, a in self._assets.items() if a.last_update_time < cutoff]
        for name in stale:
            del self._assets[name]
        return len(stale)

    def __len__(self) -> int:
        return len(self._assets)

    def __contains__(self, asset: object) -> bool:
        return asset in self._assets


class LiquidationAccumulator:
    """
    按资产和方向累加爆仓数据

    多头和空头各自独立的 SideLiquidationBook, 合并视图只读且按需计算
    """

    def __init__(
        self,
        tier_lookup: Callable[[str], MarketCapTier] | None = None,
        min_amount_usd: dict[str, float] | None = None,
        history_size: int = 20,
        stale_minutes: int = 30,
        intensity_unit_usd: float = 30000,
        top_limit: int = 50,
    ):
        self.tier_lookup = tier_lookup
        self.min_amount_usd = {**DEFAULT_MIN_AMOUNT_USD, **(min_amount_usd or {})}
        self.history_size = history_size
        self.stale_ms = stale_minutes * 60 * 1000
        self.intensity_unit_usd = intensity_unit_usd
        self.top_limit = top_limit
        self.books = {
            LiquidationSide.LONG: SideLiquidationBook(LiquidationSide.LONG, history_size),
            LiquidationSide.SHORT: SideLiquidationBook(LiquidationSide.SHORT, history_size),
        }

    def _resolve_tier(self, ticker: str) -> MarketCapTier:
        if self.tier_lookup is None:
            return get_static_tier(ticker)
        try:
            return self.tier_lookup(ticker)
        except Exception as e:
            logger.warning(f"Market cap lookup failed for {ticker}, using static tier: {e}")
            return get_static_tier(ticker)

    @staticmethod
    def is_valid(event: LiquidationEvent) -> bool:
        if not isinstance(event.ticker, str) or not event.ticker:
            return False
        if not isinstance(event.side, LiquidationSide):
            return False
        for value in (event.amount_usd, event.price):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return False
            if not math.isfinite(value) or value <= 0:
                return False
        return True

    def ingest(self, event: LiquidationEvent, now: int | None = None) -> bool:
        """返回事件是否被累加"""
        if not self.is_valid(event):
            logger.warning(f"Discarding malformed liquidation event: {event!r}")
            return False

        tier = self._resolve_tier(event.ticker)
        if event.amount_usd < self.min_amount_usd[tier.value]:
            return False

        if now is None:
            now = int(time.time() * 1000)

        intensity = calculate_intensity(event.amount_usd, self.intensity_unit_usd)
        self.books[event.side].ingest(event, tier, intensity, now)
        logger.debug(
            f"Liquidation: {event.ticker} {event.side.value} ${event.amount_usd:,.0f} ({tier.value})"
        )
        return True

    def get_top_assets(
        self, side: LiquidationSide, limit: int | None = None
    ) -> list[SideLiquidationAsset]:
        limit = self.top_limit if limit is None else min(limit, self.top_limit)
        return self.books[side].get_all()[:limit]

    def get_unified(self, asset: str) -> UnifiedAsset | None:
        long_asset = self.books[LiquidationSide.LONG].get(asset)
        short_asset = self.books[LiquidationSide.SHORT].get(asset)
        if long_asset is None and short_asset is None:
            return None

        parts = [a for a in (long_asset, short_asset) if a is not None]
        latest = max(parts, key=lambda a: a.last_update_time)
        history = sorted(
            (record for a in parts for record in a.history), key=lambda r: r.timestamp
        )[-self.history_size :]

        return UnifiedAsset(
            asset=asset,
            ticker=latest.ticker,
            price=latest.price,
            market_cap=latest.market_cap,
            long_positions=long_asset.position_count if long_asset else 0,
            long_liquidated=long_asset.liquidated_total if long_asset else 0.0,
            short_positions=short_asset.position_count if short_asset else 0,
            short_liquidated=short_asset.liquidated_total if short_asset else 0.0,
            intensity=max(a.intensity for a in parts),
            first_detection_time=min(a.first_detection_time for a in parts),
            last_update_time=latest.last_update_time,
            history=tuple(history),
        )

    def get_unified_view(self) -> dict[str, UnifiedAsset]:
        names: set[str] = set()
        for book in self.books.values():
            names.update(a.asset for a in book.get_all())
        view: dict[str, UnifiedAsset] = {}
        for name in sorted(names):
            unified = self.get_unified(name)
            if unified is not None:
                view[name] = unified
        return view

    def sweep(self, now: int | None = None) -> dict[LiquidationSide, int]:
        if now is None:
            now = int(time.time() * 1000)
        cutoff = now - self.stale_ms
        removed = {side: book.sweep(cutoff) for side, book in self.books.items()}
        if any(removed.values()):
            logger.info(
                f"Swept stale liquidation assets: long={removed[LiquidationSide.LONG]} "
                f"short={removed[LiquidationSide.SHORT]}"
            )
        return removed

    def stats(self) -> LiqStats:
        long_assets = self.books[LiquidationSide.LONG].get_all()
        short_assets = self.books[LiquidationSide.SHORT].get_all()

        by_tier: dict[str, int] = {}
        for a in long_assets + short_assets:
            key = f"{a.market_cap.value}_{a.side.value}"
            by_tier[key] = by_tier.get(key, 0) + 1

        return LiqStats(
            long=sum(a.liquidated_total for a in long_assets),
            short=sum(a.liquidated_total for a in short_assets),
            long_assets=len(long_assets),
            short_assets=len(short_assets),
            by_tier=by_tier,
        )
