# src/aggregator/daily.py
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from src.storage.models import LiquidationEvent, LiquidationSide, asset_from_ticker

logger = logging.getLogger(__name__)

DAY_MS = 24 * 3600 * 1000


def utc_day_start(timestamp_ms: int) -> int:
    """所在 UTC 日 00:00 的毫秒时间戳"""
    return timestamp_ms - timestamp_ms % DAY_MS


@dataclass
class DailyTotal:
    asset: str
    long: float = 0.0
    short: float = 0.0
    count: int = 0

    @property
    def total(self) -> float:
        return self.long + self.short


class DailyLiquidationTotals:
    """
    按 UTC 自然日累计每个资产的多空爆仓金额

    跨过 UTC 0 点时整体清零, 不受爆仓簿 30 分钟清理影响
    """

    def __init__(self) -> None:
        self.day_start: int | None = None
        self._totals: dict[str, DailyTotal] = {}

    def roll(self, now: int | None = None) -> int:
        """进入新的一天则清零, 返回被清掉的资产数"""
        if now is None:
            now = int(time.time() * 1000)
        day_start = utc_day_start(now)
        if self.day_start is None:
            self.day_start = day_start
            return 0
        if day_start <= self.day_start:
            return 0

        cleared = len(self._totals)
        self._totals.clear()
        self.day_start = day_start
        day = datetime.fromtimestamp(day_start / 1000, tz=UTC).strftime("%Y-%m-%d")
        logger.info(f"Daily liquidation totals reset for {day} ({cleared} assets cleared)")
        return cleared

    def add(self, event: LiquidationEvent, now: int | None = None) -> bool:
        """返回是否计入, 早于当日的事件忽略"""
        if now is None:
            now = int(time.time() * 1000)
        self.roll(now)
        assert self.day_start is not None
        if now < self.day_start:
            return False

        asset = asset_from_ticker(event.ticker)
        entry = self._totals.get(asset)
        if entry is None:
            entry = DailyTotal(asset)
            self._totals[asset] = entry
        if event.side is LiquidationSide.LONG:
            entry.long += event.amount_usd
        else:
            entry.short += event.amount_usd
        entry.count += 1
        return True

    def get(self, asset: str) -> DailyTotal | None:
        return self._totals.get(asset)

    def get_all(self) -> list[DailyTotal]:
        return sorted(self._totals.values(), key=lambda t: t.total, reverse=True)

    @property
    def long_total(self) -> float:
        return sum(t.long for t in self._totals.values())

    @property
    def short_total(self) -> float:
        return sum(t.short for t in self._totals.values())

    def __len__(self) -> int:
        return len(self._totals)
