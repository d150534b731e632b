# src/storage/sink.py
"""
持久化过滤与异步写入

金额 / 波动 / 成交量三项标准至少满足 criteria_required 项才写库, 写入以后台任务进行
"""
import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from src.config import PersistenceConfig
from src.storage.database import Database
from src.storage.models import (
    LiquidationEvent,
    MarketCapTier,
    PatternSignal,
    Severity,
    SideLiquidationAsset,
    VolumeAlert,
)

logger = logging.getLogger(__name__)


class AlertSink:
    def __init__(self, db: Database, config: PersistenceConfig | None = None):
        self.db = db
        self.config = config or PersistenceConfig()
        self.min_signal_severity = Severity(self.config.min_signal_severity.upper())
        self.written = 0
        self.failed = 0
        self._pending: set[asyncio.Task[None]] = set()

    def _passes(self, *criteria: bool) -> bool:
        return sum(criteria) >= self.config.criteria_required

    def should_persist_liquidation(
        self,
        event: LiquidationEvent,
        market_cap: MarketCapTier,
        side_asset: SideLiquidationAsset | None = None,
    ) -> bool:
        if market_cap is MarketCapTier.HIGH:
            high_value = event.amount_usd > self.config.high_cap_amount_usd
        else:
            high_value = event.amount_usd > self.config.low_cap_amount_usd
        volatile = side_asset is not None and side_asset.intensity >= self.config.min_intensity
        significant = (
            side_asset is not None
            and side_asset.liquidated_total >= self.config.min_side_total_usd
        )
        return self._passes(high_value, volatile, significant)

    def should_persist_volume_alert(self, alert: VolumeAlert) -> bool:
        notional = alert.current * alert.price
        return self._passes(
            notional >= self.config.min_notional_usd,
            abs(alert.price_movement_pct) >= self.config.min_price_movement_pct,
            alert.multiplier >= self.config.min_multiplier,
        )

    def should_persist_signal(self, signal: PatternSignal) -> bool:
        m = signal.metrics
        return self._passes(
            max(m.long_volume, m.short_volume) >= self.config.min_side_total_usd,
            signal.severity.rank >= self.min_signal_severity.rank,
            m.intensity >= self.config.min_intensity,
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"No running loop, dropped {label} write")
            return False
        task = loop.create_task(self._write(coro, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _write(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
            self.written += 1
        except Exception as e:
            self.failed += 1
            logger.error(f"Failed to persist {label}: {e}")

    def submit_liquidation(
        self,
        event: LiquidationEvent,
        market_cap: MarketCapTier,
        side_asset: SideLiquidationAsset | None = None,
    ) -> bool:
        if not self.config.enabled or not self.should_persist_liquidation(
            event, market_cap, side_asset
        ):
            return False
        return self._spawn(self.db.insert_liquidation(event, market_cap), f"liquidation {event.ticker}")

    def submit_volume_alert(self, alert: VolumeAlert) -> bool:
        if not self.config.enabled or not self.should_persist_volume_alert(alert):
            return False
        return self._spawn(self.db.insert_volume_alert(alert), f"volume alert {alert.symbol}")

    def submit_signal(self, signal: PatternSignal) -> bool:
        if not self.config.enabled or not self.should_persist_signal(signal):
            return False
        return self._spawn(
            self.db.insert_pattern_signal(signal),
            f"{signal.pattern_type.value} signal {signal.asset}",
        )

    async def close(self, timeout: float = 5.0) -> None:
        if not self._pending:
            return
        pending = list(self._pending)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} pending writes on close")
