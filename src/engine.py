# src/engine.py
"""
检测引擎

单事件循环内同步处理 K 线与爆仓事件, 外部 I/O (远程分析 / 监听回调) 全部以后台任务运行
"""
import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from src.aggregator.baseline import BaselineTracker
from src.aggregator.daily import DailyLiquidationTotals, utc_day_start
from src.aggregator.liquidation import LiquidationAccumulator
from src.aggregator.snapshot import SnapshotHistory
from src.aggregator.timeframe import TimeframeAggregator
from src.alert.oracle import NullOracle, PatternOracle, build_features
from src.alert.pattern import PatternClassifier
from src.alert.throttle import SignalThrottle
from src.alert.volume_anomaly import VolumeAnomalyDetector
from src.config import Config
from src.storage.models import (
    Candle,
    LiquidationEvent,
    LiquidationSide,
    MarketCapTier,
    PatternSignal,
    SideLiquidationAsset,
    UnifiedAsset,
    VolumeAlert,
    asset_from_ticker,
)

logger = logging.getLogger(__name__)

VolumeAlertListener = Callable[[VolumeAlert], Awaitable[None]]
PatternSignalListener = Callable[[PatternSignal], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_valid_candle(candle: Any) -> bool:
    if not isinstance(candle, Candle) or not candle.symbol:
        return False
    for value in (candle.open, candle.close, candle.volume):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    if candle.volume < 0 or candle.open < 0 or candle.close < 0:
        return False
    return isinstance(candle.trade_count, int) and candle.trade_count >= 0


class DetectionEngine:
    def __init__(
        self,
        config: Config,
        throttle: SignalThrottle | None = None,
        oracle: PatternOracle | None = None,
        tier_lookup: Callable[[str], MarketCapTier] | None = None,
    ):
        self.config = config
        self.throttle = throttle or SignalThrottle(config.throttle.cooldown_minutes)
        self.oracle: PatternOracle = oracle or NullOracle()

        volume = config.volume
        self.aggregator = TimeframeAggregator(config.timeframes.base, config.timeframes.derived)
        self.baselines = BaselineTracker(
            alpha=volume.alpha,
            sample_cap=volume.sample_cap,
            stale_minutes=volume.baseline_stale_minutes,
        )
        self.detector = VolumeAnomalyDetector(
            self.baselines,
            min_samples=volume.min_samples,
            threshold=volume.multiplier_threshold,
            price_bonus_pct=volume.price_bonus_pct,
            trade_bonus_count=volume.trade_bonus_count,
            strength_bands=volume.strength_bands,
            ttl_hours=volume.alert_ttl_hours,
        )

        liq = config.liquidation
        self.liquidations = LiquidationAccumulator(
            tier_lookup=tier_lookup,
            min_amount_usd=liq.min_amount_usd,
            history_size=liq.history_size,
            stale_minutes=liq.stale_minutes,
            intensity_unit_usd=liq.intensity_unit_usd,
            top_limit=liq.top_limit,
        )

        self.daily = DailyLiquidationTotals()

        patterns = config.patterns
        self.snapshots = SnapshotHistory(
            min_change_usd=patterns.snapshot_min_change_usd,
            window_minutes=patterns.snapshot_window_minutes,
            max_snapshots=patterns.snapshot_history,
        )
        self.classifier = PatternClassifier(
            self.throttle,
            flip_min_usd=patterns.flip_min_usd,
            cascade_min_usd=patterns.cascade_min_usd,
            squeeze_min_usd=patterns.squeeze_min_usd,
            squeeze_balance=patterns.squeeze_balance,
            whale_min_usd=patterns.whale_min_usd,
        )
        self.signal_ttl_ms = patterns.signal_ttl_minutes * 60 * 1000

        self.volume_alerts: list[VolumeAlert] = []
        self.pattern_signals: list[PatternSignal] = []
        self._alert_listeners: list[VolumeAlertListener] = []
        self._signal_listeners: list[PatternSignalListener] = []

        self._tasks: set[asyncio.Task[Any]] = set()
        self._analyzing: set[str] = set()
        self._maintenance_task: asyncio.Task[None] | None = None
        self.running = False
        self.start_time = time.time()
        self.last_error: str | None = None
        self.counters = {
            "candles": 0,
            "liquidations": 0,
            "discarded": 0,
            "volume_alerts": 0,
            "pattern_signals": 0,
        }

    # ---- 监听 ----

    def add_volume_alert_listener(self, callback: VolumeAlertListener) -> None:
        self._alert_listeners.append(callback)

    def add_pattern_signal_listener(self, callback: PatternSignalListener) -> None:
        self._signal_listeners.append(callback)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_listener(self, callback: Callable[[Any], Awaitable[None]], item: Any) -> None:
        try:
            await callback(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Listener {getattr(callback, '__name__', callback)} failed: {e}")

    def _dispatch(self, listeners: list[Callable[[Any], Awaitable[None]]], item: Any) -> None:
        if not listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for callback in listeners:
            self._track(loop.create_task(self._run_listener(callback, item)))

    # ---- K 线 ----

    def process_candle(self, candle: Candle, now: int | None = None) -> list[VolumeAlert]:
        """先检测再更新基线, 保证当前 K 线不稀释自身的对比基准"""
        if not _is_valid_candle(candle):
            self.counters["discarded"] += 1
            logger.warning(f"Discarding malformed candle: {candle!r}")
            return []
        if not candle.is_closed:
            logger.debug(f"Ignoring open candle {candle.symbol} {candle.timeframe}")
            return []
        if now is None:
            now = _now_ms()

        self.counters["candles"] += 1
        candles = [candle, *self.aggregator.on_closed_candle(candle)]

        alerts: list[VolumeAlert] = []
        for c in candles:
            try:
                alert = self.detector.detect(
                    c.symbol,
                    c.timeframe,
                    c.market_type,
                    c.volume,
                    c.price_movement_pct,
                    c.close,
                    c.trade_count,
                    now,
                )
                self.baselines.update(c.symbol, c.timeframe, c.volume, c.market_type, now)
            except ValueError as e:
                self.last_error = str(e)
                logger.warning(f"Skipping candle {c.symbol} {c.timeframe}: {e}")
                continue
            if alert is not None:
                alerts.append(alert)

        if alerts:
            self.volume_alerts.extend(alerts)
            self.counters["volume_alerts"] += len(alerts)
            self._prune_alerts(now)
            for alert in alerts:
                self._dispatch(self._alert_listeners, alert)
        return alerts

    def warm_up(self, candles: Iterable[Candle]) -> int:
        """用历史 K 线预热基线, 不做检测"""
        count = 0
        for candle in sorted(candles, key=lambda c: c.open_time):
            if not _is_valid_candle(candle) or not candle.is_closed:
                continue
            now = candle.close_time
            for c in [candle, *self.aggregator.on_closed_candle(candle)]:
                self.baselines.update(c.symbol, c.timeframe, c.volume, c.market_type, now)
            count += 1
        if count:
            logger.info(f"Warmed up baselines with {count} candles")
        return count

    # ---- 爆仓 ----

    def process_liquidation(
        self, event: LiquidationEvent, now: int | None = None
    ) -> list[PatternSignal]:
        if now is None:
            now = _now_ms()
        if not isinstance(event, LiquidationEvent) or not self.liquidations.is_valid(event):
            self.counters["discarded"] += 1
            logger.warning(f"Discarding malformed liquidation event: {event!r}")
            return []
        try:
            accepted = self.liquidations.ingest(event, now)
        except Exception as e:
            self.counters["discarded"] += 1
            self.last_error = str(e)
            logger.warning(f"Failed to ingest liquidation {event!r}: {e}")
            return []
        if not accepted:
            return []
        self.counters["liquidations"] += 1
        self.daily.add(event, now)

        asset = asset_from_ticker(event.ticker)
        unified = self.liquidations.get_unified(asset)
        if unified is None:
            return []
        self.snapshots.record(unified, now)
        signals = self.classifier.classify(self.snapshots.get(asset), now)

        if signals:
            self._emit_signals(signals, now)
        elif not isinstance(self.oracle, NullOracle):
            self._schedule_oracle(unified, now)
        return signals

    def _emit_signals(self, signals: list[PatternSignal], now: int) -> None:
        self.pattern_signals.extend(signals)
        self.counters["pattern_signals"] += len(signals)
        self._prune_signals(now)
        for signal in signals:
            self._dispatch(self._signal_listeners, signal)

    def _schedule_oracle(self, unified: UnifiedAsset, now: int) -> None:
        if unified.asset in self._analyzing:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        features = build_features(unified, now)
        self._analyzing.add(unified.asset)
        self._track(loop.create_task(self._consult_oracle(features)))

    async def _consult_oracle(self, features: Any) -> None:
        try:
            signal = await asyncio.wait_for(
                self.oracle.classify(features), timeout=self.config.oracle.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Pattern oracle timed out for {features.asset}")
            return
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Pattern oracle failed for {features.asset}: {e}")
            return
        finally:
            self._analyzing.discard(features.asset)

        if signal is None:
            return
        now = _now_ms()
        if not self.throttle.can_emit(signal.asset, signal.pattern_type, now):
            return
        self.throttle.record(signal.asset, signal.pattern_type, now)
        logger.info(
            f"Oracle pattern {signal.pattern_type.value} {signal.asset} "
            f"{signal.severity.value} ({signal.source.value})"
        )
        self._emit_signals([signal], now)

    # ---- 采集回调 ----

    async def on_candle(self, candle: Candle) -> None:
        self.process_candle(candle)

    async def on_liquidation(self, event: LiquidationEvent) -> None:
        self.process_liquidation(event)

    # ---- 恢复 / 查询 ----

    def restore(
        self,
        alerts: Iterable[VolumeAlert] = (),
        signals: Iterable[PatternSignal] = (),
        now: int | None = None,
    ) -> None:
        if now is None:
            now = _now_ms()
        known_alerts = {a.id for a in self.volume_alerts}
        self.volume_alerts.extend(a for a in alerts if a.id not in known_alerts)
        known_signals = {s.id for s in self.pattern_signals}
        self.pattern_signals.extend(s for s in signals if s.id not in known_signals)
        self._prune_alerts(now)
        self._prune_signals(now)
        # 恢复冷却状态, 避免重启后重复发出同一形态
        for s in self.pattern_signals:
            self.throttle.record(s.asset, s.pattern_type, s.timestamp)
        logger.info(
            f"Restored {len(self.volume_alerts)} volume alerts, "
            f"{len(self.pattern_signals)} pattern signals"
        )

    def liquidation_replay_start(self, now: int | None = None) -> int:
        """回放起点: 当日 UTC 0 点与爆仓簿保留窗口中较早者"""
        if now is None:
            now = _now_ms()
        return min(utc_day_start(now), now - self.liquidations.stale_ms)

    def restore_liquidations(
        self, events: Iterable[LiquidationEvent], now: int | None = None
    ) -> int:
        """
        用已存储的爆仓事件重建爆仓簿与当日累计

        按事件自身时间戳回放, 不做形态识别也不触发监听; 返回写入爆仓簿的条数
        """
        if now is None:
            now = _now_ms()
        book_cutoff = now - self.liquidations.stale_ms
        day_start = utc_day_start(now)
        self.daily.roll(now)

        replayed = 0
        for event in sorted(events, key=lambda e: e.timestamp):
            if not self.liquidations.is_valid(event) or event.timestamp > now:
                continue
            if event.timestamp >= day_start:
                self.daily.add(event, event.timestamp)
            if event.timestamp >= book_cutoff and self.liquidations.ingest(event, event.timestamp):
                replayed += 1

        logger.info(
            f"Restored {replayed} liquidations, daily totals for {len(self.daily)} assets"
        )
        return replayed

    def get_volume_alerts(self, now: int | None = None) -> list[VolumeAlert]:
        if now is None:
            now = _now_ms()
        alerts = [a for a in self.volume_alerts if not a.is_expired(now)]
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    def get_pattern_signals(self, now: int | None = None) -> list[PatternSignal]:
        if now is None:
            now = _now_ms()
        cutoff = now - self.signal_ttl_ms
        signals = [s for s in self.pattern_signals if s.timestamp > cutoff]
        return sorted(signals, key=lambda s: (s.severity.rank, s.timestamp), reverse=True)

    def get_top_liquidations(
        self, side: LiquidationSide, limit: int | None = None
    ) -> list[SideLiquidationAsset]:
        return self.liquidations.get_top_assets(side, limit)

    def get_unified_assets(self) -> dict[str, UnifiedAsset]:
        return self.liquidations.get_unified_view()

    def status(self) -> dict[str, Any]:
        stats = self.liquidations.stats()
        return {
            "has_data": self.counters["candles"] > 0 or stats.long_assets + stats.short_assets > 0,
            "last_error": self.last_error,
            "is_analyzing": bool(self._analyzing),
            "counters": dict(self.counters),
            "baselines": len(self.baselines),
            "long_assets": stats.long_assets,
            "short_assets": stats.short_assets,
            "long_total": stats.long,
            "short_total": stats.short,
            "daily_long": self.daily.long_total,
            "daily_short": self.daily.short_total,
            "daily_assets": len(self.daily),
            "active_alerts": len(self.get_volume_alerts()),
            "active_signals": len(self.get_pattern_signals()),
            "uptime_seconds": time.time() - self.start_time,
        }

    # ---- 维护 ----

    def _prune_alerts(self, now: int) -> None:
        alerts = [a for a in self.volume_alerts if not a.is_expired(now)]
        alerts.sort(key=lambda a: a.timestamp)
        self.volume_alerts = alerts[-self.config.volume.max_alerts :]

    def _prune_signals(self, now: int) -> None:
        cutoff = now - self.signal_ttl_ms
        signals = [s for s in self.pattern_signals if s.timestamp > cutoff]
        signals.sort(key=lambda s: s.timestamp)
        self.pattern_signals = signals[-self.config.patterns.max_signals :]

    def run_maintenance(self, now: int | None = None) -> dict[str, int]:
        if now is None:
            now = _now_ms()
        removed_sides = self.liquidations.sweep(now)
        removed = {
            "long_assets": removed_sides[LiquidationSide.LONG],
            "short_assets": removed_sides[LiquidationSide.SHORT],
            "baselines": self.baselines.sweep(now),
            "snapshots": self.snapshots.sweep(now),
            "throttle": self.throttle.sweep(now),
            "daily_reset": self.daily.roll(now),
        }
        before = len(self.volume_alerts) + len(self.pattern_signals)
        self._prune_alerts(now)
        self._prune_signals(now)
        removed["expired"] = before - len(self.volume_alerts) - len(self.pattern_signals)
        logger.debug(f"Maintenance: {removed}")
        return removed

    async def _maintenance_loop(self) -> None:
        interval = self.config.intervals.sweep_seconds
        while self.running:
            await asyncio.sleep(interval)
            try:
                self.run_maintenance()
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"Maintenance error: {e}")

    async def start(self) -> None:
        self.running = True
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("Detection engine started")

    async def stop(self) -> None:
        self.running = False
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._analyzing.clear()
        logger.info("Detection engine stopped")
