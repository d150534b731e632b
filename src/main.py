# src/main.py
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

from src.alert.oracle import CachedOracle, RemotePatternOracle
from src.alert.throttle import SignalThrottle
from src.collector.binance_kline import BinanceKlineCollector
from src.collector.binance_liq import BinanceLiquidationCollector
from src.collector.kline_backfiller import KlineBackfiller
from src.collector.market_cap import MarketCapService
from src.config import Config, load_config
from src.engine import DetectionEngine
from src.notifier.formatter import (
    format_pattern_signal,
    format_signal_list,
    format_status,
    format_top_liquidations,
    format_volume_alert,
    format_volume_list,
)
from src.notifier.telegram import TelegramNotifier
from src.storage.database import Database
from src.storage.models import (
    LiquidationEvent,
    LiquidationSide,
    MarketType,
    PatternSignal,
    Severity,
    VolumeAlert,
    asset_from_ticker,
)
from src.storage.sink import AlertSink

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_oracle(config: Config) -> CachedOracle | None:
    oracle_config = config.oracle
    if not oracle_config.enabled or not oracle_config.url:
        return None
    remote = RemotePatternOracle(
        oracle_config.url, oracle_config.api_key, oracle_config.timeout_seconds
    )
    return CachedOracle(remote, oracle_config.cache_minutes, oracle_config.similarity_threshold)


class FlowRadar:
    def __init__(self, config: Config):
        self.config = config
        self.db = Database(config.database.path)
        self.sink = AlertSink(self.db, config.persistence)

        mc = config.market_cap
        self.market_cap: MarketCapService | None = None
        if mc.enabled:
            self.market_cap = MarketCapService(
                api_url=mc.api_url,
                cache_minutes=mc.cache_minutes,
                request_delay_seconds=mc.request_delay_seconds,
                timeout_seconds=mc.timeout_seconds,
                high_cap_usd=mc.high_cap_usd,
                mid_cap_usd=mc.mid_cap_usd,
            )

        self.oracle = build_oracle(config)
        self.engine = DetectionEngine(
            config,
            throttle=SignalThrottle(config.throttle.cooldown_minutes),
            oracle=self.oracle,
            tier_lookup=self.market_cap.get_tier if self.market_cap else None,
        )

        self.notifier: TelegramNotifier | None = None
        if config.telegram:
            self.notifier = TelegramNotifier(config.telegram.bot_token, config.telegram.chat_id)
            self.notify_min_severity = Severity(config.telegram.notify_min_severity.upper())

        self.backfiller = KlineBackfiller(
            config.spot_symbols if config.exchanges.binance_spot.enabled else [],
            config.futures_symbols if config.exchanges.binance_futures.enabled else [],
            timeframe=config.timeframes.base,
            candles=config.warmup.candles,
        )
        self.collectors: list[Any] = []
        self.running = False

    async def init(self) -> None:
        # Ensure data directory exists
        Path(self.config.database.path).parent.mkdir(parents=True, exist_ok=True)

        await self.db.init()
        if self.market_cap:
            await self.market_cap.init()

        # 恢复近期告警与信号
        alerts = await self.db.get_recent_volume_alerts(hours=self.config.volume.alert_ttl_hours)
        signals = await self.db.get_recent_pattern_signals(
            minutes=self.config.patterns.signal_ttl_minutes
        )
        self.engine.restore(alerts, signals)

        # 重建爆仓簿与当日累计
        liquidations = await self.db.get_liquidations_since(self.engine.liquidation_replay_start())
        self.engine.restore_liquidations(liquidations)

        if self.config.warmup.enabled:
            await self.backfiller.init()
            try:
                self.engine.warm_up(await self.backfiller.fetch_all())
            finally:
                await self.backfiller.close()

        self.engine.add_volume_alert_listener(self._on_volume_alert)
        self.engine.add_pattern_signal_listener(self._on_pattern_signal)

        # Setup collectors
        base = self.config.timeframes.base
        exchanges = self.config.exchanges
        if exchanges.binance_spot.enabled and self.config.spot_symbols:
            self.collectors.append(
                BinanceKlineCollector(
                    self.config.spot_symbols, MarketType.SPOT, self.engine.on_candle, base
                )
            )
        if exchanges.binance_futures.enabled and self.config.futures_symbols:
            self.collectors.append(
                BinanceKlineCollector(
                    self.config.futures_symbols, MarketType.FUTURES, self.engine.on_candle, base
                )
            )
        if exchanges.binance_liquidations.enabled:
            self.collectors.append(BinanceLiquidationCollector(self._on_liquidation))

        # Setup Telegram callbacks
        if self.notifier:
            self.notifier.on_status = self._on_status
            self.notifier.on_top = self._on_top
            self.notifier.on_signals = self._on_signals
            self.notifier.on_volume = self._on_volume

    async def _on_liquidation(self, event: LiquidationEvent) -> None:
        before = self.engine.counters["liquidations"]
        self.engine.process_liquidation(event)
        if self.engine.counters["liquidations"] == before:
            return

        side_asset = self.engine.liquidations.books[event.side].get(asset_from_ticker(event.ticker))
        if side_asset:
            self.sink.submit_liquidation(event, side_asset.market_cap, side_asset)

    async def _notify(self, text: str) -> None:
        if not self.notifier:
            return
        try:
            await self.notifier.send_message(text)
        except Exception as e:
            self.engine.last_error = str(e)
            logger.error(f"Failed to send Telegram message: {e}")

    async def _on_volume_alert(self, alert: VolumeAlert) -> None:
        self.sink.submit_volume_alert(alert)
        if self.config.telegram and alert.strength >= self.config.telegram.notify_min_strength:
            await self._notify(format_volume_alert(alert))

    async def _on_pattern_signal(self, pattern: PatternSignal) -> None:
        self.sink.submit_signal(pattern)
        if self.notifier and pattern.severity.rank >= self.notify_min_severity.rank:
            await self._notify(format_pattern_signal(pattern))

    async def _on_status(self) -> str:
        symbols = sorted(set(self.config.spot_symbols) | set(self.config.futures_symbols))
        return format_status(self.engine.status(), symbols)

    async def _on_top(self, side: LiquidationSide) -> str:
        return format_top_liquidations(side, self.engine.get_top_liquidations(side, 10))

    async def _on_signals(self) -> str:
        return format_signal_list(self.engine.get_pattern_signals()[:10])

    async def _on_volume(self) -> str:
        return format_volume_list(self.engine.get_volume_alerts()[:10])

    async def _cleanup_old_data(self) -> None:
        """定时清理过期数据"""
        interval = self.config.intervals.cleanup_hours * 3600
        retention_days = self.config.database.retention_days

        while self.running:
            await asyncio.sleep(interval)
            try:
                deleted = await self.db.cleanup_old_data(retention_days)
                total = sum(deleted.values())
                if total > 0:
                    logger.info(f"Cleaned up {total} old records: {deleted}")
                if self.market_cap:
                    self.market_cap.clear_expired_cache()
            except Exception as e:
                logger.error(f"Failed to cleanup old data: {e}")

    async def run(self) -> None:
        await self.init()
        self.running = True

        await self.engine.start()
        for collector in self.collectors:
            await collector.start()

        if self.notifier:
            await self.notifier.start_polling()

        tasks = [asyncio.create_task(self._cleanup_old_data())]

        logger.info("Flow Radar started")

        # Wait for shutdown signal
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await stop_event.wait()

        # Cleanup
        self.running = False
        for task in tasks:
            task.cancel()
        for collector in self.collectors:
            await collector.stop()
        await self.engine.stop()
        if self.notifier:
            await self.notifier.stop_polling()
        await self.sink.close()
        if self.oracle is not None:
            await self.oracle.close()
        if self.market_cap:
            await self.market_cap.close()
        await self.db.close()

        logger.info("Flow Radar stopped")


async def main() -> None:
    config = load_config(Path("config.yaml"))
    radar = FlowRadar(config)
    await radar.run()


if __name__ == "__main__":
    asyncio.run(main())
