# tests/test_engine.py
import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.aggregator.daily import DAY_MS, utc_day_start
from src.alert.throttle import SignalThrottle
from src.config import Config
from src.engine import DetectionEngine
from src.storage.models import (
    AlertSide,
    Candle,
    LiquidationEvent,
    LiquidationSide,
    MarketType,
    PatternSignal,
    PatternType,
    Severity,
    SignalMetrics,
    SignalSource,
    VolumeAlert,
)

T0 = 1_700_000_000_000
MINUTE = 60 * 1000


@pytest.fixture
def engine():
    return DetectionEngine(Config(), throttle=SignalThrottle())


def make_candle(
    i: int,
    volume: float = 100.0,
    open_: float = 100.0,
    close: float = 100.5,
    trades: int = 50,
    symbol: str = "BTCUSDT",
) -> Candle:
    return Candle(
        symbol=symbol,
        timeframe="1m",
        market_type=MarketType.FUTURES,
        open_time=T0 + i * MINUTE,
        close_time=T0 + (i + 1) * MINUTE - 1,
        open=open_,
        close=close,
        volume=volume,
        trade_count=trades,
    )


def liq(ticker: str, side: LiquidationSide, amount: float, ts: int = T0) -> LiquidationEvent:
    return LiquidationEvent(ticker, side, amount, 1.0, ts)


def make_signal(
    signal_id: str, severity: Severity, timestamp: int, asset: str = "XYZ"
) -> PatternSignal:
    return PatternSignal(
        id=signal_id,
        asset=asset,
        pattern_type=PatternType.FLIP,
        description="",
        confidence=60,
        severity=severity,
        timestamp=timestamp,
        metrics=SignalMetrics(30000, 40000, LiquidationSide.SHORT, 1.3, 7),
    )


def feed_baseline(engine: DetectionEngine, count: int = 5) -> None:
    for i in range(count):
        assert engine.process_candle(make_candle(i), now=T0 + (i + 1) * MINUTE) == []


def test_volume_spike_alert(engine):
    feed_baseline(engine)

    alerts = engine.process_candle(
        make_candle(5, volume=350, open_=100, close=103, trades=1200), now=T0 + 6 * MINUTE
    )

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.timeframe == "1m"
    assert alert.side is AlertSide.LONG
    assert alert.multiplier == pytest.approx(3.5)
    assert alert.strength == 5
    assert engine.counters["volume_alerts"] == 1


def test_baseline_updated_after_detection(engine):
    feed_baseline(engine)
    engine.process_candle(make_candle(5, volume=350), now=T0 + 6 * MINUTE)

    baseline = engine.baselines.get("BTCUSDT", "1m", MarketType.FUTURES)
    assert baseline.average == pytest.approx(125.0)
    assert baseline.sample_count == 6


def test_no_alert_at_threshold(engine):
    feed_baseline(engine)
    assert engine.process_candle(make_candle(5, volume=300), now=T0 + 6 * MINUTE) == []


def test_malformed_candle_discarded(engine):
    feed_baseline(engine)

    assert engine.process_candle(make_candle(5, volume=float("nan"))) == []
    assert engine.process_candle(make_candle(6, volume=-1)) == []
    assert engine.counters["discarded"] == 2
    assert engine.baselines.get("BTCUSDT", "1m", MarketType.FUTURES).sample_count == 5


def test_warm_up_enables_detection(engine):
    count = engine.warm_up([make_candle(i) for i in range(5)])

    assert count == 5
    assert engine.counters["candles"] == 0
    alerts = engine.process_candle(make_candle(5, volume=500), now=T0 + 6 * MINUTE)
    assert [a.timeframe for a in alerts] == ["1m"]


def test_flip_signal(engine):
    assert engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0) == []

    signals = engine.process_liquidation(
        liq("XYZUSDT", LiquidationSide.SHORT, 40000), now=T0 + 1000
    )

    assert len(signals) == 1
    signal = signals[0]
    assert signal.pattern_type is PatternType.FLIP
    assert signal.severity is Severity.MEDIUM
    assert signal.confidence == pytest.approx(65)
    assert signal.metrics.previous_dominant is LiquidationSide.LONG


def test_flip_throttled(engine):
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0)
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.SHORT, 40000), now=T0 + 1000)

    # 再次反转, 冷却期内不重复发出
    again = engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0 + 2000)

    assert again == []
    assert engine.counters["pattern_signals"] == 1


def test_cascade_signal(engine):
    engine.process_liquidation(liq("ABCUSDT", LiquidationSide.SHORT, 10000), now=T0)
    engine.process_liquidation(liq("ABCUSDT", LiquidationSide.SHORT, 15000), now=T0 + 1000)
    signals = engine.process_liquidation(
        liq("ABCUSDT", LiquidationSide.SHORT, 35000), now=T0 + 2000
    )

    assert [s.pattern_type for s in signals] == [PatternType.CASCADE]
    assert signals[0].severity is Severity.MEDIUM
    assert signals[0].metrics.dominant_type is LiquidationSide.SHORT


def test_malformed_liquidation_discarded(engine):
    assert engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, -5)) == []
    assert engine.process_liquidation(liq("", LiquidationSide.LONG, 50000)) == []

    assert engine.counters["discarded"] == 2
    assert engine.counters["liquidations"] == 0


def test_small_liquidation_ignored(engine):
    assert engine.process_liquidation(liq("BTCUSDT", LiquidationSide.LONG, 15000)) == []
    assert engine.get_top_liquidations(LiquidationSide.LONG) == []
    assert engine.counters["discarded"] == 0


def test_sides_stay_separate(engine):
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0)
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.SHORT, 8000), now=T0 + 1000)

    longs = engine.get_top_liquidations(LiquidationSide.LONG)
    shorts = engine.get_top_liquidations(LiquidationSide.SHORT)
    unified = engine.get_unified_assets()["XYZ"]

    assert [a.liquidated_total for a in longs] == [30000]
    assert [a.liquidated_total for a in shorts] == [8000]
    assert unified.combined_total == 38000
    assert unified.dominant_type is LiquidationSide.LONG


def test_maintenance_sweeps_each_side(engine):
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0)
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.SHORT, 8000), now=T0 + 25 * MINUTE)

    removed = engine.run_maintenance(now=T0 + 31 * MINUTE)

    assert removed["long_assets"] == 1
    assert removed["short_assets"] == 0
    assert engine.get_top_liquidations(LiquidationSide.LONG) == []
    assert engine.get_unified_assets()["XYZ"].long_liquidated == 0


def test_signal_ordering_and_ttl(engine):
    now = T0 + 20 * MINUTE
    engine.restore(
        signals=[
            make_signal("old", Severity.EXTREME, T0),
            make_signal("medium", Severity.MEDIUM, now - MINUTE),
            make_signal("extreme", Severity.EXTREME, now - 2 * MINUTE),
            make_signal("high", Severity.HIGH, now - 3 * MINUTE),
        ],
        now=now,
    )

    signals = engine.get_pattern_signals(now=now)

    assert [s.id for s in signals] == ["extreme", "high", "medium"]


def test_signal_cap(engine):
    now = T0 + MINUTE
    signals = [make_signal(f"s{i}", Severity.HIGH, T0 + i) for i in range(150)]
    engine.restore(signals=signals, now=now)

    assert len(engine.get_pattern_signals(now=now)) == 100
    assert engine.pattern_signals[0].id == "s50"


def test_restore_dedupes_and_drops_expired(engine):
    now = int(time.time() * 1000)
    alert = VolumeAlert(
        id="a1",
        symbol="BTCUSDT",
        asset="BTC",
        timeframe="1m",
        market_type=MarketType.FUTURES,
        side=AlertSide.LONG,
        baseline=100,
        current=350,
        multiplier=3.5,
        price_movement_pct=3,
        price=100,
        strength=5,
        trade_count=1200,
        timestamp=now - MINUTE,
        expires_at=now + MINUTE,
    )
    expired = VolumeAlert(**{**alert.__dict__, "id": "a0", "expires_at": now - 1})

    engine.restore(alerts=[alert, expired], now=now)
    engine.restore(alerts=[alert], now=now)

    assert [a.id for a in engine.get_volume_alerts(now=now)] == ["a1"]


async def test_listeners_receive_events(engine):
    received: list = []

    async def on_alert(alert):
        received.append(alert)

    async def on_signal(signal):
        received.append(signal)

    async def broken(_):
        raise RuntimeError("boom")

    engine.add_volume_alert_listener(on_alert)
    engine.add_volume_alert_listener(broken)
    engine.add_pattern_signal_listener(on_signal)

    feed_baseline(engine)
    engine.process_candle(make_candle(5, volume=350), now=T0 + 6 * MINUTE)
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0)
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.SHORT, 40000), now=T0 + 1000)
    await asyncio.gather(*list(engine._tasks))

    assert len(received) == 2
    assert engine.last_error == "boom"


async def test_oracle_consulted_when_no_local_pattern():
    now = int(time.time() * 1000)
    remote = PatternSignal(
        id="r1",
        asset="XYZ",
        pattern_type=PatternType.WHALE,
        description="remote",
        confidence=80,
        severity=Severity.HIGH,
        timestamp=now,
        metrics=SignalMetrics(30000, 0, LiquidationSide.LONG, 30000, 3),
        source=SignalSource.REMOTE,
    )
    oracle = MagicMock()
    oracle.classify = AsyncMock(return_value=remote)
    engine = DetectionEngine(Config(), throttle=SignalThrottle(), oracle=oracle)

    assert engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000, now), now=now) == []
    assert engine.status()["is_analyzing"] is True
    await asyncio.gather(*list(engine._tasks))

    oracle.classify.assert_awaited_once()
    assert oracle.classify.await_args.args[0].asset == "XYZ"
    assert [s.id for s in engine.get_pattern_signals()] == ["r1"]
    assert engine.status()["is_analyzing"] is False


async def test_oracle_failure_is_contained():
    oracle = MagicMock()
    oracle.classify = AsyncMock(side_effect=RuntimeError("unreachable"))
    engine = DetectionEngine(Config(), throttle=SignalThrottle(), oracle=oracle)

    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000))
    await asyncio.gather(*list(engine._tasks))

    assert engine.get_pattern_signals() == []
    assert engine.last_error == "unreachable"


async def test_stop_cancels_pending_oracle():
    async def slow(_):
        await asyncio.sleep(10)

    oracle = MagicMock()
    oracle.classify = slow
    engine = DetectionEngine(Config(), throttle=SignalThrottle(), oracle=oracle)
    await engine.start()

    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000))
    await asyncio.sleep(0)
    await engine.stop()

    assert engine.running is False
    assert engine._tasks == set()
    assert engine.status()["is_analyzing"] is False


async def test_start_stop(engine):
    await engine.start()
    assert engine.running is True

    await engine.stop()
    assert engine.running is False
    assert engine._maintenance_task is None


async def test_async_callbacks(engine):
    await engine.on_candle(make_candle(0))
    await engine.on_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000))

    assert engine.counters["candles"] == 1
    assert engine.counters["liquidations"] == 1


def test_status(engine):
    assert engine.status()["has_data"] is False

    feed_baseline(engine)
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.SHORT, 30000))
    status = engine.status()

    assert status["has_data"] is True
    assert status["counters"]["candles"] == 5
    assert status["short_assets"] == 1
    assert status["short_total"] == 30000
    assert status["daily_short"] == 30000
    assert status["daily_assets"] == 1
    assert status["last_error"] is None


def test_restore_liquidations_rebuilds_books_and_daily(engine):
    now = T0 + 5 * MINUTE
    day_start = utc_day_start(now)
    events = [
        liq("XYZUSDT", LiquidationSide.LONG, 30000, T0),
        liq("ABCUSDT", LiquidationSide.SHORT, 20000, T0 - 60 * MINUTE),
        liq("DEFUSDT", LiquidationSide.LONG, 50000, day_start - MINUTE),
        liq("XYZUSDT", LiquidationSide.LONG, -1, T0),
    ]

    assert engine.liquidation_replay_start(now) == day_start
    replayed = engine.restore_liquidations(events, now=now)

    assert replayed == 1
    longs = engine.get_top_liquidations(LiquidationSide.LONG)
    assert [a.asset for a in longs] == ["XYZ"]
    assert longs[0].last_update_time == T0
    assert engine.get_top_liquidations(LiquidationSide.SHORT) == []
    # 当日累计包含已移出爆仓簿窗口的事件
    assert engine.daily.long_total == 30000
    assert engine.daily.short_total == 20000
    assert engine.daily.get("DEF") is None
    # 回放不做形态识别
    assert engine.counters["liquidations"] == 0
    assert engine.snapshots.get("XYZ") == []
    assert engine.pattern_signals == []


def test_restore_signals_primes_throttle(engine):
    now = T0 + 20 * MINUTE
    engine.restore(
        signals=[
            make_signal("recent", Severity.HIGH, now - MINUTE, asset="XYZ"),
            make_signal("expired", Severity.HIGH, now - 16 * MINUTE, asset="ABC"),
        ],
        now=now,
    )

    assert engine.throttle.can_emit("XYZ", PatternType.FLIP, now) is False
    assert engine.throttle.can_emit("ABC", PatternType.FLIP, now) is True

    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=now)
    signals = engine.process_liquidation(liq("XYZUSDT", LiquidationSide.SHORT, 40000), now=now + 1000)
    assert signals == []


def test_maintenance_resets_daily_totals(engine):
    engine.process_liquidation(liq("XYZUSDT", LiquidationSide.LONG, 30000), now=T0)
    assert engine.daily.long_total == 30000

    removed = engine.run_maintenance(now=utc_day_start(T0) + DAY_MS)

    assert removed["daily_reset"] == 1
    assert len(engine.daily) == 0
