# tests/storage/test_database.py
import time

import pytest

from src.storage.database import Database
from src.storage.models import (
    AlertSide,
    LiquidationEvent,
    LiquidationSide,
    MarketCapTier,
    MarketType,
    PatternSignal,
    PatternType,
    Severity,
    SignalMetrics,
    SignalSource,
    VolumeAlert,
)


@pytest.fixture
async def db(tmp_path):
    db_path = tmp_path / "test.db"
    database = Database(str(db_path))
    await database.init()
    yield database
    await database.close()


def make_alert(alert_id: str = "a1", timestamp: int | None = None) -> VolumeAlert:
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    return VolumeAlert(
        id=alert_id,
        symbol="BTCUSDT",
        asset="BTC",
        timeframe="1m",
        market_type=MarketType.FUTURES,
        side=AlertSide.LONG,
        baseline=100.0,
        current=350.0,
        multiplier=3.5,
        price_movement_pct=3.0,
        price=43000.0,
        strength=5,
        trade_count=1200,
        timestamp=ts,
        expires_at=ts + 24 * 3600 * 1000,
        session_region="asia",
    )


def make_signal(signal_id: str = "s1", timestamp: int | None = None) -> PatternSignal:
    return PatternSignal(
        id=signal_id,
        asset="XYZ",
        pattern_type=PatternType.FLIP,
        description="XYZ flipped long -> short",
        confidence=65.0,
        severity=Severity.MEDIUM,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        metrics=SignalMetrics(
            long_volume=30000,
            short_volume=40000,
            dominant_type=LiquidationSide.SHORT,
            volume_ratio=1.33,
            intensity=7,
            previous_dominant=LiquidationSide.LONG,
        ),
        source=SignalSource.LOCAL,
    )


async def test_volume_alert_round_trip(db: Database):
    alert = make_alert()
    await db.insert_volume_alert(alert)
    await db.insert_volume_alert(alert)  # 重复写入被忽略

    alerts = await db.get_recent_volume_alerts(hours=24)

    assert alerts == [alert]


async def test_pattern_signal_round_trip(db: Database):
    signal = make_signal()
    await db.insert_pattern_signal(signal)

    signals = await db.get_recent_pattern_signals(minutes=15)

    assert signals == [signal]


async def test_recent_signals_respect_window(db: Database):
    old = int(time.time() * 1000) - 30 * 60 * 1000
    await db.insert_pattern_signal(make_signal("old", timestamp=old))
    await db.insert_pattern_signal(make_signal("new"))

    signals = await db.get_recent_pattern_signals(minutes=15)

    assert [s.id for s in signals] == ["new"]


async def test_liquidations(db: Database):
    now = int(time.time() * 1000)
    await db.insert_liquidation(
        LiquidationEvent("BTCUSDT", LiquidationSide.LONG, 150000, 43000, now), MarketCapTier.HIGH
    )
    await db.insert_liquidation(LiquidationEvent("XYZUSDT", LiquidationSide.SHORT, 8000, 1.2, now))

    all_liqs = await db.get_liquidations_since(now - 3600 * 1000)
    btc = await db.get_liquidations_since(now - 3600 * 1000, ticker="BTCUSDT")
    later = await db.get_liquidations_since(now + 1)

    assert len(all_liqs) == 2
    assert len(btc) == 1
    assert btc[0].side is LiquidationSide.LONG
    assert btc[0].amount_usd == 150000
    assert later == []


async def test_cleanup_old_data(db: Database):
    old = int(time.time() * 1000) - 10 * 24 * 3600 * 1000
    await db.insert_volume_alert(make_alert("old", timestamp=old))
    await db.insert_volume_alert(make_alert("new"))
    await db.insert_pattern_signal(make_signal("old", timestamp=old))
    await db.insert_liquidation(LiquidationEvent("BTCUSDT", LiquidationSide.LONG, 1, 1, old))

    deleted = await db.cleanup_old_data(retention_days=7)

    assert deleted == {"volume_alerts": 1, "liquidations": 1, "pattern_signals": 1}
    assert [a.id for a in await db.get_recent_volume_alerts(hours=24)] == ["new"]
