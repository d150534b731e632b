# tests/aggregator/test_baseline.py
import math

import pytest

from src.aggregator.baseline import BaselineTracker
from src.storage.models import MarketType


def test_first_observation_seeds_average():
    tracker = BaselineTracker()
    baseline = tracker.update("BTCUSDT", "1m", 250.0, now=1000)

    assert baseline.average == 250.0
    assert baseline.sample_count == 1
    assert baseline.last_updated == 1000


def test_ewma_closed_form():
    alpha = 0.1
    tracker = BaselineTracker(alpha=alpha)
    volumes = [100.0, 200.0, 50.0, 400.0, 120.0]
    for v in volumes:
        tracker.update("BTCUSDT", "1m", v)

    # 首个样本作为种子, 后续按权重递推
    expected = volumes[0] * (1 - alpha) ** (len(volumes) - 1)
    for k, v in enumerate(volumes[1:], start=1):
        expected += alpha * (1 - alpha) ** (len(volumes) - 1 - k) * v

    baseline = tracker.get("BTCUSDT", "1m")
    assert baseline is not None
    assert math.isclose(baseline.average, expected)


def test_sample_count_capped():
    tracker = BaselineTracker(sample_cap=10)
    for _ in range(25):
        tracker.update("BTCUSDT", "1m", 100.0)

    baseline = tracker.get("BTCUSDT", "1m")
    assert baseline is not None
    assert baseline.sample_count == 10


def test_keyed_by_market_and_timeframe():
    tracker = BaselineTracker()
    tracker.update("BTCUSDT", "1m", 100.0, MarketType.SPOT)
    tracker.update("BTCUSDT", "1m", 500.0, MarketType.FUTURES)
    tracker.update("BTCUSDT", "3m", 900.0, MarketType.FUTURES)

    assert tracker.get("BTCUSDT", "1m", MarketType.SPOT).average == 100.0
    assert tracker.get("BTCUSDT", "1m", MarketType.FUTURES).average == 500.0
    assert tracker.get("BTCUSDT", "3m").average == 900.0
    assert len(tracker) == 3


@pytest.mark.parametrize("volume", [float("nan"), float("inf"), -1.0])
def test_rejects_invalid_volume(volume):
    tracker = BaselineTracker()
    with pytest.raises(ValueError):
        tracker.update("BTCUSDT", "1m", volume)
    assert tracker.get("BTCUSDT", "1m") is None


def test_sweep_removes_stale():
    tracker = BaselineTracker(stale_minutes=10)
    tracker.update("BTCUSDT", "1m", 100.0, now=0)
    tracker.update("ETHUSDT", "1m", 100.0, now=9 * 60_000)

    removed = tracker.sweep(now=11 * 60_000)

    assert removed == 1
    assert tracker.get("BTCUSDT", "1m") is None
    assert tracker.get("ETHUSDT", "1m") is not None


def test_invalid_alpha():
    with pytest.raises(ValueError):
        BaselineTracker(alpha=0)
