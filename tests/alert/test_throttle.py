# tests/alert/test_throttle.py
from src.alert.throttle import SignalThrottle
from src.storage.models import PatternType

MINUTE = 60_000


def test_cooldown():
    throttle = SignalThrottle(cooldown_minutes=5)

    assert throttle.can_emit("BTC", PatternType.FLIP, now=0) is True
    throttle.record("BTC", PatternType.FLIP, now=0)

    assert throttle.can_emit("BTC", PatternType.FLIP, now=4 * MINUTE) is False
    assert throttle.can_emit("BTC", PatternType.FLIP, now=5 * MINUTE) is True


def test_keys_are_independent():
    throttle = SignalThrottle()
    throttle.record("BTC", PatternType.FLIP, now=0)

    assert throttle.can_emit("BTC", PatternType.CASCADE, now=1) is True
    assert throttle.can_emit("ETH", PatternType.FLIP, now=1) is True


def test_record_sweeps_old_entries():
    throttle = SignalThrottle(cooldown_minutes=5)
    throttle.record("BTC", PatternType.FLIP, now=0)
    throttle.record("ETH", PatternType.WHALE, now=11 * MINUTE)

    stats = throttle.stats()
    assert stats["total_records"] == 1
    assert stats["active_assets"] == ["ETH"]


def test_reset():
    throttle = SignalThrottle()
    throttle.record("BTC", PatternType.FLIP, now=0)
    throttle.reset()

    assert throttle.can_emit("BTC", PatternType.FLIP, now=1) is True
    assert throttle.stats()["total_records"] == 0
