# src/alert/throttle.py
import logging
import time

from src.storage.models import PatternType

logger = logging.getLogger(__name__)


class SignalThrottle:
    """按 (资产, 形态) 冷却, 避免重复发出同类信号"""

    def __init__(self, cooldown_minutes: float = 5):
        self.cooldown_ms = int(cooldown_minutes * 60 * 1000)
        self._records: dict[tuple[str, PatternType], int] = {}

    def can_emit(self, asset: str, pattern_type: PatternType, now: int | None = None) -> bool:
        last = self._records.get((asset, pattern_type))
        if last is None:
            return True
        if now is None:
            now = int(time.time() * 1000)
        elapsed = now - last
        if elapsed >= self.cooldown_ms:
            return True
        logger.debug(
            f"{asset} {pattern_type.value} throttled "
            f"({(self.cooldown_ms - elapsed) / 60000:.1f} min left)"
        )
        return False

    def record(self, asset: str, pattern_type: PatternType, now: int | None = None) -> None:
        if now is None:
            now = int(time.time() * 1000)
        self._records[(asset, pattern_type)] = now
        self.sweep(now)

    def sweep(self, now: int | None = None) -> int:
        if now is None:
            now = int(time.time() * 1000)
        cutoff = now - 2 * self.cooldown_ms
        stale = [k for k, ts in self._records.items() if ts < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)

    def stats(self) -> dict[str, object]:
        return {
            "total_records": len(self._records),
            "active_assets": sorted({asset for asset, _ in self._records}),
        }

    def reset(self) -> None:
        self._records.clear()
