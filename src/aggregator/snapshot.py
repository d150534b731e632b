# src/aggregator/snapshot.py
import time

from src.aggregator.ring_buffer import RingBuffer
from src.storage.models import AssetSnapshot, UnifiedAsset


class SnapshotHistory:
    """每个资产最近几次合并快照, 供形态识别使用"""

    def __init__(
        self,
        min_change_usd: float = 10000,
        window_minutes: int = 10,
        max_snapshots: int = 5,
    ):
        self.min_change_usd = min_change_usd
        self.window_ms = window_minutes * 60 * 1000
        self.max_snapshots = max_snapshots
        self._history: dict[str, RingBuffer[AssetSnapshot]] = {}

    def record(self, unified: UnifiedAsset, now: int | None = None) -> bool:
        """金额变化足够大或主导方向改变时才记录, 返回是否新增"""
        if now is None:
            now = int(time.time() * 1000)
        snapshot = AssetSnapshot.from_unified(unified, now)

        history = self._history.get(unified.asset)
        if history is not None and len(history) > 0:
            last = history[-1]
            changed = abs(snapshot.total_volume - last.total_volume) > self.min_change_usd
            flipped = snapshot.dominant_type is not last.dominant_type
            if not changed and not flipped:
                return False

        cutoff = now - self.window_ms
        recent = [s for s in (history or []) if s.timestamp > cutoff]
        recent.append(snapshot)
        self._history[unified.asset] = RingBuffer(self.max_snapshots, recent)
        return True

    def get(self, asset: str) -> list[AssetSnapshot]:
        history = self._history.get(asset)
        return list(history) if history else []

    def assets(self) -> list[str]:
        return list(self._history)

    def sweep(self, now: int | None = None) -> int:
        if now is None:
            now = int(time.time() * 1000)
        cutoff = now - self.window_ms
        removed = 0
        for asset in list(self._history):
            recent = [s for s in self._history[asset] if s.timestamp > cutoff]
            removed += len(self._history[asset]) - len(recent)
            if recent:
                self._history[asset] = RingBuffer(self.max_snapshots, recent)
            else:
                del self._history[asset]
        return removed
