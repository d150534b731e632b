# src/alert/pattern.py
"""
爆仓形态识别

基于 SnapshotHistory 的最近 2~3 个快照:
- FLIP: 主导方向反转
- CASCADE: 同向加速累积
- SQUEEZE: 多空同时大额爆仓
- WHALE: 单边巨额爆仓
"""
import logging
import math
import time
import uuid
from collections.abc import Callable

from src.alert.throttle import SignalThrottle
from src.storage.models import (
    AssetSnapshot,
    LiquidationSide,
    PatternSignal,
    PatternType,
    Severity,
    SignalMetrics,
)

logger = logging.getLogger(__name__)


def _metrics(
    snapshot: AssetSnapshot,
    volume_ratio: float,
    previous_dominant: LiquidationSide | None = None,
) -> SignalMetrics:
    dominant_volume = snapshot.volume_of(snapshot.dominant_type)
    return SignalMetrics(
        long_volume=snapshot.long_volume,
        short_volume=snapshot.short_volume,
        dominant_type=snapshot.dominant_type,
        volume_ratio=volume_ratio,
        intensity=(
            min(10, int(dominant_volume // 10000)) if math.isfinite(dominant_volume) else 10
        ),
        previous_dominant=previous_dominant,
    )


def _is_finite(signal: PatternSignal) -> bool:
    m = signal.metrics
    numbers = (signal.confidence, m.long_volume, m.short_volume, m.volume_ratio)
    return all(math.isfinite(n) for n in numbers)


class PatternClassifier:
    def __init__(
        self,
        throttle: SignalThrottle,
        flip_min_usd: float = 25000,
        cascade_min_usd: float = 30000,
        squeeze_min_usd: float = 40000,
        squeeze_balance: float = 0.6,
        whale_min_usd: float = 300000,
    ):
        self.throttle = throttle
        self.flip_min_usd = flip_min_usd
        self.cascade_min_usd = cascade_min_usd
        self.squeeze_min_usd = squeeze_min_usd
        self.squeeze_balance = squeeze_balance
        self.whale_min_usd = whale_min_usd
        self._rules: list[Callable[[list[AssetSnapshot], int], PatternSignal | None]] = [
            self._detect_flip,
            self._detect_cascade,
            self._detect_squeeze,
            self._detect_whale,
        ]

    def classify(self, history: list[AssetSnapshot], now: int | None = None) -> list[PatternSignal]:
        """历史不足返回空列表, 不抛异常"""
        if now is None:
            now = int(time.time() * 1000)
        if not history or len(history) < 2:
            return []

        signals: list[PatternSignal] = []
        for rule in self._rules:
            try:
                signal = rule(history, now)
            except Exception as e:
                logger.warning(f"Pattern rule {rule.__name__} failed: {e}")
                continue
            if signal is None:
                continue
            if not _is_finite(signal):
                logger.warning(f"Suppressed non-finite {signal.pattern_type.value} for {signal.asset}")
                continue
            if not self.throttle.can_emit(signal.asset, signal.pattern_type, now):
                continue
            self.throttle.record(signal.asset, signal.pattern_type, now)
            logger.info(
                f"Pattern {signal.pattern_type.value} {signal.asset} "
                f"{signal.severity.value} confidence={signal.confidence:.0f}"
            )
            signals.append(signal)
        return signals

    def _build(
        self,
        snapshot: AssetSnapshot,
        pattern_type: PatternType,
        description: str,
        confidence: float,
        severity: Severity,
        metrics: SignalMetrics,
        now: int,
    ) -> PatternSignal:
        return PatternSignal(
            id=str(uuid.uuid4()),
            asset=snapshot.asset,
            pattern_type=pattern_type,
            description=description,
            confidence=confidence,
            severity=severity,
            timestamp=now,
            metrics=metrics,
        )

    def _detect_flip(self, history: list[AssetSnapshot], now: int) -> PatternSignal | None:
        prev, curr = history[-2], history[-1]
        if prev.dominant_type is curr.dominant_type:
            return None

        prev_vol = prev.volume_of(prev.dominant_type)
        curr_vol = curr.volume_of(curr.dominant_type)
        if prev_vol <= self.flip_min_usd or curr_vol <= self.flip_min_usd:
            return None

        confidence = 50 + min(min(prev_vol, curr_vol) / 2000, 45)
        if curr_vol > 100000:
            severity = Severity.EXTREME
        elif curr_vol > 50000:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        return self._build(
            curr,
            PatternType.FLIP,
            f"{curr.asset} flipped {prev.dominant_type.value} -> {curr.dominant_type.value}: "
            f"${prev_vol:,.0f} -> ${curr_vol:,.0f}",
            confidence,
            severity,
            _metrics(curr, curr_vol / max(prev_vol, 1), prev.dominant_type),
            now,
        )

    def _detect_cascade(self, history: list[AssetSnapshot], now: int) -> PatternSignal | None:
        if len(history) < 3:
            return None
        s1, s2, s3 = history[-3:]
        side = s3.dominant_type
        if s1.dominant_type is not side or s2.dominant_type is not side:
            return None

        v1, v2, v3 = s1.volume_of(side), s2.volume_of(side), s3.volume_of(side)
        if not (v1 < v2 < v3):
            return None
        # 加速: 后一段增量大于前一段
        if not (v3 - v2) > (v2 - v1):
            return None
        if v3 <= self.cascade_min_usd:
            return None

        confidence = min(90, 60 + (v3 - v1) / 2000)
        if v3 > 200000:
            severity = Severity.EXTREME
        elif v3 > 100000:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        return self._build(
            s3,
            PatternType.CASCADE,
            f"{s3.asset} {side.value} cascade: ${v1:,.0f} -> ${v2:,.0f} -> ${v3:,.0f}",
            confidence,
            severity,
            _metrics(s3, v3 / max(v1, 1)),
            now,
        )

    def _detect_squeeze(self, history: list[AssetSnapshot], now: int) -> PatternSignal | None:
        curr = history[-1]
        longs, shorts = curr.long_volume, curr.short_volume
        if longs <= self.squeeze_min_usd or shorts <= self.squeeze_min_usd:
            return None

        ratio = min(longs, shorts) / max(longs, shorts, 1)
        if ratio <= self.squeeze_balance:
            return None

        confidence = min(85, 40 + ratio * 55)
        severity = Severity.EXTREME if curr.total_volume > 200000 else Severity.HIGH

        return self._build(
            curr,
            PatternType.SQUEEZE,
            f"{curr.asset} squeeze: longs ${longs:,.0f} / shorts ${shorts:,.0f}",
            confidence,
            severity,
            _metrics(curr, ratio),
            now,
        )

    def _detect_whale(self, history: list[AssetSnapshot], now: int) -> PatternSignal | None:
        curr = history[-1]
        largest = max(curr.long_volume, curr.short_volume)
        if largest <= self.whale_min_usd:
            return None

        confidence = min(98, 70 + largest / 15000)
        smallest = min(curr.long_volume, curr.short_volume)

        return self._build(
            curr,
            PatternType.WHALE,
            f"{curr.asset} whale {curr.dominant_type.value} liquidation ${largest:,.0f}",
            confidence,
            Severity.EXTREME,
            _metrics(curr, largest / max(smallest, 1)),
            now,
        )
