# src/alert/oracle.py
"""
远程形态分析器 (可选)

仅在本地规则没有结果时由引擎在后台调用, 任何失败都返回 None
"""
import logging
import time
import uuid
from dataclasses import asdict, replace
from typing import Any, Protocol

import aiohttp

from src.storage.models import (
    AssetFeatures,
    LiquidationSide,
    PatternSignal,
    PatternType,
    Severity,
    SignalMetrics,
    SignalSource,
    UnifiedAsset,
)

logger = logging.getLogger(__name__)

VELOCITY_WINDOW_MINUTES = 5

_SEVERITY_ALIASES = {"CRITICAL": Severity.EXTREME}


def build_features(unified: UnifiedAsset, now: int | None = None) -> AssetFeatures:
    if now is None:
        now = int(time.time() * 1000)
    cutoff = now - VELOCITY_WINDOW_MINUTES * 60 * 1000
    recent = sum(r.amount for r in unified.history if r.timestamp > cutoff)
    return AssetFeatures(
        asset=unified.asset,
        longs=unified.long_liquidated,
        shorts=unified.short_liquidated,
        velocity=recent / VELOCITY_WINDOW_MINUTES,
        ratio=unified.long_liquidated / max(unified.short_liquidated, 1),
        volume=unified.combined_total,
        price=unified.price,
    )


def feature_similarity(a: AssetFeatures, b: AssetFeatures) -> float:
    """多空金额 / 速度 / 比例逐项相对差, 取平均, 结果 0..1"""
    pairs = (
        (a.longs, b.longs),
        (a.shorts, b.shorts),
        (a.velocity, b.velocity),
        (a.ratio, b.ratio),
    )
    scores = [1 - abs(x - y) / max(abs(x), abs(y), 1) for x, y in pairs]
    return max(0.0, sum(scores) / len(scores))


class PatternOracle(Protocol):
    async def classify(self, features: AssetFeatures) -> PatternSignal | None: ...


class NullOracle:
    """仅本地识别"""

    async def classify(self, features: AssetFeatures) -> PatternSignal | None:
        return None


class RemotePatternOracle:
    def __init__(self, url: str, api_key: str | None = None, timeout_seconds: float = 10):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def init(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def classify(self, features: AssetFeatures) -> PatternSignal | None:
        if self._session is None:
            await self.init()

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"unifiedAssets": [asdict(features)], "timeWindowMinutes": VELOCITY_WINDOW_MINUTES}

        try:
            response = await self._session.post(self.url, json=payload, headers=headers)
            if response.status != 200:
                logger.warning(f"Pattern oracle returned {response.status} for {features.asset}")
                return None
            data = await response.json()
        except Exception as e:
            logger.warning(f"Pattern oracle request failed for {features.asset}: {e}")
            return None

        return self.parse_response(data, features)

    @staticmethod
    def parse_response(data: Any, features: AssetFeatures) -> PatternSignal | None:
        if not isinstance(data, dict):
            logger.warning("Pattern oracle returned a non-object body")
            return None
        patterns = data.get("detectedPatterns")
        if not isinstance(patterns, list):
            return None

        for item in patterns:
            if not isinstance(item, dict) or item.get("asset") != features.asset:
                continue
            try:
                pattern_type = PatternType(str(item["pattern"]).upper())
                confidence = float(item["confidence"])
                severity_name = str(item.get("severity", "MEDIUM")).upper()
                severity = _SEVERITY_ALIASES.get(severity_name) or Severity(severity_name)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Malformed oracle pattern for {features.asset}: {e}")
                return None

            # 0..1 视为比例
            if confidence <= 1:
                confidence *= 100
            confidence = max(0.0, min(100.0, confidence))

            dominant = (
                LiquidationSide.LONG if features.longs > features.shorts else LiquidationSide.SHORT
            )
            return PatternSignal(
                id=str(uuid.uuid4()),
                asset=features.asset,
                pattern_type=pattern_type,
                description=str(item.get("description", "")),
                confidence=confidence,
                severity=severity,
                timestamp=int(time.time() * 1000),
                metrics=SignalMetrics(
                    long_volume=features.longs,
                    short_volume=features.shorts,
                    dominant_type=dominant,
                    volume_ratio=features.ratio,
                    intensity=min(10, int(features.volume // 10000)),
                ),
                source=SignalSource.REMOTE,
            )
        return None


class CachedOracle:
    """相似特征在 TTL 内复用上一次结果, 置信度按相似度折算"""

    def __init__(
        self,
        inner: PatternOracle,
        cache_minutes: float = 5,
        similarity_threshold: float = 0.85,
    ):
        self.inner = inner
        self.ttl_seconds = cache_minutes * 60
        self.similarity_threshold = similarity_threshold
        self._cache: dict[str, tuple[AssetFeatures, PatternSignal, float]] = {}
        self.hits = 0
        self.misses = 0

    async def classify(self, features: AssetFeatures) -> PatternSignal | None:
        now = time.time()
        cached = self._cache.get(features.asset)
        if cached is not None:
            old_features, signal, stored_at = cached
            if now - stored_at < self.ttl_seconds:
                similarity = feature_similarity(features, old_features)
                if similarity >= self.similarity_threshold:
                    self.hits += 1
                    logger.debug(f"Oracle cache hit for {features.asset} ({similarity:.2f})")
                    return replace(
                        signal,
                        id=str(uuid.uuid4()),
                        confidence=signal.confidence * similarity,
                        timestamp=int(now * 1000),
                        source=SignalSource.CACHED,
                    )
            else:
                del self._cache[features.asset]

        self.misses += 1
        signal = await self.inner.classify(features)
        if signal is not None:
            self._cache[features.asset] = (features, signal, now)
        return signal

    async def close(self) -> None:
        close = getattr(self.inner, "close", None)
        if close is not None:
            await close()
