# src/storage/database.py
import time
from typing import Any

import aiosqlite

from .models import (
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


def _row_to_volume_alert(row: Any) -> VolumeAlert:
    return VolumeAlert(
        id=row[0],
        symbol=row[1],
        asset=row[2],
        timeframe=row[3],
        market_type=MarketType(row[4]),
        side=AlertSide(row[5]),
        baseline=row[6],
        current=row[7],
        multiplier=row[8],
        price_movement_pct=row[9],
        price=row[10],
        strength=row[11],
        trade_count=row[12],
        timestamp=row[13],
        expires_at=row[14],
        session_region=row[15] or "",
    )


def _row_to_pattern_signal(row: Any) -> PatternSignal:
    return PatternSignal(
        id=row[0],
        asset=row[1],
        pattern_type=PatternType(row[2]),
        description=row[3],
        confidence=row[4],
        severity=Severity(row[5]),
        timestamp=row[6],
        metrics=SignalMetrics(
            long_volume=row[7],
            short_volume=row[8],
            dominant_type=LiquidationSide(row[9]),
            volume_ratio=row[10],
            intensity=row[11],
            previous_dominant=LiquidationSide(row[12]) if row[12] else None,
        ),
        source=SignalSource(row[13]),
    )


class Database:
    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        await self._create_tables()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _create_tables(self) -> None:
        assert self.conn is not None
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS volume_alerts (
                id TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                asset TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                market_type TEXT NOT NULL,
                side TEXT NOT NULL,
                baseline REAL NOT NULL,
                current REAL NOT NULL,
                multiplier REAL NOT NULL,
                price_movement_pct REAL NOT NULL,
                price REAL NOT NULL,
                strength INTEGER NOT NULL,
                trade_count INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                session_region TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_volume_alerts_time ON volume_alerts(timestamp);

            CREATE TABLE IF NOT EXISTS liquidations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ticker TEXT NOT NULL,
                side TEXT NOT NULL,
                amount_usd REAL NOT NULL,
                price REAL NOT NULL,
                market_cap TEXT,
                timestamp INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_liq_ticker_time ON liquidations(ticker, timestamp);

            CREATE TABLE IF NOT EXISTS pattern_signals (
                id TEXT PRIMARY KEY,
                asset TEXT NOT NULL,
                pattern_type TEXT NOT NULL,
                description TEXT NOT NULL,
                confidence REAL NOT NULL,
                severity TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                long_volume REAL NOT NULL,
                short_volume REAL NOT NULL,
                dominant_type TEXT NOT NULL,
                volume_ratio REAL NOT NULL,
                intensity INTEGER NOT NULL,
                previous_dominant TEXT,
                source TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_signals_asset_time ON pattern_signals(asset, timestamp);
        """)
        await self.conn.commit()

    async def insert_volume_alert(self, alert: VolumeAlert) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """INSERT OR IGNORE INTO volume_alerts
               (id, symbol, asset, timeframe, market_type, side, baseline, current, multiplier,
                price_movement_pct, price, strength, trade_count, timestamp, expires_at,
                session_region)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                alert.id,
                alert.symbol,
                alert.asset,
                alert.timeframe,
                alert.market_type.value,
                alert.side.value,
                alert.baseline,
                alert.current,
                alert.multiplier,
                alert.price_movement_pct,
                alert.price,
                alert.strength,
                alert.trade_count,
                alert.timestamp,
                alert.expires_at,
                alert.session_region,
            ),
        )
        await self.conn.commit()

    async def get_recent_volume_alerts(self, hours: int = 24) -> list[VolumeAlert]:
        assert self.conn is not None
        cutoff = int(time.time() * 1000) - hours * 3600 * 1000
        cursor = await self.conn.execute(
            """SELECT id, symbol, asset, timeframe, market_type, side, baseline, current,
                      multiplier, price_movement_pct, price, strength, trade_count, timestamp,
                      expires_at, session_region
               FROM volume_alerts WHERE timestamp >= ?
               ORDER BY timestamp DESC""",
            (cutoff,),
        )
        rows = await cursor.fetchall()
        return [_row_to_volume_alert(row) for row in rows]

    async def insert_liquidation(
        self, event: LiquidationEvent, market_cap: MarketCapTier | None = None
    ) -> int:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """INSERT INTO liquidations (ticker, side, amount_usd, price, market_cap, timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                event.ticker,
                event.side.value,
                event.amount_usd,
                event.price,
                market_cap.value if market_cap else None,
                event.timestamp,
            ),
        )
        await self.conn.commit()
        return cursor.lastrowid or 0

    async def get_liquidations_since(
        self, cutoff: int, ticker: str | None = None
    ) -> list[LiquidationEvent]:
        assert self.conn is not None
        query = """SELECT ticker, side, amount_usd, price, timestamp
                   FROM liquidations WHERE timestamp >= ?"""
        params: list[Any] = [cutoff]
        if ticker:
            query += " AND ticker = ?"
            params.append(ticker)
        query += " ORDER BY timestamp DESC"
        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [
            LiquidationEvent(
                ticker=row[0],
                side=LiquidationSide(row[1]),
                amount_usd=row[2],
                price=row[3],
                timestamp=row[4],
            )
            for row in rows
        ]

    async def insert_pattern_signal(self, signal: PatternSignal) -> None:
        assert self.conn is not None
        m = signal.metrics
        await self.conn.execute(
            """INSERT OR IGNORE INTO pattern_signals
               (id, asset, pattern_type, description, confidence, severity, timestamp,
                long_volume, short_volume, dominant_type, volume_ratio, intensity,
                previous_dominant, source)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                signal.id,
                signal.asset,
                signal.pattern_type.value,
                signal.description,
                signal.confidence,
                signal.severity.value,
                signal.timestamp,
                m.long_volume,
                m.short_volume,
                m.dominant_type.value,
                m.volume_ratio,
                m.intensity,
                m.previous_dominant.value if m.previous_dominant else None,
                signal.source.value,
            ),
        )
        await self.conn.commit()

    async def get_recent_pattern_signals(self, minutes: int = 15) -> list[PatternSignal]:
        assert self.conn is not None
        cutoff = int(time.time() * 1000) - minutes * 60 * 1000
        cursor = await self.conn.execute(
            """SELECT id, asset, pattern_type, description, confidence, severity, timestamp,
                      long_volume, short_volume, dominant_type, volume_ratio, intensity,
                      previous_dominant, source
               FROM pattern_signals WHERE timestamp >= ?
               ORDER BY timestamp DESC""",
            (cutoff,),
        )
        rows = await cursor.fetchall()
        return [_row_to_pattern_signal(row) for row in rows]

    async def cleanup_old_data(self, retention_days: int = 7) -> dict[str, int]:
        """删除超过保留期的数据, 返回各表删除行数"""
        assert self.conn is not None
        cutoff = int(time.time() * 1000) - retention_days * 24 * 3600 * 1000
        deleted: dict[str, int] = {}
        for table in ("volume_alerts", "liquidations", "pattern_signals"):
            cursor = await self.conn.execute(
                f"DELETE FROM {table} WHERE timestamp < ?",
                (cutoff,),
            )
            deleted[table] = cursor.rowcount or 0
        await self.conn.commit()
        return deleted
