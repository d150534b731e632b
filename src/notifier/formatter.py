# src/notifier/formatter.py
from datetime import UTC, datetime
from typing import Any

from src.storage.models import (
    LiquidationSide,
    MarketType,
    PatternSignal,
    PatternType,
    Severity,
    SideLiquidationAsset,
    SignalSource,
    VolumeAlert,
)

PATTERN_EMOJI = {
    PatternType.FLIP: "🔄",
    PatternType.CASCADE: "🌊",
    PatternType.SQUEEZE: "🗜️",
    PatternType.WHALE: "🐋",
}

SEVERITY_EMOJI = {
    Severity.LOW: "⚪",
    Severity.MEDIUM: "🟡",
    Severity.HIGH: "🟠",
    Severity.EXTREME: "🔴",
}

SIDE_NAMES = {
    LiquidationSide.LONG: "多头",
    LiquidationSide.SHORT: "空头",
}


def _format_usd(value: float) -> str:
    if abs(value) >= 1_000_000_000:
        return f"${value / 1_000_000_000:.1f}B"
    elif abs(value) >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    elif abs(value) >= 1_000:
        return f"${value / 1_000:.1f}K"
    else:
        return f"${value:,.0f}"


def _format_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M UTC")


def _strength_bar(strength: int) -> str:
    return "🟩" * strength + "⬜" * (5 - strength)


def format_volume_alert(alert: VolumeAlert) -> str:
    market = "现货" if alert.market_type is MarketType.SPOT else "合约"
    direction = "📈" if alert.price_movement_pct > 0 else "📉"

    return f"""📢 {alert.asset} {market} 成交量异动 ({alert.timeframe})

{direction} {alert.side.value.upper()} | {alert.multiplier:.1f}x 基线
强度: {_strength_bar(alert.strength)} {alert.strength}/5

成交量: {alert.current:,.2f} (基线 {alert.baseline:,.2f})
价格: ${alert.price:,.4g} ({alert.price_movement_pct:+.2f}%)
成交笔数: {alert.trade_count:,}

⏰ {_format_time(alert.timestamp)}"""


def format_pattern_signal(signal: PatternSignal) -> str:
    m = signal.metrics
    source = "" if signal.source is SignalSource.LOCAL else f" [{signal.source.value}]"

    return f"""{PATTERN_EMOJI[signal.pattern_type]} {signal.asset} {signal.pattern_type.value}{source}
{SEVERITY_EMOJI[signal.severity]} {signal.severity.value} | 置信度 {signal.confidence:.0f}%

{signal.description}

💥 多头爆仓: {_format_usd(m.long_volume)}
💥 空头爆仓: {_format_usd(m.short_volume)}
主导: {SIDE_NAMES[m.dominant_type]} | 比例 {m.volume_ratio:.2f} | 强度 {m.intensity}/10

⏰ {_format_time(signal.timestamp)}"""


def format_top_liquidations(side: LiquidationSide, assets: list[SideLiquidationAsset]) -> str:
    if not assets:
        return f"暂无{SIDE_NAMES[side]}爆仓数据"

    lines = [f"💥 {SIDE_NAMES[side]}爆仓排行\n"]
    for i, asset in enumerate(assets, 1):
        lines.append(
            f"{i}. {asset.asset} {_format_usd(asset.liquidated_total)} "
            f"({asset.position_count}笔, {asset.market_cap.value}, 强度 {asset.intensity})"
        )
    return "\n".join(lines)


def format_signal_list(signals: list[PatternSignal]) -> str:
    if not signals:
        return "暂无形态信号"

    lines = ["🧭 最近形态信号\n"]
    for s in signals:
        lines.append(
            f"{SEVERITY_EMOJI[s.severity]} {PATTERN_EMOJI[s.pattern_type]} {s.asset} "
            f"{s.pattern_type.value} {s.confidence:.0f}% - {_format_time(s.timestamp)}"
        )
    return "\n".join(lines)


def format_volume_list(alerts: list[VolumeAlert]) -> str:
    if not alerts:
        return "暂无成交量异动"

    lines = ["📢 最近成交量异动\n"]
    for a in alerts:
        lines.append(
            f"{a.asset} {a.market_type.value} {a.timeframe} {a.multiplier:.1f}x "
            f"{a.price_movement_pct:+.2f}% 强度{a.strength} - {_format_time(a.timestamp)}"
        )
    return "\n".join(lines)


def format_status(status: dict[str, Any], symbols: list[str]) -> str:
    uptime = status["uptime_seconds"]
    days = int(uptime // 86400)
    hours = int((uptime % 86400) // 3600)
    minutes = int((uptime % 3600) // 60)
    counters = status["counters"]
    connection = "🟢 正常" if status["has_data"] else "🟡 等待数据"
    analyzing = " (远程分析中)" if status["is_analyzing"] else ""
    daily = (
        f"多 {_format_usd(status['daily_long'])} / 空 {_format_usd(status['daily_short'])} "
        f"({status['daily_assets']} 币种)"
    )

    text = f"""🔧 系统状态

运行时间: {days}d {hours}h {minutes}m
数据连接: {connection}{analyzing}

K 线: {counters["candles"]:,} | 爆仓: {counters["liquidations"]:,} | 丢弃: {counters["discarded"]:,}
成交量异动: {status["active_alerts"]} | 形态信号: {status["active_signals"]}
多头资产: {status["long_assets"]} ({_format_usd(status["long_total"])})
空头资产: {status["short_assets"]} ({_format_usd(status["short_total"])})
今日爆仓 (UTC): {daily}

监控币种: {", ".join(symbols)}"""
    if status.get("last_error"):
        text += f"\n\n⚠️ 最近错误: {status['last_error']}"
    return text
