# src/collector/binance_liq.py
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from src.storage.models import LiquidationEvent, LiquidationSide

from .base import BaseCollector

logger = logging.getLogger(__name__)

BINANCE_FUTURES_WS = "wss://fstream.binance.com/ws"

# 强平单方向: SELL 平掉多头, BUY 平掉空头
ORDER_SIDE_MAP = {
    "SELL": LiquidationSide.LONG,
    "BUY": LiquidationSide.SHORT,
}


class BinanceLiquidationCollector(BaseCollector):
    """全市场强平流 !forceOrder@arr"""

    def __init__(
        self,
        on_liquidation: Callable[[LiquidationEvent], Coroutine[Any, Any, None]],
        base_url: str = BINANCE_FUTURES_WS,
    ):
        super().__init__("liquidations")
        self.on_liquidation = on_liquidation
        self.base_url = base_url

    def stream_url(self) -> str:
        return f"{self.base_url}/!forceOrder@arr"

    def _parse_liquidation(self, data: dict[str, Any]) -> LiquidationEvent | None:
        if data.get("e") != "forceOrder":
            return None

        order = data["o"]
        side = ORDER_SIDE_MAP.get(str(order.get("S", "")).upper())
        if side is None:
            return None

        quantity = float(order["q"])
        avg_price = float(order.get("ap") or 0)
        price = avg_price if avg_price > 0 else float(order["p"])

        return LiquidationEvent(
            ticker=order["s"],
            side=side,
            amount_usd=quantity * price,
            price=price,
            timestamp=int(order.get("T") or data.get("E") or 0),
        )

    async def _process_message(self, message: str) -> None:
        try:
            data = json.loads(message)
            liq = self._parse_liquidation(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            self.parse_errors += 1
            logger.warning(f"Failed to parse liquidation message: {e}")
            return
        if liq:
            await self.on_liquidation(liq)
