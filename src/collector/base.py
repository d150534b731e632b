# src/collector/base.py
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import websockets

logger = logging.getLogger(__name__)


class BaseCollector(ABC):
    """WebSocket 采集器基类: 断线 5 秒后重连, 单条消息解析失败不影响后续"""

    reconnect_delay = 5.0

    def __init__(self, name: str):
        self.name = name
        self.running = False
        self.ws: Any = None
        self.messages = 0
        self.parse_errors = 0
        self._task: asyncio.Task[None] | None = None

    @abstractmethod
    def stream_url(self) -> str:
        pass

    @abstractmethod
    async def _process_message(self, message: Any) -> None:
        pass

    async def connect(self) -> None:
        self.ws = await websockets.connect(self.stream_url())
        logger.info(f"{self.__class__.__name__} connected ({self.name})")

    async def disconnect(self) -> None:
        if self.ws:
            await self.ws.close()
            self.ws = None

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"{self.__class__.__name__} started for {self.name}")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.disconnect()
        logger.info(f"{self.__class__.__name__} stopped for {self.name}")

    async def _run(self) -> None:
        while self.running:
            try:
                if self.ws is None:
                    await self.connect()
                message = await self.ws.recv()
                self.messages += 1
                await self._process_message(message)
            except asyncio.CancelledError:
                break
            except websockets.ConnectionClosed:
                logger.warning(f"{self.__class__.__name__} disconnected, reconnecting...")
                self.ws = None
                await asyncio.sleep(self.reconnect_delay)
            except Exception as e:
                logger.error(f"{self.__class__.__name__} error: {e}")
                await self.disconnect()
                await asyncio.sleep(self.reconnect_delay)
