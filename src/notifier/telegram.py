# src/notifier/telegram.py
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from telegram import Bot, BotCommand, Update
from telegram.ext import Application, CommandHandler, ContextTypes

from src.storage.models import LiquidationSide

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = """
🔔 <b>Flow Radar</b> - 成交量异动与爆仓形态监控

<b>功能：</b>
• 多周期成交量异动 (1m / 3m / 15m)
• 多空爆仓分边累计
• 爆仓形态识别 (反转 / 连环 / 挤压 / 巨鲸)

输入 /help 查看所有命令
"""

HELP_MESSAGE = """
📖 <b>命令列表</b>

/status - 查看系统状态
/top [long|short] - 爆仓排行
/signals - 最近形态信号
/volume - 最近成交量异动

<b>💡 示例</b>
• /top short - 空头爆仓排行
"""

BOT_COMMANDS = [
    BotCommand("start", "开始使用"),
    BotCommand("help", "查看帮助"),
    BotCommand("status", "系统状态"),
    BotCommand("top", "爆仓排行"),
    BotCommand("signals", "形态信号"),
    BotCommand("volume", "成交量异动"),
]


class TelegramNotifier:
    def __init__(self, bot_token: str, chat_id: str):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.bot = Bot(token=bot_token)
        self.app: Application | None = None  # type: ignore[type-arg]

        # Callbacks
        self.on_status: Callable[[], Coroutine[Any, Any, str]] | None = None
        self.on_top: Callable[[LiquidationSide], Coroutine[Any, Any, str]] | None = None
        self.on_signals: Callable[[], Coroutine[Any, Any, str]] | None = None
        self.on_volume: Callable[[], Coroutine[Any, Any, str]] | None = None

    async def send_message(self, text: str) -> None:
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=text,
        )

    @staticmethod
    def _parse_side(text: str) -> LiquidationSide | None:
        parts = text.split()
        if len(parts) < 2:
            return LiquidationSide.LONG
        try:
            return LiquidationSide(parts[1].lower())
        except ValueError:
            return None

    async def _reply(
        self,
        update: Update,
        callback: Callable[[], Coroutine[Any, Any, str]] | None,
        fallback: str,
    ) -> None:
        if not update.message:
            return
        text = await callback() if callback else fallback
        await update.message.reply_text(text)

    async def _handle_top(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.message.text:
            return

        side = self._parse_side(update.message.text)
        if side is None:
            await update.message.reply_text("用法: /top [long|short]")
            return

        if self.on_top:
            await update.message.reply_text(await self.on_top(side))
        else:
            await update.message.reply_text("暂无爆仓数据")

    async def _handle_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, self.on_status, "系统运行中")

    async def _handle_signals(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, self.on_signals, "暂无形态信号")

    async def _handle_volume(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, self.on_volume, "暂无成交量异动")

    async def _handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(WELCOME_MESSAGE, parse_mode="HTML")

    async def _handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(HELP_MESSAGE, parse_mode="HTML")

    def setup_handlers(self, app: Application) -> None:  # type: ignore[type-arg]
        app.add_handler(CommandHandler("start", self._handle_start))
        app.add_handler(CommandHandler("help", self._handle_help))
        app.add_handler(CommandHandler("status", self._handle_status))
        app.add_handler(CommandHandler("top", self._handle_top))
        app.add_handler(CommandHandler("signals", self._handle_signals))
        app.add_handler(CommandHandler("volume", self._handle_volume))

    async def start_polling(self) -> None:
        self.app = Application.builder().token(self.bot_token).build()
        self.setup_handlers(self.app)
        await self.app.initialize()
        await self.app.start()

        # Set bot command menu
        await self.bot.set_my_commands(BOT_COMMANDS)

        if self.app.updater:
            await self.app.updater.start_polling()

    async def stop_polling(self) -> None:
        if self.app:
            if self.app.updater:
                await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()
