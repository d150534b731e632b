# tests/notifier/test_telegram.py
from unittest.mock import AsyncMock, MagicMock, patch

from src.storage.models import LiquidationSide


def make_update(text: str) -> MagicMock:
    update = MagicMock()
    update.message.text = text
    update.message.reply_text = AsyncMock()
    return update


async def test_send_message():
    with patch("src.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock()
        MockBot.return_value = mock_bot

        from src.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        await notifier.send_message("Hello")

        mock_bot.send_message.assert_called_once_with(
            chat_id="123",
            text="Hello",
        )


def test_parse_side():
    from src.notifier.telegram import TelegramNotifier

    assert TelegramNotifier._parse_side("/top") is LiquidationSide.LONG
    assert TelegramNotifier._parse_side("/top short") is LiquidationSide.SHORT
    assert TelegramNotifier._parse_side("/top LONG") is LiquidationSide.LONG
    assert TelegramNotifier._parse_side("/top sideways") is None


async def test_handle_top():
    with patch("src.notifier.telegram.Bot"):
        from src.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        notifier.on_top = AsyncMock(return_value="ranking")

        update = make_update("/top short")
        await notifier._handle_top(update, MagicMock())

        notifier.on_top.assert_awaited_once_with(LiquidationSide.SHORT)
        update.message.reply_text.assert_awaited_once_with("ranking")

        bad = make_update("/top sideways")
        await notifier._handle_top(bad, MagicMock())
        bad.message.reply_text.assert_awaited_once_with("用法: /top [long|short]")


async def test_handle_signals_and_volume():
    with patch("src.notifier.telegram.Bot"):
        from src.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        notifier.on_signals = AsyncMock(return_value="signals")

        update = make_update("/signals")
        await notifier._handle_signals(update, MagicMock())
        update.message.reply_text.assert_awaited_once_with("signals")

        # 未注册回调时返回默认文本
        update = make_update("/volume")
        await notifier._handle_volume(update, MagicMock())
        update.message.reply_text.assert_awaited_once_with("暂无成交量异动")


def test_setup_handlers():
    with patch("src.notifier.telegram.Bot"):
        from src.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        app = MagicMock()
        notifier.setup_handlers(app)

        commands = {call.args[0].commands for call in app.add_handler.call_args_list}
        assert commands == {
            frozenset({"start"}),
            frozenset({"help"}),
            frozenset({"status"}),
            frozenset({"top"}),
            frozenset({"signals"}),
            frozenset({"volume"}),
        }
