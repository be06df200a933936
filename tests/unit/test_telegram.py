"""
Tests for the Telegram notification sink (aiohttp mocked).
"""
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from dlmm_monitor.exceptions import NotificationError
from dlmm_monitor.notifications.telegram import TelegramNotifier


def _async_cm(value):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=value)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


def _mock_session(status=200, body="", post_error=None):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)

    session = MagicMock()
    if post_error is not None:
        session.post = MagicMock(side_effect=post_error)
    else:
        session.post = MagicMock(return_value=_async_cm(response))
    return session


@pytest.fixture
def telegram():
    return TelegramNotifier("123:token", api_url="https://api.example.org/")


def test_requires_token():
    with pytest.raises(ValueError):
        TelegramNotifier("")


def test_send_url(telegram):
    assert telegram.send_url == "https://api.example.org/bot123:token/sendMessage"


def test_payload_merges_options(telegram):
    payload = telegram.build_payload(42, "hello", {"reply_markup": {"inline_keyboard": []}})

    assert payload == {
        "chat_id": 42,
        "text": "hello",
        "parse_mode": "Markdown",
        "reply_markup": {"inline_keyboard": []},
    }


def test_payload_without_parse_mode():
    notifier = TelegramNotifier("123:token", parse_mode=None)

    assert "parse_mode" not in notifier.build_payload(42, "hello")


@pytest.mark.asyncio
async def test_send_posts_message(telegram):
    session = _mock_session()

    with patch("dlmm_monitor.notifications.telegram.aiohttp.ClientSession", return_value=_async_cm(session)):
        await telegram.send(42, "hello", {"disable_notification": True})

    session.post.assert_called_once()
    args, kwargs = session.post.call_args
    assert args[0] == telegram.send_url
    assert kwargs["json"]["chat_id"] == 42
    assert kwargs["json"]["disable_notification"] is True


@pytest.mark.asyncio
async def test_non_200_raises(telegram):
    session = _mock_session(status=403, body="Forbidden: bot was blocked by the user")

    with patch("dlmm_monitor.notifications.telegram.aiohttp.ClientSession", return_value=_async_cm(session)):
        with pytest.raises(NotificationError, match="403"):
            await telegram.send(42, "hello")


@pytest.mark.asyncio
async def test_network_error_raises(telegram):
    session = _mock_session(post_error=aiohttp.ClientConnectionError("refused"))

    with patch("dlmm_monitor.notifications.telegram.aiohttp.ClientSession", return_value=_async_cm(session)):
        with pytest.raises(NotificationError, match="refused"):
            await telegram.send(42, "hello")
