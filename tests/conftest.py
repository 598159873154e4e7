"""Pytest configuration and shared fixtures."""

import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from linecord.config import BridgeSettings
from linecord.platforms.base import DiscordSender, LineSender


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def line_sender():
    """LINE sender whose pushes return increasing message ids."""
    ids = itertools.count(1)
    sender = AsyncMock(spec=LineSender)
    sender.push.side_effect = lambda user_id, messages: {"messageId": f"L-{next(ids)}"}
    sender.reply.return_value = {"messageId": "L-reply"}
    sender.fetch_content.return_value = b"\x89PNG..."
    return sender


@pytest.fixture
def discord_sender():
    """Discord sender whose sends return increasing message ids."""
    ids = itertools.count(1)
    sender = AsyncMock(spec=DiscordSender)
    sender.send.side_effect = lambda channel_id, content, **kwargs: {"id": f"D-{next(ids)}"}
    return sender


@pytest.fixture
def settings(tmp_path):
    return BridgeSettings(
        data_dir=str(tmp_path),
        line_channel_access_token="line-token",
        discord_bot_token="discord-token",
        channel_links={"U-alice": "C-alice"},
        send_interval_seconds=0,
        batch_window_seconds=0,
        quota_backoff_seconds=60,
    )
