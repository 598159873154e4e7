"""Platform clients for the LINE and Discord REST APIs."""

from .base import DiscordSender, LineSender
from .discord import DiscordClient
from .line import LineClient

__all__ = ["LineSender", "DiscordSender", "LineClient", "DiscordClient"]
