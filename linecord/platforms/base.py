"""Send/fetch interfaces the bridge core consumes."""

from abc import ABC, abstractmethod
from typing import Optional


class LineSender(ABC):
    """Quota-limited side. Failures raise ``DeliveryError``."""

    @abstractmethod
    async def push(self, user_id: str, messages: list[dict]) -> dict:
        """Push messages to a user or group.

        Returns:
            Dict with at least ``messageId`` of the first sent message.
        """
        ...

    @abstractmethod
    async def reply(self, reply_token: str, messages: list[dict]) -> dict:
        """Answer a webhook event with its reply token (does not count against quota).

        Not called by the bridge core; it is for the webhook layer.
        """
        ...

    @abstractmethod
    async def fetch_content(self, message_id: str) -> bytes:
        """Download the binary content of an image/video/audio/file message."""
        ...


class DiscordSender(ABC):
    """Quota-free side. Failures raise ``DeliveryError``."""

    @abstractmethod
    async def send(
        self,
        channel_id: str,
        content: str,
        *,
        reply_to: Optional[str] = None,
        files: Optional[list[tuple[str, bytes]]] = None,
    ) -> dict:
        """Post a message to a channel.

        Args:
            channel_id: Target channel
            content: Message text
            reply_to: Message id to attach a native reply reference to
            files: (filename, bytes) attachments

        Returns:
            The created message; ``id`` is always present.
        """
        ...

    @abstractmethod
    async def fetch_message(self, channel_id: str, message_id: str) -> dict:
        """Fetch one message. Not called by the bridge core; it is for the gateway layer."""
        ...
