"""Detect → resolve → format → deliver for reply chains."""

import logging
from typing import Optional, Sequence, Union

from ..correlation import CorrelationStore
from ..delivery import DeliveryQueue
from ..errors import PersistenceError
from ..models import (
    Direction,
    DiscordMessage,
    Platform,
    QueueItem,
    ReplyIntent,
    ReplyOutcome,
)
from ..platforms.base import DiscordSender
from .detectors import DEFAULT_MATCHERS, ReplyMatcher, detect_reply
from .formatter import format_reply

logger = logging.getLogger("linecord.reply")

# Annotations are extras; they go behind every regular LINE message.
REPLY_PRIORITY = 1


class ReplyReconstructor:
    """Rebuilds reply relationships on the other platform.

    A reply arriving on LINE is resolved to the Discord copy of the quoted
    message and annotated there as a native Discord reply. A reply arriving
    on Discord is resolved to the LINE copy and annotated through the
    DeliveryQueue, so it spends quota like any other push.
    """

    def __init__(
        self,
        correlations: CorrelationStore,
        queue: DeliveryQueue,
        discord: DiscordSender,
        matchers: Sequence[ReplyMatcher] = DEFAULT_MATCHERS,
    ):
        self._correlations = correlations
        self._queue = queue
        self._discord = discord
        self.matchers = list(matchers)
        self.stats = {
            "line_to_discord": 0,
            "discord_to_line": 0,
            "unmatched": 0,
            "dropped": 0,
        }

    def detect(self, message: Union[dict, DiscordMessage], platform: Platform) -> Optional[ReplyIntent]:
        return detect_reply(message, platform, self.matchers)

    def resolve(self, intent: ReplyIntent) -> Optional[str]:
        """Map the replied-to id onto the other platform, or None."""
        return self._correlations.lookup(intent.originating_id, self._direction(intent))

    def format(self, intent: ReplyIntent, resolved_id: str, snapshot: str = "") -> str:
        return format_reply(intent, resolved_id, snapshot)

    @staticmethod
    def _direction(intent: ReplyIntent) -> Direction:
        if intent.platform == Platform.LINE:
            return Direction.LINE_TO_DISCORD
        return Direction.DISCORD_TO_LINE

    async def handle_inbound_reply(
        self,
        message: Union[dict, DiscordMessage],
        platform: Platform,
        destination: str,
    ) -> ReplyOutcome:
        """Run the full reply path for one inbound message.

        Args:
            message: LINE webhook event or DiscordMessage
            platform: Platform the message arrived on
            destination: Discord channel id (LINE inbound) or LINE user/group id
                (Discord inbound)

        Returns:
            What happened. Delivery failures raise; the safe handler contains them.
        """
        intent = self.detect(message, platform)
        if intent is None:
            return ReplyOutcome.NOT_REPLY

        resolved_id = self.resolve(intent)
        if resolved_id is None:
            self.stats["unmatched"] += 1
            logger.info(
                f"Reply on {platform.value} to {intent.originating_id} has no correlation "
                f"(matcher '{intent.matcher}')"
            )
            return ReplyOutcome.UNMATCHED

        entry = self._correlations.get(intent.originating_id, self._direction(intent))
        snapshot = entry.content_snapshot if entry else ""
        text = self.format(intent, resolved_id, snapshot)

        if platform == Platform.LINE:
            return await self._deliver_to_discord(intent, destination, resolved_id, text)
        return self._deliver_to_line(intent, destination, text)

    async def _deliver_to_discord(
        self, intent: ReplyIntent, channel_id: str, resolved_id: str, text: str,
    ) -> ReplyOutcome:
        sent = await self._discord.send(channel_id, text, reply_to=resolved_id)
        self.stats["line_to_discord"] += 1
        logger.info(f"Reply annotation posted to Discord {channel_id} (replying to {resolved_id})")

        if intent.source_message_id:
            self._correlate(
                source_id=intent.source_message_id,
                target_id=sent["id"],
                origin=Platform.LINE,
                channel_id=channel_id,
                snapshot=intent.reply_text,
            )
        return ReplyOutcome.DELIVERED

    def _deliver_to_line(self, intent: ReplyIntent, user_id: str, text: str) -> ReplyOutcome:
        async def _on_delivered(item: QueueItem, result: dict) -> None:
            line_id = result.get("messageId")
            if line_id and intent.source_message_id:
                self._correlate(
                    source_id=intent.source_message_id,
                    target_id=line_id,
                    origin=Platform.DISCORD,
                    channel_id=user_id,
                    snapshot=intent.reply_text,
                )

        accepted = self._queue.enqueue(
            user_id,
            {"type": "text", "text": text},
            priority=REPLY_PRIORITY,
            on_delivered=[_on_delivered],
        )
        if not accepted:
            self.stats["dropped"] += 1
            logger.warning(f"Reply annotation for LINE {user_id} dropped: queue full")
            return ReplyOutcome.DROPPED

        self.stats["discord_to_line"] += 1
        return ReplyOutcome.DELIVERED

    def _correlate(self, source_id: str, target_id: str, origin: Platform, channel_id: str, snapshot: str) -> None:
        # The replying message keeps its own forward entry; only the
        # annotation id is indexed back to it.
        try:
            self._correlations.alias(
                source_id,
                target_id,
                origin=origin,
                channel_id=channel_id,
                content_snapshot=snapshot,
            )
        except PersistenceError as e:
            logger.error(f"Reply correlation kept in memory only: {e}")

    def get_stats(self) -> dict:
        return dict(self.stats)
