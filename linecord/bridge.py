"""MessageBridge: entry points for the webhook layer.

Each inbound message takes two independent paths:

1. Primary: convert and forward (direct Discord send, or the LINE
   DeliveryQueue through the batcher), then record the correlation.
2. Secondary: the SafeReplyHandler, spawned as a background task. Its
   failure never affects the primary path.
"""

import asyncio
import logging
import time
from typing import Optional

from .batching import MessageBatcher
from .config import BridgeSettings
from .convert import discord_message_to_line, line_event_to_discord
from .correlation import CorrelationStore
from .delivery import DeliveryQueue
from .errors import DeliveryError, PersistenceError, describe_error
from .models import DeliveredCallback, DiscordMessage, Platform, QueueItem
from .platforms.base import DiscordSender, LineSender
from .quota import QuotaGovernor
from .reply.safety import SafeReplyHandler
from .tasks import BackgroundTasks

logger = logging.getLogger("linecord.bridge")


class MessageBridge:
    """Wires the services together. Build one with ``linecord.main.build_bridge``."""

    def __init__(
        self,
        settings: BridgeSettings,
        correlations: CorrelationStore,
        quota: QuotaGovernor,
        queue: DeliveryQueue,
        batcher: MessageBatcher,
        replies: SafeReplyHandler,
        line: LineSender,
        discord: DiscordSender,
        tasks: Optional[BackgroundTasks] = None,
    ):
        self.settings = settings
        self.correlations = correlations
        self.quota = quota
        self.queue = queue
        self.batcher = batcher
        self.replies = replies
        self._line = line
        self._discord = discord
        self._tasks = tasks or BackgroundTasks("bridge")

        # LINE source (user/group/room) → Discord channel, and back.
        self._line_to_channel = dict(settings.channel_links)
        self._channel_to_line = {v: k for k, v in settings.channel_links.items()}

        self._running = False
        self._sweep_task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self.metrics = {
            "line_received": 0,
            "discord_received": 0,
            "forwarded_to_discord": 0,
            "queued_for_line": 0,
            "unrouted": 0,
            "errors": 0,
        }

    # ── Channel links ────────────────────────────────────────

    def link(self, line_source_id: str, discord_channel_id: str) -> None:
        self._line_to_channel[line_source_id] = discord_channel_id
        self._channel_to_line[discord_channel_id] = line_source_id

    def channel_for(self, line_source_id: str) -> Optional[str]:
        return self._line_to_channel.get(line_source_id)

    def line_target_for(self, discord_channel_id: str) -> Optional[str]:
        return self._channel_to_line.get(discord_channel_id)

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self):
        """Load correlations, run one sweep and start the periodic sweep."""
        if self._running:
            logger.warning("Bridge already running")
            return
        self.correlations.load()
        self._sweep_once()

        health = self.replies.health_check()
        if not health["healthy"]:
            logger.warning("Reply matchers failed self-test; replies will degrade to plain forwarding")

        self._running = True
        self._started_at = time.monotonic()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Bridge started: {len(self._line_to_channel)} channel links, "
            f"quota {self.quota.state.sent_count}/{self.quota.capacity} for {self.quota.state.period_key}"
        )

    async def stop(self, drain: bool = True):
        """Stop the sweep, flush pending batches and optionally drain the queue."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.batcher.close()
        if drain:
            await self._tasks.wait_idle()
            await self.queue.flush()
        self.queue.close()
        await self._tasks.cancel_all()
        logger.info("Bridge stopped")

    async def _sweep_loop(self):
        interval = self.settings.sweep_interval_hours * 3600
        while self._running:
            await asyncio.sleep(interval)
            self._sweep_once()

    def _sweep_once(self) -> int:
        try:
            return self.correlations.sweep_expired(self.settings.correlation_max_age_days)
        except PersistenceError as e:
            logger.error(f"Correlation sweep not persisted: {e}")
            return 0

    # ── Outbound ─────────────────────────────────────────────

    def enqueue_outbound(
        self,
        destination: str,
        message: dict,
        priority: Optional[int] = None,
        on_delivered: Optional[list[DeliveredCallback]] = None,
    ) -> bool:
        """Queue a LINE message for a user or group.

        Returns:
            False if the queue was full.
        """
        if priority is None:
            priority = self.quota.priority_for(message)
        accepted = self.batcher.add(destination, message, priority, on_delivered)
        if accepted:
            self.metrics["queued_for_line"] += 1
        return accepted

    # ── Inbound: LINE ────────────────────────────────────────

    async def handle_inbound_from_line(self, event: dict) -> Optional[str]:
        """Forward a LINE webhook event to its linked Discord channel.

        Returns:
            The Discord message id, or None if nothing was forwarded.
        """
        if event.get("type") != "message":
            return None
        source = event.get("source") or {}
        source_id = source.get("groupId") or source.get("roomId") or source.get("userId")
        message = event.get("message") or {}
        self.metrics["line_received"] += 1

        channel_id = self.channel_for(source_id) if source_id else None
        if not channel_id:
            self.metrics["unrouted"] += 1
            logger.info(f"No Discord channel linked for LINE source {source_id}")
            return None

        self._tasks.spawn(
            self.replies.handle_inbound_reply(event, Platform.LINE, channel_id),
            label="reply-from-line",
        )

        try:
            content, files = await line_event_to_discord(event, self._line)
            sent = await self._discord.send(channel_id, content, files=files or None)
        except DeliveryError as e:
            self.metrics["errors"] += 1
            logger.error(
                f"Failed to forward LINE {message.get('id')} to Discord {channel_id}: {describe_error(e)}"
            )
            return None

        self.metrics["forwarded_to_discord"] += 1
        discord_id = str(sent["id"])
        logger.info(f"Forwarded LINE {message.get('id')} → Discord {discord_id}")

        if message.get("id"):
            self._correlate(
                str(message["id"]),
                discord_id,
                origin=Platform.LINE,
                source_user_id=source.get("userId"),
                channel_id=channel_id,
                content_snapshot=message.get("text") or "",
            )
        return discord_id

    # ── Inbound: Discord ─────────────────────────────────────

    async def handle_inbound_from_discord(self, message: DiscordMessage) -> bool:
        """Queue a Discord message for its linked LINE user or group.

        Returns:
            True if every converted part was accepted by the queue.
        """
        if message.author_is_bot:
            return False
        self.metrics["discord_received"] += 1

        target = self.line_target_for(message.channel_id)
        if not target:
            self.metrics["unrouted"] += 1
            logger.info(f"No LINE target linked for Discord channel {message.channel_id}")
            return False

        self._tasks.spawn(
            self.replies.handle_inbound_reply(message, Platform.DISCORD, target),
            label="reply-from-discord",
        )

        parts = discord_message_to_line(message)
        if not parts:
            return True

        async def _on_delivered(item: QueueItem, result: dict) -> None:
            line_id = result.get("messageId")
            if line_id:
                self._correlate(
                    message.id,
                    str(line_id),
                    origin=Platform.DISCORD,
                    source_user_id=message.author_id,
                    channel_id=message.channel_id,
                    content_snapshot=message.content,
                )

        accepted = True
        for part in parts:
            if not self.enqueue_outbound(target, part, on_delivered=[_on_delivered]):
                accepted = False
        if not accepted:
            self.metrics["errors"] += 1
            logger.warning(f"Discord {message.id} only partly queued for LINE {target} (queue full)")
        return accepted

    def _correlate(self, source_id: str, target_id: str, **meta) -> None:
        try:
            self.correlations.create(source_id, target_id, **meta)
        except PersistenceError as e:
            logger.error(f"Correlation {source_id} → {target_id} kept in memory only: {e}")

    # ── Introspection ────────────────────────────────────────

    def get_metrics(self) -> dict:
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return {
            "uptime_seconds": round(uptime, 1),
            "running": self._running,
            **self.metrics,
            "queue": self.queue.get_status(),
            "batcher": self.batcher.get_status(),
            "quota": self.quota.get_status(),
            "replies": self.replies.get_stats(),
            "correlations": self.correlations.get_stats(),
            "background_tasks": {
                "active": self._tasks.active,
                "completed": self._tasks.completed,
                "failed": self._tasks.failed,
            },
        }

    def get_system_health(self) -> dict:
        reply_health = self.replies.health_check()
        quota = self.quota.get_status()
        queue = self.queue.get_status()
        issues = []
        if not reply_health["healthy"]:
            issues.append("reply matchers failing")
        if quota["limit_reached"]:
            issues.append("LINE quota exhausted")
        if queue["size"] >= queue["capacity"]:
            issues.append("delivery queue full")
        return {
            "status": "degraded" if issues else "healthy",
            "issues": issues,
            "reply": reply_health,
            "quota": quota,
            "queue": queue,
        }
