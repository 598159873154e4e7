"""linecord service wiring and logging setup."""

import logging
import os
from typing import Optional

from .batching import MessageBatcher
from .bridge import MessageBridge
from .config import BridgeSettings, load_settings
from .correlation import CorrelationStore
from .delivery import DeliveryQueue
from .models import QuotaAlert
from .platforms.base import DiscordSender, LineSender
from .platforms.discord import DiscordClient
from .platforms.line import LineClient
from .quota import AlertCallback, QuotaGovernor
from .reply.reconstructor import ReplyReconstructor
from .reply.safety import SafeReplyHandler
from .tasks import BackgroundTasks

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("linecord")


def configure_logging(settings: Optional[BridgeSettings] = None, debug: bool = False) -> None:
    """Console logging plus an optional log file."""
    level_name = "DEBUG" if debug else (settings.log_level if settings else "INFO")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings and settings.log_file:
        log_dir = os.path.dirname(os.path.abspath(settings.log_file))
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, handlers=handlers)
    logger.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_bridge(
    settings: Optional[BridgeSettings] = None,
    line: Optional[LineSender] = None,
    discord: Optional[DiscordSender] = None,
    on_alert: Optional[AlertCallback] = None,
) -> MessageBridge:
    """Construct every service once and hand them to a MessageBridge.

    Args:
        settings: Loaded settings (``load_settings()`` if omitted)
        line: LINE sender; a LineClient from settings if omitted
        discord: Discord sender; a DiscordClient from settings if omitted
        on_alert: Async callback for quota alerts. Defaults to posting the
            alert text to every linked Discord channel.
    """
    settings = settings or load_settings()
    line = line or LineClient(settings.line_channel_access_token or "")
    discord = discord or DiscordClient(settings.discord_bot_token or "")
    tasks = BackgroundTasks("linecord")

    if on_alert is None:
        async def on_alert(alert: QuotaAlert) -> None:
            for channel_id in set(settings.channel_links.values()):
                await discord.send(channel_id, f"⚠️ {alert.message}")

    correlations = CorrelationStore(
        settings.correlation_file,
        max_entries=settings.correlation_max_entries,
    )
    quota = QuotaGovernor(
        capacity=settings.quota_capacity,
        safety_margin=settings.quota_safety_margin,
        urgent_keywords=settings.urgent_keywords,
        alert_thresholds=settings.alert_thresholds,
        alert_cooldown_seconds=settings.alert_cooldown_seconds,
        timezone=settings.quota_timezone,
        state_path=settings.quota_state_file,
        on_alert=on_alert,
        tasks=tasks,
    )
    queue = DeliveryQueue(
        line,
        quota,
        capacity=settings.queue_capacity,
        max_attempts=settings.queue_max_attempts,
        send_interval=settings.send_interval_seconds,
        quota_backoff=settings.quota_backoff_seconds,
        tasks=tasks,
    )
    batcher = MessageBatcher(
        queue,
        window_seconds=settings.batch_window_seconds,
        max_batch_size=settings.batch_max_size,
    )
    reconstructor = ReplyReconstructor(correlations, queue, discord)
    replies = SafeReplyHandler(
        reconstructor,
        timeout=settings.reply_timeout_seconds,
        enabled=settings.reply_enabled,
    )

    return MessageBridge(
        settings=settings,
        correlations=correlations,
        quota=quota,
        queue=queue,
        batcher=batcher,
        replies=replies,
        line=line,
        discord=discord,
        tasks=tasks,
    )
