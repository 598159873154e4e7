"""linecord configuration management."""

import logging
import os
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger("linecord.config")

DEFAULT_URGENT_KEYWORDS = ["緊急", "urgent", "help", "助けて", "エラー", "error", "重要"]
DEFAULT_ALERT_THRESHOLDS = {"warning": 30, "critical": 10, "emergency": 5}


class BridgeSettings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    # Platform credentials
    line_channel_access_token: Optional[str] = Field(default=None, description="LINE channel access token")
    discord_bot_token: Optional[str] = Field(default=None, description="Discord bot token")

    # Storage
    data_dir: str = Field(default="./data", description="Directory for persisted JSON documents")

    # Quota: LINE free plan allows 200 pushes/month, keep a margin below it
    quota_capacity: int = Field(default=190, description="Monthly send budget")
    quota_safety_margin: int = Field(default=10, description="Headroom between budget and contractual cap")
    quota_timezone: str = Field(default="UTC", description="Timezone used to derive the YYYY-MM period")
    urgent_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_URGENT_KEYWORDS),
        description="Text containing any of these is always delivered",
    )
    alert_thresholds: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_ALERT_THRESHOLDS),
        description="Alert tier name → remaining-messages threshold",
    )
    alert_cooldown_seconds: float = Field(default=3600, description="Minimum gap between quota alerts")

    # Delivery queue
    queue_capacity: int = Field(default=50, description="Maximum queued LINE messages")
    queue_max_attempts: int = Field(default=3, description="Delivery attempts per message")
    send_interval_seconds: float = Field(default=0.1, description="Pause between consecutive sends")
    quota_backoff_seconds: float = Field(default=60, description="Re-drain delay after quota exhaustion")

    # Batching
    batch_window_seconds: float = Field(default=120, description="Window for merging text messages")
    batch_max_size: int = Field(default=10, description="Flush a batch once it holds this many messages")

    # Replies
    reply_enabled: bool = Field(default=True, description="Enable reply reconstruction")
    reply_timeout_seconds: float = Field(default=5, description="Timeout for one reply-handling call")

    # Correlation retention
    correlation_max_age_days: int = Field(default=7, description="Drop correlations older than this")
    correlation_max_entries: int = Field(default=10000, description="Evict oldest correlations above this")
    sweep_interval_hours: float = Field(default=24, description="Hours between retention sweeps")

    # LINE source id (user or group) → Discord channel id
    channel_links: dict[str, str] = Field(default_factory=dict, description="LINE source → Discord channel")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level for linecord loggers")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = {"env_prefix": "LINECORD_", "env_file": ".env", "extra": "ignore"}

    @property
    def correlation_file(self) -> str:
        return os.path.join(self.data_dir, "message-mappings.json")

    @property
    def quota_state_file(self) -> str:
        return os.path.join(self.data_dir, "quota-state.json")

    @property
    def hard_limit(self) -> int:
        return self.quota_capacity + self.quota_safety_margin


def load_settings() -> BridgeSettings:
    """Load settings from environment."""
    settings = BridgeSettings()

    if not settings.line_channel_access_token:
        logger.warning("LINECORD_LINE_CHANNEL_ACCESS_TOKEN is not set; LINE delivery will fail.")
    if not settings.discord_bot_token:
        logger.warning("LINECORD_DISCORD_BOT_TOKEN is not set; Discord delivery will fail.")
    if not settings.channel_links:
        logger.info("No channel links configured; inbound messages will not be routed.")

    return settings
