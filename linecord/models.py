"""Shared records passed between the bridge components."""

import itertools
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional


class Platform(str, Enum):
    LINE = "line"        # quota-limited side
    DISCORD = "discord"  # quota-free side


class Direction(str, Enum):
    """Lookup direction for the correlation indices."""
    LINE_TO_DISCORD = "line_to_discord"
    DISCORD_TO_LINE = "discord_to_line"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Correlation ──────────────────────────────────────────────

@dataclass
class MessageCorrelation:
    """Link between a message and its forwarded copy on the other platform.

    ``source_id`` is the id of the message as authored, ``target_id`` the id
    of the copy the bridge delivered. ``origin`` says which platform
    authored the source, which fixes which id belongs to LINE.
    """
    source_id: str
    target_id: str
    origin: Platform
    source_user_id: Optional[str] = None
    channel_id: Optional[str] = None
    content_snapshot: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def line_id(self) -> str:
        return self.source_id if self.origin == Platform.LINE else self.target_id

    @property
    def discord_id(self) -> str:
        return self.target_id if self.origin == Platform.LINE else self.source_id

    def counterpart(self, direction: Direction) -> str:
        if direction == Direction.LINE_TO_DISCORD:
            return self.discord_id
        return self.line_id

    def to_dict(self) -> dict:
        data = asdict(self)
        data["origin"] = self.origin.value
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MessageCorrelation":
        created_at = datetime.fromisoformat(str(data["created_at"]).replace("Z", "+00:00"))
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            source_id=str(data["source_id"]),
            target_id=str(data["target_id"]),
            origin=Platform(data.get("origin", Platform.LINE.value)),
            source_user_id=data.get("source_user_id"),
            channel_id=data.get("channel_id"),
            content_snapshot=data.get("content_snapshot") or "",
            created_at=created_at,
        )


# ── Quota ────────────────────────────────────────────────────

@dataclass
class Admission:
    allowed: bool
    reason: str = ""


@dataclass
class QuotaAlert:
    tier: str
    remaining: int
    sent_count: int
    capacity: int
    period_key: str

    @property
    def message(self) -> str:
        pct = (self.sent_count / self.capacity * 100) if self.capacity else 100.0
        return (
            f"LINE quota {self.tier}: {self.remaining} messages left "
            f"({self.sent_count}/{self.capacity}, {pct:.1f}% used) for {self.period_key}"
        )


# ── Delivery queue ───────────────────────────────────────────

class ItemState(str, Enum):
    ENQUEUED = "enqueued"
    ADMITTED = "admitted"
    SENDING = "sending"
    SENT = "sent"
    RETRY = "retry"
    DROPPED = "dropped"


# Allowed state transitions; SENT and DROPPED are terminal.
ITEM_TRANSITIONS: dict[ItemState, set[ItemState]] = {
    ItemState.ENQUEUED: {ItemState.ADMITTED, ItemState.DROPPED},
    ItemState.ADMITTED: {ItemState.SENDING, ItemState.DROPPED},
    ItemState.SENDING: {ItemState.SENT, ItemState.RETRY, ItemState.DROPPED},
    ItemState.RETRY: {ItemState.ADMITTED, ItemState.SENDING, ItemState.DROPPED},
    ItemState.SENT: set(),
    ItemState.DROPPED: set(),
}

DeliveredCallback = Callable[["QueueItem", dict], Awaitable[None]]

_item_ids = itertools.count(1)


@dataclass
class QueueItem:
    destination: str
    payload: dict
    priority: int = 3
    enqueued_at: datetime = field(default_factory=utcnow)
    attempt: int = 0
    max_attempts: int = 3
    state: ItemState = ItemState.ENQUEUED
    item_id: int = field(default_factory=lambda: next(_item_ids))
    last_error: Optional[str] = None
    on_delivered: list[DeliveredCallback] = field(default_factory=list)

    def transition(self, new_state: ItemState) -> None:
        if new_state not in ITEM_TRANSITIONS[self.state]:
            raise ValueError(f"Illegal queue item transition {self.state.value} → {new_state.value}")
        self.state = new_state

    @property
    def sort_key(self) -> tuple:
        # Retried items stay pinned at the head.
        return (0 if self.state == ItemState.RETRY else 1, -self.priority, self.enqueued_at, self.item_id)


# ── Replies ──────────────────────────────────────────────────

@dataclass
class ReplyIntent:
    """A detected "this message replies to X" signal."""
    originating_id: str
    platform: Platform
    source_message_id: Optional[str] = None
    reply_text: str = ""
    matcher: str = "native"


class ReplyOutcome(str, Enum):
    NOT_REPLY = "not_reply"
    UNMATCHED = "unmatched"
    DELIVERED = "delivered"
    DROPPED = "dropped"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class DiscordMessage:
    """The subset of a Discord gateway message the bridge reads."""
    id: str
    channel_id: str
    content: str = ""
    author_id: Optional[str] = None
    author_name: str = ""
    author_is_bot: bool = False
    attachments: list[dict[str, Any]] = field(default_factory=list)
