"""Monthly LINE send quota governance.

LINE's free plan caps push messages per calendar month. The governor
counts sends against a budget kept a safety margin below that cap, decides
which messages may still go out once the budget is spent, and raises
tiered alerts as the remaining budget shrinks.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from .errors import PersistenceError
from .models import Admission, QuotaAlert, utcnow
from .storage import JsonDocument
from .tasks import BackgroundTasks

logger = logging.getLogger("linecord.quota")

# Message types that always carry content worth the quota.
IMPORTANT_TYPES = frozenset({"image", "video", "audio", "file", "location"})

AlertCallback = Callable[[QuotaAlert], Awaitable[None]]


@dataclass
class QuotaState:
    period_key: str
    capacity: int = 190
    safety_margin: int = 10
    sent_count: int = 0
    limit_reached: bool = False
    alerted_tiers: list[str] = field(default_factory=list)
    last_alert_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "period_key": self.period_key,
            "capacity": self.capacity,
            "safety_margin": self.safety_margin,
            "sent_count": self.sent_count,
            "limit_reached": self.limit_reached,
            "alerted_tiers": list(self.alerted_tiers),
            "last_alert_at": self.last_alert_at.isoformat() if self.last_alert_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QuotaState":
        last_alert = data.get("last_alert_at")
        return cls(
            period_key=str(data["period_key"]),
            capacity=int(data.get("capacity", 190)),
            safety_margin=int(data.get("safety_margin", 10)),
            sent_count=int(data.get("sent_count", 0)),
            limit_reached=bool(data.get("limit_reached", False)),
            alerted_tiers=[str(t) for t in data.get("alerted_tiers") or []],
            last_alert_at=datetime.fromisoformat(last_alert) if last_alert else None,
        )


class QuotaGovernor:
    """Counts LINE sends per calendar month and admits messages.

    Every public operation first calls ``reset_if_new_period()``, so the
    counter rolls over lazily on the first use in a new month.
    """

    def __init__(
        self,
        capacity: int = 190,
        safety_margin: int = 10,
        urgent_keywords: Iterable[str] = (),
        alert_thresholds: Optional[dict[str, int]] = None,
        alert_cooldown_seconds: float = 3600,
        timezone: str = "UTC",
        state_path: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        on_alert: Optional[AlertCallback] = None,
        tasks: Optional[BackgroundTasks] = None,
    ):
        """Initialize the governor.

        Args:
            capacity: Sends allowed per period before non-important messages are held
            safety_margin: Headroom between capacity and the platform's hard cap
            urgent_keywords: Case-insensitive substrings that make text important
            alert_thresholds: Tier name → remaining-count threshold
            alert_cooldown_seconds: Minimum time between two alerts
            timezone: IANA zone used to derive the YYYY-MM period key
            state_path: JSON document for persisted state, or None for memory only
            clock: Returns the current aware datetime
            on_alert: Async callback invoked for each alert
            tasks: Registry used to run alert callbacks in the background
        """
        self.capacity = capacity
        self.safety_margin = safety_margin
        self._keywords = [k.lower() for k in urgent_keywords if k]
        thresholds = alert_thresholds if alert_thresholds is not None else {
            "warning": 30, "critical": 10, "emergency": 5,
        }
        # Most severe (smallest remaining) first.
        self._tiers = sorted(thresholds.items(), key=lambda kv: kv[1])
        self._cooldown = timedelta(seconds=alert_cooldown_seconds)
        self._tz = ZoneInfo(timezone)
        self._doc = JsonDocument(state_path) if state_path else None
        self._clock = clock
        self._on_alert = on_alert
        self._tasks = tasks or BackgroundTasks("quota")
        self.alerts: list[QuotaAlert] = []

        self.state = self._new_state(self._current_period())
        self._load()

    def _new_state(self, period: str) -> QuotaState:
        return QuotaState(period_key=period, capacity=self.capacity, safety_margin=self.safety_margin)

    @property
    def hard_limit(self) -> int:
        return self.capacity + self.safety_margin

    # ── Period handling ──────────────────────────────────────

    def _current_period(self) -> str:
        return self._clock().astimezone(self._tz).strftime("%Y-%m")

    def reset_if_new_period(self) -> bool:
        """Zero the counter if the calendar month changed.

        Returns:
            True if a reset happened.
        """
        period = self._current_period()
        if period == self.state.period_key:
            return False
        previous = self.state
        self.state = self._new_state(period)
        logger.info(
            f"Quota period rolled over {previous.period_key} → {period} "
            f"(previous period sent {previous.sent_count})"
        )
        self._persist()
        return True

    # ── Admission ────────────────────────────────────────────

    def can_send(self) -> bool:
        self.reset_if_new_period()
        return self.state.sent_count < self.capacity and not self.state.limit_reached

    def classify(self, message: dict) -> bool:
        """Return True if a message should go out even when the budget is spent."""
        msg_type = message.get("type", "text")
        if msg_type in IMPORTANT_TYPES:
            return True
        if msg_type == "text":
            text = (message.get("text") or "").lower()
            return any(k in text for k in self._keywords)
        return False

    def should_admit(self, message: dict) -> Admission:
        if self.can_send():
            return Admission(True)
        if not self.classify(message):
            return Admission(False, "quota exhausted")
        if self.state.sent_count >= self.hard_limit:
            return Admission(False, "hard limit reached")
        return Admission(True, "important override")

    def priority_for(self, message: dict) -> int:
        """Queue priority (1-5) for a LINE message."""
        msg_type = message.get("type", "text")
        if msg_type in IMPORTANT_TYPES:
            return 5
        if msg_type == "text":
            return 4 if self.classify(message) else 2
        return 3

    # ── Accounting ───────────────────────────────────────────

    def record_sent(self, count: int = 1) -> None:
        self.reset_if_new_period()
        self.state.sent_count += count
        if self.state.sent_count >= self.capacity and not self.state.limit_reached:
            self.state.limit_reached = True
            logger.warning(
                f"LINE quota reached: {self.state.sent_count}/{self.capacity} "
                f"for {self.state.period_key}. Only important messages will be sent."
            )
        self._check_alerts()
        self._persist()

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.state.sent_count)

    def _check_alerts(self) -> Optional[QuotaAlert]:
        remaining = self.remaining
        crossed = [name for name, threshold in self._tiers if remaining <= threshold]
        if not crossed:
            return None
        tier = crossed[0]
        if tier in self.state.alerted_tiers:
            return None

        now = self._clock()
        if self.state.last_alert_at and now - self.state.last_alert_at < self._cooldown:
            logger.debug(f"Quota alert '{tier}' suppressed by cooldown")
            return None

        # Less severe tiers are implied by this one.
        for name in crossed:
            if name not in self.state.alerted_tiers:
                self.state.alerted_tiers.append(name)
        self.state.last_alert_at = now

        alert = QuotaAlert(
            tier=tier,
            remaining=remaining,
            sent_count=self.state.sent_count,
            capacity=self.capacity,
            period_key=self.state.period_key,
        )
        self.alerts.append(alert)
        logger.warning(alert.message)
        if self._on_alert:
            self._tasks.spawn(self._on_alert(alert), label=f"quota-alert-{tier}")
        return alert

    # ── Status & persistence ─────────────────────────────────

    def get_status(self) -> dict:
        self.reset_if_new_period()
        now = self._clock().astimezone(self._tz)
        if now.month == 12:
            reset = now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        else:
            reset = now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
        return {
            "period": self.state.period_key,
            "sent": self.state.sent_count,
            "capacity": self.capacity,
            "hard_limit": self.hard_limit,
            "remaining": self.remaining,
            "usage_percent": round(self.state.sent_count / self.capacity * 100, 1) if self.capacity else 100.0,
            "limit_reached": self.state.limit_reached,
            "alerted_tiers": list(self.state.alerted_tiers),
            "reset_at": reset.isoformat(),
        }

    def _load(self) -> None:
        if not self._doc:
            return
        data = self._doc.load()
        if not data:
            return
        try:
            stored = QuotaState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Ignoring malformed quota state: {e}")
            return
        if (stored.capacity, stored.safety_margin) != (self.capacity, self.safety_margin):
            logger.info(
                f"Quota limits changed since last run: {stored.capacity}+{stored.safety_margin} "
                f"→ {self.capacity}+{self.safety_margin}"
            )
            stored.capacity = self.capacity
            stored.safety_margin = self.safety_margin
            stored.limit_reached = stored.sent_count >= self.capacity
        self.state = stored
        logger.info(f"Loaded quota state {stored.period_key}: {stored.sent_count}/{self.capacity}")
        self.reset_if_new_period()

    def _persist(self) -> None:
        if not self._doc:
            return
        data = self.state.to_dict()
        data["lastUpdated"] = self._clock().isoformat()
        try:
            self._doc.save(data)
        except PersistenceError as e:
            # Counting continues in memory; the next mutation retries the write.
            logger.error(f"Quota state not saved: {e}")
