"""Fault isolation around the reply path.

Reply reconstruction is a best-effort extra. Nothing it does, including
hanging, may disturb ordinary forwarding, so every call runs under a
timeout and every error is counted and logged instead of raised.
"""

import asyncio
import logging
from typing import Optional, Union

from ..models import DiscordMessage, Platform, ReplyIntent, ReplyOutcome
from .detectors import match_text
from .formatter import format_reply
from .reconstructor import ReplyReconstructor

logger = logging.getLogger("linecord.reply.safety")

HEALTH_SAMPLE = "↩️ 返信: テストメッセージ [ID:test123]"
HEALTH_SAMPLE_ID = "test123"


class SafeReplyHandler:
    """Wraps a ReplyReconstructor by composition.

    Usage:
        handler = SafeReplyHandler(reconstructor, timeout=5)
        outcome = await handler.handle_inbound_reply(event, Platform.LINE, channel_id)
        # outcome is None on failure or timeout; never raises
    """

    def __init__(self, reconstructor: ReplyReconstructor, timeout: float = 5, enabled: bool = True):
        self._inner = reconstructor
        self.timeout = timeout
        self.enabled = enabled
        self.successes = 0
        self.failures = 0
        self.timeouts = 0
        self.unmatched = 0
        self.last_error: Optional[str] = None

    @property
    def reconstructor(self) -> ReplyReconstructor:
        return self._inner

    async def handle_inbound_reply(
        self,
        message: Union[dict, DiscordMessage],
        platform: Platform,
        destination: str,
    ) -> Optional[ReplyOutcome]:
        """Run the reply path; return None if it failed or timed out."""
        if not self.enabled:
            return ReplyOutcome.DISABLED

        try:
            outcome = await asyncio.wait_for(
                self._inner.handle_inbound_reply(message, platform, destination),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self.failures += 1
            self.timeouts += 1
            self.last_error = f"timed out after {self.timeout}s"
            logger.warning(f"Reply handling on {platform.value} timed out after {self.timeout}s")
            return None
        except Exception as e:
            self.failures += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Reply handling on {platform.value} failed: {e}", exc_info=True)
            return None

        if outcome == ReplyOutcome.UNMATCHED:
            self.unmatched += 1
        elif outcome in (ReplyOutcome.DELIVERED, ReplyOutcome.NOT_REPLY):
            self.successes += 1
        return outcome

    def get_stats(self) -> dict:
        total = self.successes + self.failures + self.unmatched
        return {
            "enabled": self.enabled,
            "successes": self.successes,
            "failures": self.failures,
            "timeouts": self.timeouts,
            "unmatched": self.unmatched,
            "total": total,
            "success_rate": round(self.successes / total * 100, 1) if total else 100.0,
            "failure_rate": round(self.failures / total * 100, 1) if total else 0.0,
            "last_error": self.last_error,
            "reconstructor": self._inner.get_stats(),
        }

    def health_check(self) -> dict:
        """Self-test the text matchers and the formatter round trip."""
        checks: dict[str, bool] = {}
        # Each spelling must be won by its own matcher, not shadowed by an earlier one.
        for matcher in self._inner.matchers:
            sample = matcher.template.format(id=HEALTH_SAMPLE_ID)
            checks[matcher.name] = match_text(sample, self._inner.matchers) == (matcher.name, HEALTH_SAMPLE_ID)

        sample_intent = ReplyIntent(originating_id="health", platform=Platform.DISCORD)
        checks["sample"] = self._detect_token(HEALTH_SAMPLE) == HEALTH_SAMPLE_ID
        checks["round_trip"] = (
            self._detect_token(format_reply(sample_intent, HEALTH_SAMPLE_ID, "ID:other [ID:x]"))
            == HEALTH_SAMPLE_ID
        )

        healthy = all(checks.values())
        if not healthy:
            failed = [name for name, ok in checks.items() if not ok]
            logger.error(f"Reply health check failed: {', '.join(failed)}")
        return {"healthy": healthy, "enabled": self.enabled, "checks": checks}

    def _detect_token(self, text: str) -> Optional[str]:
        sample = DiscordMessage(id="health", channel_id="health", content=text)
        intent = self._inner.detect(sample, Platform.DISCORD)
        return intent.originating_id if intent else None
