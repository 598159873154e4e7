"""Reply reconstruction across the bridge."""

from .detectors import DEFAULT_MATCHERS, ReplyMatcher, detect_reply
from .formatter import format_reply
from .reconstructor import ReplyReconstructor
from .safety import SafeReplyHandler

__all__ = [
    "DEFAULT_MATCHERS",
    "ReplyMatcher",
    "detect_reply",
    "format_reply",
    "ReplyReconstructor",
    "SafeReplyHandler",
]
