"""Reply annotation text."""

from ..models import ReplyIntent
from .detectors import strip_reply_markup

REPLY_PREFIX = "↩️ 返信:"
EXCERPT_LIMIT = 80


def excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def format_reply(intent: ReplyIntent, resolved_id: str, snapshot: str = "") -> str:
    """Build the annotation delivered next to a forwarded reply.

    The quoted snapshot is stripped of any id tokens so the only token in
    the result is ``[ID:<resolved_id>]``; a later reply to the annotation
    is traced back through it.

    Args:
        intent: The detected reply (unused by the default layout)
        resolved_id: Id of the replied-to message on the destination platform
        snapshot: Text of the replied-to message, if known
    """
    quoted = excerpt(strip_reply_markup(snapshot)) or "(message)"
    return f"{REPLY_PREFIX} {quoted} [ID:{resolved_id}]"
