"""Reply detection strategies.

LINE webhook events carry a native ``quotedMessageId`` when the user used
the reply UI; that is always tried first. Everything else relies on an id
token embedded in the text by the formatter (``[ID:...]``) or typed by a
user in one of the accepted spellings. Matchers run in list order and the
first hit wins, so the specific spellings come before the bare ``ID:``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from ..models import DiscordMessage, Platform, ReplyIntent

logger = logging.getLogger("linecord.reply.detectors")

_TOKEN = r"([A-Za-z0-9\-_]+)"


@dataclass(frozen=True)
class ReplyMatcher:
    """A named regex that extracts a message id from text.

    ``template`` shows how the token is written; the health check fills it
    with a sample id and expects the matcher to extract that id back.
    """
    name: str
    pattern: re.Pattern
    template: str

    def match(self, text: str) -> Optional[str]:
        m = self.pattern.search(text)
        return m.group(1) if m else None


DEFAULT_MATCHERS: list[ReplyMatcher] = [
    ReplyMatcher("bracket_id", re.compile(r"\[ID:" + _TOKEN + r"\]"), "[ID:{id}]"),
    ReplyMatcher("msgid", re.compile(r"MsgID:" + _TOKEN), "MsgID:{id}"),
    ReplyMatcher("mid", re.compile(r"MID:" + _TOKEN), "MID:{id}"),
    ReplyMatcher("jp_msgid", re.compile(r"メッセージID:" + _TOKEN), "メッセージID:{id}"),
    ReplyMatcher("msg_id", re.compile(r"msg_id:" + _TOKEN), "msg_id:{id}"),
    ReplyMatcher("id", re.compile(r"ID:" + _TOKEN), "ID:{id}"),
]

# Leading markers users and the formatter put in front of a reply.
REPLY_PREFIXES = [
    re.compile(r"^\s*↩️\s*返信:\s*"),
    re.compile(r"^\s*💬\s*返信:\s*"),
    re.compile(r"^\s*返信:\s*"),
    re.compile(r"^\s*reply:\s*", re.IGNORECASE),
    re.compile(r"^\s*RE:\s*", re.IGNORECASE),
    re.compile(r"^\s*【返信】\s*"),
    re.compile(r"^\s*\[返信\]\s*"),
]


def match_text(text: str, matchers: Sequence[ReplyMatcher] = DEFAULT_MATCHERS) -> Optional[tuple[str, str]]:
    """Run matchers in order.

    Returns:
        (matcher name, extracted id) for the first hit, or None.
    """
    if not text:
        return None
    for matcher in matchers:
        token = matcher.match(text)
        if token:
            return matcher.name, token
    return None


def strip_reply_markup(text: str, matchers: Sequence[ReplyMatcher] = DEFAULT_MATCHERS) -> str:
    """Remove reply prefixes and id tokens, leaving what the user wrote."""
    cleaned = text or ""
    for prefix in REPLY_PREFIXES:
        cleaned, n = prefix.subn("", cleaned, count=1)
        if n:
            break
    # Removing one token can join the pieces around it into another.
    previous = None
    while cleaned != previous:
        previous = cleaned
        for matcher in matchers:
            cleaned = matcher.pattern.sub("", cleaned)
    return re.sub(r"[ \t]+\n", "\n", cleaned).strip()


def detect_reply(
    message: Union[dict, DiscordMessage],
    platform: Platform,
    matchers: Sequence[ReplyMatcher] = DEFAULT_MATCHERS,
) -> Optional[ReplyIntent]:
    """Detect whether an inbound message replies to an earlier one.

    Args:
        message: A LINE webhook event dict or a DiscordMessage
        platform: Platform the message arrived on

    Returns:
        ReplyIntent, or None if the message is not a reply.
    """
    if platform == Platform.LINE:
        body = (message or {}).get("message") or {}
        text = body.get("text") or ""
        source_id = body.get("id")
        quoted = body.get("quotedMessageId")
        if quoted:
            return ReplyIntent(
                originating_id=str(quoted),
                platform=platform,
                source_message_id=str(source_id) if source_id else None,
                reply_text=text,
                matcher="native",
            )
    else:
        text = message.content or ""
        source_id = message.id

    hit = match_text(text, matchers)
    if hit is None:
        return None
    name, token = hit
    logger.debug(f"Reply token {token} found by '{name}' on {platform.value}")
    return ReplyIntent(
        originating_id=token,
        platform=platform,
        source_message_id=str(source_id) if source_id else None,
        reply_text=strip_reply_markup(text, matchers),
        matcher=name,
    )
