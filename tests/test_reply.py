"""Tests for reply detection, reconstruction and fault isolation."""

import asyncio
import re
from unittest.mock import patch

import pytest

from linecord.correlation import CorrelationStore
from linecord.delivery import DeliveryQueue
from linecord.models import Direction, DiscordMessage, Platform, ReplyIntent, ReplyOutcome
from linecord.quota import QuotaGovernor
from linecord.reply.detectors import ReplyMatcher, detect_reply, strip_reply_markup
from linecord.reply.formatter import format_reply
from linecord.reply.reconstructor import REPLY_PRIORITY, ReplyReconstructor
from linecord.reply.safety import SafeReplyHandler


def _discord(content: str, msg_id: str = "D-in") -> DiscordMessage:
    return DiscordMessage(id=msg_id, channel_id="C1", content=content, author_id="A1")


def _line_event(text: str = "", msg_id: str = "L-in", quoted: str = None) -> dict:
    message = {"id": msg_id, "type": "text", "text": text}
    if quoted:
        message["quotedMessageId"] = quoted
    return {"type": "message", "source": {"userId": "U1"}, "message": message}


# ── Detection ────────────────────────────────────────────────

class TestDetection:
    @pytest.mark.parametrize("text, token, matcher", [
        ("↩️ 返信: hello [ID:abc123]", "abc123", "bracket_id"),
        ("thanks ID:xyz-9", "xyz-9", "id"),
        ("MsgID:m_1 ok", "m_1", "msgid"),
        ("see msg_id:q42", "q42", "msg_id"),
        ("メッセージID:jp7 です", "jp7", "jp_msgid"),
        ("MID:m-2", "m-2", "mid"),
        ("MID: none, then msg_id:q7", "q7", "msg_id"),
    ])
    def test_text_tokens(self, text, token, matcher):
        intent = detect_reply(_discord(text), Platform.DISCORD)
        assert intent.originating_id == token
        assert intent.matcher == matcher
        assert intent.source_message_id == "D-in"

    def test_plain_text_is_not_a_reply(self):
        assert detect_reply(_discord("just chatting"), Platform.DISCORD) is None
        assert detect_reply(_discord(""), Platform.DISCORD) is None

    def test_line_native_quote_wins(self):
        event = _line_event("re [ID:other]", quoted="L-quoted")
        intent = detect_reply(event, Platform.LINE)
        assert intent.originating_id == "L-quoted"
        assert intent.matcher == "native"

    def test_line_text_fallback(self):
        intent = detect_reply(_line_event("返信: ok [ID:L-5]"), Platform.LINE)
        assert intent.originating_id == "L-5"
        assert intent.reply_text == "ok"

    def test_first_matcher_in_order_wins(self):
        matchers = [
            ReplyMatcher("listed_first", re.compile(r"B:(\w+)"), "B:{id}"),
            ReplyMatcher("listed_second", re.compile(r"A:(\w+)"), "A:{id}"),
        ]
        intent = detect_reply(_discord("A:one B:two"), Platform.DISCORD, matchers)
        assert intent.matcher == "listed_first"
        assert intent.originating_id == "two"

    def test_strip_reply_markup(self):
        assert strip_reply_markup("↩️ 返信: hello [ID:x1]") == "hello"
        assert strip_reply_markup("reply: see you msg_id:q1") == "see you"


class TestFormatting:
    @pytest.mark.parametrize("resolved_id", ["abc", "1234567890", "a-b_c", "U4af4980629"])
    def test_round_trip(self, resolved_id):
        intent = ReplyIntent(originating_id="orig", platform=Platform.LINE)
        text = format_reply(intent, resolved_id, "earlier message [ID:stale] MsgID:old")
        assert detect_reply(_discord(text), Platform.DISCORD).originating_id == resolved_id

    @pytest.mark.parametrize("snapshot", ["[IDmsg_id:x:abc]", "MsgIDID:y:z", "[ID:[ID:a]b]"])
    def test_round_trip_with_nested_tokens(self, snapshot):
        intent = ReplyIntent(originating_id="orig", platform=Platform.LINE)
        text = format_reply(intent, "REAL", snapshot)
        assert detect_reply(_discord(text), Platform.DISCORD).originating_id == "REAL"
        assert text.count("ID:") == 1

    def test_snapshot_excerpt(self):
        intent = ReplyIntent(originating_id="orig", platform=Platform.LINE)
        text = format_reply(intent, "D1", "word " * 100)
        assert text.startswith("↩️ 返信: word")
        assert "…" in text
        assert text.endswith("[ID:D1]")


# ── Reconstruction ───────────────────────────────────────────

def _reconstructor(tmp_path, clock, line_sender, discord_sender):
    correlations = CorrelationStore(str(tmp_path / "mappings.json"), clock=clock)
    quota = QuotaGovernor(capacity=100, clock=clock)
    queue = DeliveryQueue(line_sender, quota, auto_drain=False, send_interval=0)
    return ReplyReconstructor(correlations, queue, discord_sender), correlations, queue


class TestReconstructor:
    @pytest.mark.asyncio
    async def test_line_reply_posts_native_discord_reply(self, tmp_path, clock, line_sender, discord_sender):
        recon, correlations, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        correlations.create("L-orig", "D-orig", origin=Platform.LINE, content_snapshot="lunch?")

        event = _line_event("sure", msg_id="L-reply", quoted="L-orig")
        outcome = await recon.handle_inbound_reply(event, Platform.LINE, "C1")

        assert outcome == ReplyOutcome.DELIVERED
        channel, text = discord_sender.send.await_args.args
        assert channel == "C1"
        assert "lunch?" in text
        assert text.endswith("[ID:D-orig]")
        assert discord_sender.send.await_args.kwargs["reply_to"] == "D-orig"
        assert correlations.lookup("D-1", Direction.DISCORD_TO_LINE) == "L-reply"
        assert correlations.lookup("L-reply", Direction.LINE_TO_DISCORD) is None
        assert recon.get_stats()["line_to_discord"] == 1

    @pytest.mark.asyncio
    async def test_discord_reply_goes_through_queue(self, tmp_path, clock, line_sender, discord_sender):
        recon, correlations, queue = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        correlations.create("L-orig", "D-orig", origin=Platform.LINE, content_snapshot="lunch?")

        outcome = await recon.handle_inbound_reply(
            _discord("RE: yes [ID:D-orig]", msg_id="D-reply"), Platform.DISCORD, "U1",
        )

        assert outcome == ReplyOutcome.DELIVERED
        discord_sender.send.assert_not_awaited()
        (item,) = queue.pending()
        assert item.destination == "U1"
        assert item.priority == REPLY_PRIORITY
        assert item.payload["text"].endswith("[ID:L-orig]")

        await queue.drain()
        assert correlations.lookup("L-1", Direction.LINE_TO_DISCORD) == "D-reply"
        assert correlations.lookup("D-reply", Direction.DISCORD_TO_LINE) is None

    @pytest.mark.asyncio
    async def test_unmatched(self, tmp_path, clock, line_sender, discord_sender):
        recon, _, queue = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        outcome = await recon.handle_inbound_reply(_discord("[ID:ghost]"), Platform.DISCORD, "U1")

        assert outcome == ReplyOutcome.UNMATCHED
        assert recon.get_stats()["unmatched"] == 1
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_not_a_reply(self, tmp_path, clock, line_sender, discord_sender):
        recon, _, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        outcome = await recon.handle_inbound_reply(_discord("hello"), Platform.DISCORD, "U1")
        assert outcome == ReplyOutcome.NOT_REPLY

    @pytest.mark.asyncio
    async def test_full_queue_drops_annotation(self, tmp_path, clock, line_sender, discord_sender):
        recon, correlations, queue = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        correlations.create("L-orig", "D-orig")
        queue.capacity = 0

        outcome = await recon.handle_inbound_reply(_discord("[ID:D-orig]"), Platform.DISCORD, "U1")
        assert outcome == ReplyOutcome.DROPPED


# ── Fault isolation ──────────────────────────────────────────

class TestSafeReplyHandler:
    @pytest.mark.asyncio
    async def test_resolve_failures_never_escape(self, tmp_path, clock, line_sender, discord_sender):
        recon, _, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        handler = SafeReplyHandler(recon)

        with patch.object(recon, "resolve", side_effect=RuntimeError("index corrupted")):
            for _ in range(100):
                assert await handler.handle_inbound_reply(
                    _discord("[ID:abc]"), Platform.DISCORD, "U1",
                ) is None

        stats = handler.get_stats()
        assert stats["failures"] == 100
        assert stats["failure_rate"] == 100.0
        assert "index corrupted" in stats["last_error"]

    @pytest.mark.asyncio
    async def test_timeout_is_contained(self, tmp_path, clock, line_sender, discord_sender):
        recon, correlations, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        correlations.create("L-orig", "D-orig")

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        discord_sender.send.side_effect = hang
        handler = SafeReplyHandler(recon, timeout=0.05)
        outcome = await handler.handle_inbound_reply(_line_event(quoted="L-orig"), Platform.LINE, "C1")

        assert outcome is None
        assert handler.get_stats()["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_success_and_unmatched_counted(self, tmp_path, clock, line_sender, discord_sender):
        recon, correlations, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        correlations.create("L-orig", "D-orig")
        handler = SafeReplyHandler(recon)

        await handler.handle_inbound_reply(_line_event(quoted="L-orig"), Platform.LINE, "C1")
        await handler.handle_inbound_reply(_line_event(quoted="L-unknown"), Platform.LINE, "C1")

        stats = handler.get_stats()
        assert stats["successes"] == 1
        assert stats["unmatched"] == 1
        assert stats["failures"] == 0

    @pytest.mark.asyncio
    async def test_disabled_is_noop(self, tmp_path, clock, line_sender, discord_sender):
        recon, correlations, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        correlations.create("L-orig", "D-orig")
        handler = SafeReplyHandler(recon, enabled=False)

        outcome = await handler.handle_inbound_reply(_line_event(quoted="L-orig"), Platform.LINE, "C1")
        assert outcome == ReplyOutcome.DISABLED
        discord_sender.send.assert_not_awaited()

    def test_health_check_passes(self, tmp_path, clock, line_sender, discord_sender):
        recon, _, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        result = SafeReplyHandler(recon).health_check()
        assert result["healthy"]
        assert result["checks"]["sample"]
        assert result["checks"]["round_trip"]
        assert set(result["checks"]) >= {"bracket_id", "id", "msgid", "mid", "jp_msgid", "msg_id"}

    def test_health_check_flags_shadowed_matcher(self, tmp_path, clock, line_sender, discord_sender):
        recon, _, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        recon.matchers.append(ReplyMatcher("late_msgid", re.compile(r"MsgID:(\w+)"), "MsgID:{id}"))
        result = SafeReplyHandler(recon).health_check()
        assert not result["healthy"]
        assert result["checks"]["late_msgid"] is False
        assert result["checks"]["msgid"] is True

    def test_health_check_flags_broken_matcher(self, tmp_path, clock, line_sender, discord_sender):
        recon, _, _ = _reconstructor(tmp_path, clock, line_sender, discord_sender)
        recon.matchers.append(ReplyMatcher("broken", re.compile(r"NEVER(\d+)"), "TOKEN:{id}"))
        result = SafeReplyHandler(recon).health_check()
        assert not result["healthy"]
        assert result["checks"]["broken"] is False
