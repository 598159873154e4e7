"""Tests for the quota-aware delivery queue."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from linecord.delivery import DeliveryQueue
from linecord.errors import DeliveryError
from linecord.models import ItemState, QueueItem
from linecord.quota import QuotaGovernor


def _text(text: str) -> dict:
    return {"type": "text", "text": text}


def _queue(line_sender, clock, capacity=50, quota_capacity=100, **kwargs) -> DeliveryQueue:
    quota = QuotaGovernor(capacity=quota_capacity, clock=clock, alert_cooldown_seconds=0)
    kwargs.setdefault("auto_drain", False)
    kwargs.setdefault("send_interval", 0)
    return DeliveryQueue(line_sender, quota, capacity=capacity, **kwargs)


def _sent_texts(line_sender) -> list[str]:
    return [call.args[1][0].get("text", call.args[1][0]["type"]) for call in line_sender.push.call_args_list]


class TestOrdering:
    @pytest.mark.asyncio
    async def test_priority_descending(self, line_sender, clock):
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("low"), priority=1)
        queue.enqueue("U1", _text("high"), priority=5)
        queue.enqueue("U1", _text("mid"), priority=3)

        await queue.drain()
        assert _sent_texts(line_sender) == ["high", "mid", "low"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, line_sender, clock):
        queue = _queue(line_sender, clock)
        for name in ("a", "b", "c"):
            queue.enqueue("U1", _text(name), priority=2)

        await queue.drain()
        assert _sent_texts(line_sender) == ["a", "b", "c"]

    def test_priority_is_clamped(self, line_sender, clock):
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("x"), priority=9)
        queue.enqueue("U1", _text("y"), priority=0)
        assert [i.priority for i in queue.pending()] == [5, 1]


class TestCapacity:
    def test_full_queue_rejects(self, line_sender, clock):
        queue = _queue(line_sender, clock, capacity=50)
        results = [queue.enqueue("U1", _text(str(n))) for n in range(51)]

        assert results[:50] == [True] * 50
        assert results[50] is False
        assert len(queue) == 50
        assert queue.get_status()["rejected"] == 1

    def test_clear_reports_count(self, line_sender, clock):
        queue = _queue(line_sender, clock)
        for n in range(4):
            queue.enqueue("U1", _text(str(n)))
        assert queue.clear() == 4
        assert len(queue) == 0


    @pytest.mark.asyncio
    async def test_in_flight_item_keeps_its_slot(self, line_sender, clock):
        gate = asyncio.Event()

        async def slow_failing_push(user_id, messages):
            if line_sender.push.await_count == 1:
                await gate.wait()
                raise DeliveryError("unavailable", status=503)
            return {"messageId": f"L-{line_sender.push.await_count}"}

        line_sender.push.side_effect = slow_failing_push
        queue = _queue(line_sender, clock, capacity=2)
        queue.enqueue("U1", _text("a"))

        drain = asyncio.create_task(queue.drain())
        await asyncio.sleep(0)
        assert queue.get_status()["in_flight"]

        assert queue.enqueue("U1", _text("b")) is True
        assert queue.enqueue("U1", _text("c")) is False

        gate.set()
        await asyncio.sleep(0)
        assert len(queue) <= queue.capacity

        await drain
        assert _sent_texts(line_sender) == ["a", "a", "b"]
        assert queue.get_status()["rejected"] == 1


class TestQuota:
    @pytest.mark.asyncio
    async def test_exhausted_holds_normal_messages(self, line_sender, clock):
        queue = _queue(line_sender, clock, quota_capacity=2)
        queue._quota.record_sent(2)
        for name in ("a", "b", "c"):
            queue.enqueue("U1", _text(name))

        await queue.drain()

        line_sender.push.assert_not_awaited()
        assert len(queue) == 3
        assert queue.retry_scheduled
        queue.close()
        assert not queue.retry_scheduled

    @pytest.mark.asyncio
    async def test_exhausted_still_sends_important(self, line_sender, clock):
        queue = _queue(line_sender, clock, quota_capacity=2)
        queue._quota.record_sent(2)
        queue.enqueue("U1", _text("chatter"), priority=5)
        queue.enqueue("U1", {"type": "image", "originalContentUrl": "https://x/a.jpg"}, priority=1)

        await queue.drain()

        assert _sent_texts(line_sender) == ["image"]
        assert [i.payload["text"] for i in queue.pending()] == ["chatter"]
        queue.close()

    @pytest.mark.asyncio
    async def test_retry_timer_drains_later(self, line_sender, clock):
        queue = _queue(line_sender, clock, quota_capacity=1, quota_backoff=0.01)
        queue._quota.record_sent(1)
        queue.enqueue("U1", _text("later"))
        await queue.drain()
        assert queue.retry_scheduled

        # The new month opens the budget before the timer fires.
        clock.advance(days=20)
        await asyncio.sleep(0.05)
        assert _sent_texts(line_sender) == ["later"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_successful_send_is_counted(self, line_sender, clock):
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("hi"))
        await queue.drain()
        assert queue._quota.state.sent_count == 1
        assert queue.get_status()["sent"] == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried_at_head(self, line_sender, clock):
        line_sender.push.side_effect = [
            DeliveryError("boom", status=503),
            {"messageId": "L-1"},
            {"messageId": "L-2"},
        ]
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("first"), priority=3)
        queue.enqueue("U1", _text("second"), priority=3)

        await queue.drain()

        assert _sent_texts(line_sender) == ["first", "first", "second"]
        status = queue.get_status()
        assert status["retried"] == 1
        assert status["sent"] == 2

    @pytest.mark.asyncio
    async def test_rate_limit_is_dropped(self, line_sender, clock):
        line_sender.push.side_effect = DeliveryError("slow down", status=429, retry_after=30)
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("x"))

        await queue.drain()

        assert line_sender.push.await_count == 1
        assert queue.get_status()["dropped"] == 1
        assert queue._quota.state.sent_count == 0

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, line_sender, clock):
        line_sender.push.side_effect = DeliveryError("down", status=500)
        queue = _queue(line_sender, clock, max_attempts=3)
        queue.enqueue("U1", _text("x"))

        await queue.drain()

        assert line_sender.push.await_count == 3
        assert queue.get_status()["dropped"] == 1
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, line_sender, clock):
        line_sender.push.side_effect = [DeliveryError("reset"), {"messageId": "L-9"}]
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("x"))
        await queue.drain()
        assert queue.get_status()["sent"] == 1


class TestDrain:
    @pytest.mark.asyncio
    async def test_delivered_callback_gets_result(self, line_sender, clock):
        callback = AsyncMock()
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("x"), on_delivered=[callback])

        await queue.drain()

        item, result = callback.await_args.args
        assert item.state == ItemState.SENT
        assert result == {"messageId": "L-1"}

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_drain(self, line_sender, clock):
        callback = AsyncMock(side_effect=RuntimeError("bad callback"))
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("a"), on_delivered=[callback])
        queue.enqueue("U1", _text("b"))

        await queue.drain()
        assert _sent_texts(line_sender) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_drain_is_reentrancy_guarded(self, line_sender, clock):
        gate = asyncio.Event()

        async def slow_push(user_id, messages):
            await gate.wait()
            return {"messageId": "L-1"}

        line_sender.push.side_effect = slow_push
        queue = _queue(line_sender, clock)
        queue.enqueue("U1", _text("a"))
        queue.enqueue("U1", _text("b"))

        first = asyncio.create_task(queue.drain())
        await asyncio.sleep(0)
        assert queue.draining

        await queue.drain()  # returns at once
        assert line_sender.push.await_count == 1

        gate.set()
        await first
        assert line_sender.push.await_count == 2
        assert not queue.draining

    @pytest.mark.asyncio
    async def test_auto_drain_on_enqueue(self, line_sender, clock):
        queue = _queue(line_sender, clock, auto_drain=True)
        queue.enqueue("U1", _text("x"))
        await queue._tasks.wait_idle()
        assert _sent_texts(line_sender) == ["x"]


class TestItemStates:
    def test_legal_path(self):
        item = QueueItem(destination="U1", payload=_text("x"))
        for state in (ItemState.ADMITTED, ItemState.SENDING, ItemState.RETRY,
                      ItemState.ADMITTED, ItemState.SENDING, ItemState.SENT):
            item.transition(state)
        assert item.state == ItemState.SENT

    def test_terminal_states_are_final(self):
        item = QueueItem(destination="U1", payload=_text("x"))
        item.transition(ItemState.DROPPED)
        with pytest.raises(ValueError):
            item.transition(ItemState.ADMITTED)

    def test_cannot_skip_admission(self):
        item = QueueItem(destination="U1", payload=_text("x"))
        with pytest.raises(ValueError):
            item.transition(ItemState.SENT)
