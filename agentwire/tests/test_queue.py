"""Tests for QueueManager."""

import asyncio
import random

import pytest

from agentwire.client.queue import MessageStatus, QueueManager
from agentwire.client.session import Session
from agentwire.errors import (
    AlreadyDispatchedError,
    NotConnectedError,
    NotFoundError,
    PipeClosedError,
    QueueClosedError,
    QueueError,
)

from .conftest import FakeTransport, wait_until


# ----------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------

def _sent_ids(transport):
    return [f["client_message_id"] for f in transport.written_of_type("user")]


def _result():
    return {"type": "result", "subtype": "success", "is_error": False}


@pytest.fixture
def queue():
    """A manager whose session is never connected; for pure editing tests."""
    return QueueManager(Session())


class TestEditing:
    """Enqueue, remove and inspect without dispatching."""

    def test_enqueue_generates_ids(self, queue):
        first = queue.enqueue("s1", "a")
        second = queue.enqueue("s1", "b")
        assert first != second
        assert first.startswith("msg_") and len(first) == 36
        assert queue.get_queue_length("s1") == 2

    def test_caller_assigned_id(self, queue):
        assert queue.enqueue("s1", "a", message_id="mine") == "mine"
        assert queue.get_message("s1", "mine").content == "a"

    def test_duplicate_id_rejected(self, queue):
        queue.enqueue("s1", "a", message_id="dup")
        with pytest.raises(QueueError):
            queue.enqueue("s1", "b", message_id="dup")
        assert queue.get_queue_length("s1") == 1

    def test_same_id_in_other_session_is_fine(self, queue):
        queue.enqueue("s1", "a", message_id="x")
        queue.enqueue("s2", "b", message_id="x")
        assert queue.get_queue_length("s1") == queue.get_queue_length("s2") == 1

    def test_remove_pending(self, queue):
        a = queue.enqueue("s1", "a")
        removed = queue.remove_from_queue("s1", a)
        assert removed.status == MessageStatus.REMOVED
        assert queue.get_queue_length("s1") == 0
        assert queue.get_message("s1", a).status == MessageStatus.REMOVED

    def test_remove_unknown(self, queue):
        queue.enqueue("s1", "a")
        with pytest.raises(NotFoundError):
            queue.remove_from_queue("s1", "nope")
        with pytest.raises(NotFoundError):
            queue.remove_from_queue("other", "nope")
        assert queue.get_queue_length("s1") == 1

    def test_remove_twice_fails(self, queue):
        a = queue.enqueue("s1", "a")
        queue.remove_from_queue("s1", a)
        with pytest.raises(AlreadyDispatchedError) as exc_info:
            queue.remove_from_queue("s1", a)
        assert exc_info.value.status == "removed"

    def test_clear(self, queue):
        for text in "abc":
            queue.enqueue("s1", text)
        assert queue.clear_queue("s1") == 3
        assert queue.get_queue_length("s1") == 0
        assert queue.clear_queue("unknown") == 0

    def test_reorder(self, queue):
        a = queue.enqueue("s1", "a")
        b = queue.enqueue("s1", "b")
        c = queue.enqueue("s1", "c")
        queue.reorder("s1", [c, a, b])
        assert [m.message_id for m in queue.get_queue_status("s1").pending] == [c, a, b]

    def test_reorder_requires_permutation(self, queue):
        a = queue.enqueue("s1", "a")
        queue.enqueue("s1", "b")
        with pytest.raises(QueueError):
            queue.reorder("s1", [a])
        with pytest.raises(QueueError):
            queue.reorder("s1", [a, a])

    def test_status_snapshot(self, queue):
        a = queue.enqueue("s1", "a")
        status = queue.get_queue_status("s1")
        assert status.length == 1
        assert status.processing is False
        assert status.paused is False
        # Snapshots are copies
        status.pending[0].status = MessageStatus.REMOVED
        assert queue.get_message("s1", a).status == MessageStatus.PENDING

    def test_status_of_unknown_session(self, queue):
        status = queue.get_queue_status("nobody")
        assert status.length == 0
        assert status.pending == []


class TestFlush:
    """Dispatching pending messages to a connected session."""

    @pytest.mark.asyncio
    async def test_remove_last_before_flush(self, fake_options, transport):
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            a = queue.enqueue("default", "A")
            b = queue.enqueue("default", "B")
            c = queue.enqueue("default", "C")
            queue.remove_from_queue("default", c)
            assert queue.get_queue_length("default") == 2

            dispatched = await queue.flush("default")

            assert dispatched == [a, b]
            assert _sent_ids(transport) == [a, b]
            assert queue.get_queue_length("default") == 0
            assert queue.get_message("default", a).status == MessageStatus.DISPATCHED

    @pytest.mark.asyncio
    async def test_content_and_session_id_are_sent(self, fake_options, transport):
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            queue.enqueue("chat-7", "hello")
            await queue.flush("chat-7")
            frame = transport.written_of_type("user")[0]
            assert frame["session_id"] == "chat-7"
            assert frame["message"]["content"] == "hello"

    @pytest.mark.asyncio
    async def test_removal_checked_right_before_each_dispatch(self, fake_options):
        transport = FakeTransport()
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            a = queue.enqueue("default", "A")
            b = queue.enqueue("default", "B")
            c = queue.enqueue("default", "C")

            flush = asyncio.create_task(queue.flush("default"))
            await wait_until(lambda: _sent_ids(transport) == [a])

            # A is in flight; B has not had its turn yet
            with pytest.raises(AlreadyDispatchedError):
                queue.remove_from_queue("default", a)
            queue.remove_from_queue("default", b)
            status = queue.get_queue_status("default")
            assert status.processing is True
            assert status.in_flight == a

            transport.feed(_result())
            await wait_until(lambda: len(_sent_ids(transport)) == 2)
            transport.feed(_result())

            assert await asyncio.wait_for(flush, 2) == [a, c]
            assert _sent_ids(transport) == [a, c]

    @pytest.mark.asyncio
    async def test_flush_without_waiting_for_results(self, fake_options):
        transport = FakeTransport()
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, wait_for_result=False)
            ids = [queue.enqueue("default", str(i)) for i in range(3)]
            assert await queue.flush("default") == ids

    @pytest.mark.asyncio
    async def test_flush_unknown_session(self, queue):
        assert await queue.flush("nobody") == []

    @pytest.mark.parametrize("seed", range(5))
    @pytest.mark.asyncio
    async def test_dispatched_equals_enqueued_minus_removed(self, seed, fake_options, transport):
        rng = random.Random(seed)
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            expected = []
            for _ in range(30):
                if expected and rng.random() < 0.3:
                    victim = rng.choice(expected)
                    queue.remove_from_queue("default", victim)
                    expected.remove(victim)
                else:
                    expected.append(queue.enqueue("default", "x"))
            assert await queue.flush("default") == expected
            assert _sent_ids(transport) == expected

    @pytest.mark.asyncio
    async def test_failed_write_returns_message_to_queue(self, fake_options, transport):
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            a = queue.enqueue("default", "A")
            b = queue.enqueue("default", "B")
            transport.broken = True

            with pytest.raises(PipeClosedError):
                await queue.flush("default")

            assert transport.written == []
            message = queue.get_message("default", a)
            assert message.status == MessageStatus.PENDING
            assert message.dispatched_at is None
            status = queue.get_queue_status("default")
            assert [m.message_id for m in status.pending] == [a, b]
            assert status.in_flight is None

            # Still editable
            queue.remove_from_queue("default", a)
            assert queue.get_queue_length("default") == 1

    @pytest.mark.asyncio
    async def test_flush_on_unconnected_session_keeps_message(self, queue):
        a = queue.enqueue("default", "A")
        with pytest.raises(NotConnectedError):
            await queue.flush("default")
        assert queue.get_message("default", a).status == MessageStatus.PENDING
        assert queue.get_queue_length("default") == 1


class TestBackgroundProcessing:
    """The per-session processor task."""

    @pytest.mark.asyncio
    async def test_processes_in_order(self, fake_options, transport):
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            queue.start("default")
            ids = [queue.enqueue("default", str(i)) for i in range(4)]
            await queue.join("default", timeout=2)
            assert _sent_ids(transport) == ids
            await queue.close()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, fake_options, transport):
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session, result_timeout=2)
            queue.pause("default")
            queue.start("default")
            a = queue.enqueue("default", "A")
            await asyncio.sleep(0.05)
            assert _sent_ids(transport) == []
            assert queue.get_queue_status("default").paused is True

            queue.resume("default")
            await queue.join("default", timeout=2)
            assert _sent_ids(transport) == [a]
            await queue.close()

    @pytest.mark.asyncio
    async def test_close_rejects_enqueue(self, fake_options, transport):
        async with Session(fake_options, transport=transport) as session:
            queue = QueueManager(session)
            queue.start("default")
            await queue.close()
            assert queue.closed
            with pytest.raises(QueueClosedError):
                queue.enqueue("default", "late")
            with pytest.raises(QueueClosedError):
                queue.start("default")

    @pytest.mark.asyncio
    async def test_processor_stops_when_session_closes(self, fake_options):
        transport = FakeTransport()
        session = Session(fake_options, transport=transport)
        await session.connect()
        queue = QueueManager(session)
        queue.start("default")
        queue.enqueue("default", "A")
        await wait_until(lambda: len(_sent_ids(transport)) == 1)

        await session.disconnect()
        await wait_until(lambda: queue.get_queue_status("default").processing is False)
        await queue.close()
