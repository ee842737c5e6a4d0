"""Outbound message queue with edit-before-send semantics.

Messages wait here, per logical session, until they are dispatched to the
Session one at a time. Until its dispatch turn arrives a message can still
be removed, reordered or cleared.

Every queue operation for one session id is atomic with respect to the
others under that session's lock. Dispatch picks the next pending item and
marks it dispatched in a single step, right before sending, so a removal
that wins the race is always honoured and a removal that loses it always
fails with AlreadyDispatchedError.

Independent session ids never contend: each has its own lock.

Usage:
    queue = QueueManager(session)
    first = queue.enqueue("default", "Summarize README.md")
    second = queue.enqueue("default", "Now translate it")
    queue.remove_from_queue("default", second)
    await queue.flush("default")
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import (
    AgentWireError,
    AlreadyDispatchedError,
    NotFoundError,
    QueueClosedError,
    QueueError,
    SessionError,
    TransportError,
)
from .session import Session, new_message_id

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    REMOVED = "removed"


@dataclass
class QueuedMessage:
    """A user message waiting for, or past, its dispatch turn."""

    message_id: str
    session_id: str
    content: Any
    enqueued_at: datetime = field(default_factory=datetime.now)
    status: MessageStatus = MessageStatus.PENDING
    dispatched_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "session_id": self.session_id,
            "content": self.content,
            "enqueued_at": self.enqueued_at.isoformat(),
            "status": self.status.value,
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
        }


@dataclass
class QueueStatus:
    """Point-in-time snapshot of one session's queue."""

    session_id: str
    length: int
    processing: bool
    paused: bool
    pending: List[QueuedMessage]
    in_flight: Optional[str] = None


class _SessionQueue:
    """State for one session id. Guarded by ``lock``."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.lock = threading.Lock()
        # Pending items only, in dispatch order
        self.items: List[QueuedMessage] = []
        # Every message ever enqueued, by id; ids are never reused
        self.history: Dict[str, QueuedMessage] = {}
        self.in_flight: Optional[QueuedMessage] = None
        self.paused = False

        # Loop-side coordination
        self.dispatch_lock = asyncio.Lock()
        self.wakeup = asyncio.Event()
        self.idle = asyncio.Event()
        self.idle.set()
        self.task: Optional[asyncio.Task] = None


class QueueManager:
    """Per-session outbound queues feeding one Session.

    Args:
        session: The session messages are dispatched to.
        wait_for_result: Keep one turn in flight: after each dispatch, wait
            for the turn's Result before dispatching the next message.
        result_timeout: Maximum wait for each Result, in seconds.
    """

    def __init__(
        self,
        session: Session,
        wait_for_result: bool = True,
        result_timeout: Optional[float] = None,
    ):
        self._session = session
        self._wait_for_result = wait_for_result
        self._result_timeout = result_timeout
        self._queues: Dict[str, _SessionQueue] = {}
        self._queues_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _queue(self, session_id: str) -> _SessionQueue:
        with self._queues_lock:
            queue = self._queues.get(session_id)
            if queue is None:
                queue = _SessionQueue(session_id)
                self._queues[session_id] = queue
            return queue

    def _existing(self, session_id: str) -> Optional[_SessionQueue]:
        with self._queues_lock:
            return self._queues.get(session_id)

    @staticmethod
    def _sync_idle(queue: _SessionQueue) -> None:
        with queue.lock:
            idle = not queue.items and queue.in_flight is None
        if idle:
            queue.idle.set()
        else:
            queue.idle.clear()

    # ==================== Editing ====================

    def enqueue(self, session_id: str, content: Any, message_id: Optional[str] = None) -> str:
        """Append a message as pending. Does not dispatch it.

        Args:
            session_id: Logical session the message belongs to.
            content: Text, or a list of content block dicts.
            message_id: Caller-assigned identifier. Generated when None.

        Returns:
            The message identifier.

        Raises:
            QueueClosedError: If the manager has been closed.
            QueueError: If message_id was already used in this session.
        """
        if self._closed:
            raise QueueClosedError("Queue manager is closed")
        queue = self._queue(session_id)
        message_id = message_id or new_message_id()

        with queue.lock:
            if message_id in queue.history:
                raise QueueError(f"Duplicate message id {message_id} in session {session_id}")
            item = QueuedMessage(message_id=message_id, session_id=session_id, content=content)
            queue.history[message_id] = item
            queue.items.append(item)
            length = len(queue.items)

        queue.idle.clear()
        queue.wakeup.set()
        logger.debug(f"Enqueued {message_id} for session {session_id} (length={length})")
        return message_id

    def remove_from_queue(self, session_id: str, message_id: str) -> QueuedMessage:
        """Remove a pending message so it is never dispatched.

        Returns:
            A snapshot of the removed message.

        Raises:
            NotFoundError: If no such message was ever enqueued.
            AlreadyDispatchedError: If the message is no longer pending.
        """
        queue = self._existing(session_id)
        if queue is None:
            raise NotFoundError(session_id, message_id)

        with queue.lock:
            item = queue.history.get(message_id)
            if item is None:
                raise NotFoundError(session_id, message_id)
            if item.status != MessageStatus.PENDING:
                raise AlreadyDispatchedError(session_id, message_id, item.status.value)
            item.status = MessageStatus.REMOVED
            queue.items.remove(item)
            snapshot = replace(item)

        self._sync_idle(queue)
        logger.debug(f"Removed {message_id} from session {session_id}")
        return snapshot

    def clear_queue(self, session_id: str) -> int:
        """Remove every pending message. Returns how many were removed."""
        queue = self._existing(session_id)
        if queue is None:
            return 0
        with queue.lock:
            removed = queue.items
            queue.items = []
            for item in removed:
                item.status = MessageStatus.REMOVED
        self._sync_idle(queue)
        if removed:
            logger.debug(f"Cleared {len(removed)} message(s) from session {session_id}")
        return len(removed)

    def reorder(self, session_id: str, message_ids: List[str]) -> None:
        """Set a new dispatch order for the pending messages.

        Args:
            message_ids: Every pending message id, each exactly once.

        Raises:
            QueueError: If message_ids is not a permutation of the pending ids.
        """
        queue = self._queue(session_id)
        with queue.lock:
            by_id = {item.message_id: item for item in queue.items}
            if len(message_ids) != len(by_id) or set(message_ids) != set(by_id):
                raise QueueError(
                    f"Reorder for session {session_id} must list exactly the pending ids "
                    f"{[item.message_id for item in queue.items]}"
                )
            queue.items = [by_id[mid] for mid in message_ids]

    def pause(self, session_id: str) -> None:
        """Stop background dispatch for a session. flush() still works."""
        queue = self._queue(session_id)
        with queue.lock:
            queue.paused = True

    def resume(self, session_id: str) -> None:
        queue = self._queue(session_id)
        with queue.lock:
            queue.paused = False
        queue.wakeup.set()

    # ==================== Snapshots ====================

    def get_queue_length(self, session_id: str) -> int:
        """Number of pending messages."""
        queue = self._existing(session_id)
        if queue is None:
            return 0
        with queue.lock:
            return len(queue.items)

    def get_queue_status(self, session_id: str) -> QueueStatus:
        queue = self._existing(session_id)
        if queue is None:
            return QueueStatus(session_id=session_id, length=0, processing=False,
                               paused=False, pending=[])
        with queue.lock:
            return QueueStatus(
                session_id=session_id,
                length=len(queue.items),
                processing=queue.in_flight is not None,
                paused=queue.paused,
                pending=[replace(item) for item in queue.items],
                in_flight=queue.in_flight.message_id if queue.in_flight else None,
            )

    def get_message(self, session_id: str, message_id: str) -> Optional[QueuedMessage]:
        """Snapshot of any message ever enqueued, whatever its status."""
        queue = self._existing(session_id)
        if queue is None:
            return None
        with queue.lock:
            item = queue.history.get(message_id)
            return replace(item) if item else None

    # ==================== Dispatch ====================

    def _take_next(self, queue: _SessionQueue, honor_pause: bool) -> Optional[QueuedMessage]:
        """Pop the next pending item and mark it dispatched, atomically."""
        with queue.lock:
            if honor_pause and queue.paused:
                return None
            if not queue.items:
                return None
            item = queue.items.pop(0)
            item.status = MessageStatus.DISPATCHED
            item.dispatched_at = datetime.now()
            queue.in_flight = item
            return item

    async def _dispatch(self, queue: _SessionQueue, item: QueuedMessage) -> None:
        target = self._session.results_seen + 1
        try:
            try:
                await self._session.send(
                    item.content, session_id=item.session_id, message_id=item.message_id
                )
            except BaseException:
                # Never written: back to the head of the queue, still editable
                with queue.lock:
                    item.status = MessageStatus.PENDING
                    item.dispatched_at = None
                    queue.items.insert(0, item)
                logger.debug(f"Dispatch of {item.message_id} failed, returned to the queue")
                raise
            logger.debug(f"Dispatched {item.message_id} for session {item.session_id}")
            if self._wait_for_result:
                await self._session.wait_for_results(target, self._result_timeout)
        finally:
            with queue.lock:
                queue.in_flight = None
            self._sync_idle(queue)

    async def flush(self, session_id: str) -> List[str]:
        """Dispatch every pending message now, in order.

        Ignores pause. A message removed while an earlier one is in flight
        is skipped.

        Returns:
            Identifiers dispatched by this call.

        Raises:
            AgentWireError: If a dispatch fails. A message that could not be
                written returns to the head of the queue as pending, and
                later messages stay pending.
        """
        queue = self._existing(session_id)
        if queue is None:
            return []
        dispatched: List[str] = []
        while True:
            async with queue.dispatch_lock:
                item = self._take_next(queue, honor_pause=False)
                if item is None:
                    break
                await self._dispatch(queue, item)
                dispatched.append(item.message_id)
        return dispatched

    def start(self, session_id: str) -> None:
        """Start background dispatch for a session.

        Must be called from a running event loop. Calling it again while
        the processor runs is a no-op.
        """
        if self._closed:
            raise QueueClosedError("Queue manager is closed")
        queue = self._queue(session_id)
        if queue.task is not None and not queue.task.done():
            return
        queue.task = asyncio.create_task(
            self._process(queue), name=f"agentwire-queue-{session_id}"
        )
        queue.wakeup.set()

    async def _process(self, queue: _SessionQueue) -> None:
        logger.debug(f"Queue processor started for session {queue.session_id}")
        while not self._closed:
            await queue.wakeup.wait()
            queue.wakeup.clear()
            while not self._closed:
                async with queue.dispatch_lock:
                    item = self._take_next(queue, honor_pause=True)
                    if item is None:
                        break
                    try:
                        await self._dispatch(queue, item)
                    except (SessionError, TransportError) as e:
                        logger.error(f"Queue processor for {queue.session_id} stopped: {e}")
                        return
                    except (AgentWireError, asyncio.TimeoutError) as e:
                        logger.error(f"Dispatch of {item.message_id} failed: {e}")
                        if item.status == MessageStatus.PENDING:
                            # Unwritten; it stays queued until flush() or start()
                            return

    async def join(self, session_id: str, timeout: Optional[float] = None) -> None:
        """Wait until a session has nothing pending and nothing in flight.

        Raises:
            asyncio.TimeoutError: If timeout elapses first.
        """
        queue = self._existing(session_id)
        if queue is None:
            return
        await asyncio.wait_for(queue.idle.wait(), timeout)

    async def close(self) -> None:
        """Stop every processor and reject further enqueues."""
        self._closed = True
        with self._queues_lock:
            queues = list(self._queues.values())
        tasks = [q.task for q in queues if q.task is not None and not q.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"Queue manager closed ({len(tasks)} processor(s) stopped)")


__all__ = ["MessageStatus", "QueueManager", "QueueStatus", "QueuedMessage"]
