"""Checkpoint tracking for file rewind.

The agent stamps every user message it accepts with an opaque identifier
(the ``uuid`` field on the echoed user message). Those identifiers are the
checkpoints a later rewind can return to. The tracker records them as the
read loop observes them and remembers which outbound message produced
each one.

Only messages that actually reached the agent can produce a checkpoint:
the tracker is fed exclusively from the read loop, never from the queue.

Correlation of a checkpoint to the outbound message:
1. If the echo carries ``client_message_id``, that is the origin.
2. Otherwise the oldest dispatched message still awaiting its echo is
   taken (the agent processes prompts in order).
Tool-result user messages also carry identifiers but never correspond to
an outbound prompt, so they are recorded without an origin.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..events import UserMessage

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    """A point in the conversation that rewind() can return to."""

    checkpoint_id: str
    message_id: Optional[str] = None
    session_id: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "message_id": self.message_id,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
        }


class CheckpointTracker:
    """Maps checkpoint identifiers to the messages that produced them.

    One tracker belongs to one Session. The lock is held only for map
    updates, so readers on other threads see consistent snapshots.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._checkpoints: "OrderedDict[str, Checkpoint]" = OrderedDict()
        # Outbound message ids whose echo has not arrived yet, oldest first
        self._awaiting_echo: List[str] = []

    def note_dispatched(self, message_id: str) -> None:
        """Record that a message was written to the agent."""
        with self._lock:
            self._awaiting_echo.append(message_id)

    def forget_dispatched(self, message_id: str) -> None:
        """Undo note_dispatched() for a message whose write failed."""
        with self._lock:
            if message_id in self._awaiting_echo:
                self._awaiting_echo.remove(message_id)

    def record(self, message: UserMessage) -> Optional[Checkpoint]:
        """Record the checkpoint carried by a user message, if any.

        Returns:
            The new (or already known) checkpoint, or None if the message
            carries no identifier.
        """
        checkpoint_id = message.checkpoint_id
        if not checkpoint_id:
            return None

        with self._lock:
            existing = self._checkpoints.get(checkpoint_id)
            if existing is not None:
                return existing

            message_id: Optional[str] = None
            if message.client_message_id and message.client_message_id in self._awaiting_echo:
                message_id = message.client_message_id
                self._awaiting_echo.remove(message_id)
            elif not message.is_tool_result and self._awaiting_echo:
                message_id = self._awaiting_echo.pop(0)

            checkpoint = Checkpoint(
                checkpoint_id=checkpoint_id,
                message_id=message_id,
                session_id=message.session_id,
            )
            self._checkpoints[checkpoint_id] = checkpoint

        logger.debug(f"Recorded checkpoint {checkpoint_id} (message={message_id})")
        return checkpoint

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            return self._checkpoints.get(checkpoint_id)

    def __contains__(self, checkpoint_id: object) -> bool:
        with self._lock:
            return checkpoint_id in self._checkpoints

    def __len__(self) -> int:
        with self._lock:
            return len(self._checkpoints)

    def for_message(self, message_id: str) -> Optional[Checkpoint]:
        """Find the checkpoint produced by an outbound message."""
        with self._lock:
            for checkpoint in self._checkpoints.values():
                if checkpoint.message_id == message_id:
                    return checkpoint
        return None

    def list_checkpoints(self) -> List[Checkpoint]:
        """All checkpoints in the order they were observed."""
        with self._lock:
            return list(self._checkpoints.values())

    def latest(self) -> Optional[Checkpoint]:
        with self._lock:
            if not self._checkpoints:
                return None
            return next(reversed(self._checkpoints.values()))

    def clear(self) -> None:
        with self._lock:
            self._checkpoints.clear()
            self._awaiting_echo.clear()


__all__ = ["Checkpoint", "CheckpointTracker"]
