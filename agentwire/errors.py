"""Exception hierarchy for agentwire.

Every error raised by the library derives from AgentWireError so callers
can catch the whole family at once. The hierarchy mirrors how failures
propagate:

- SpawnError: the remote process could not be started. Fatal to connect().
- TransportError: the process died or closed a stream mid-session. Fatal
  to the session, which moves to FAULTED.
- ProtocolError: an undecodable frame. Skipped, unless it keeps happening.
- HookError: a hook handler failed or timed out. Never fatal; the
  dispatcher logs it and answers "allow".
- QueueError: returned to the caller of a queue operation only.
- SessionError: the session was in the wrong state, or was closed while
  an operation was waiting on it.
- ControlError: a control command (rewind, interrupt) failed or timed out.
"""

from typing import Optional


class AgentWireError(Exception):
    """Base class for all agentwire errors."""

    pass


# ==================== Spawn ====================


class SpawnError(AgentWireError):
    """The external process could not be started."""

    pass


class CLINotFoundError(SpawnError):
    """The agent CLI executable could not be located."""

    def __init__(self, message: str = "Agent CLI not found", path: str = ""):
        if path:
            message = f"{message}: {path}"
        super().__init__(message)
        self.path = path


# ==================== Transport ====================


class TransportError(AgentWireError):
    """The process or one of its streams failed mid-session."""

    pass


class StreamClosedError(TransportError):
    """The process closed its output stream."""

    pass


class PipeClosedError(TransportError):
    """The process closed its input; nothing more can be written."""

    pass


class ProcessError(TransportError):
    """The process exited with an error."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr:
            message = f"{message}\nError output: {stderr}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


# ==================== Protocol ====================


class ProtocolError(AgentWireError):
    """A frame could not be decoded."""

    def __init__(self, message: str, line: str = "", position: Optional[int] = None):
        super().__init__(message)
        # Keep a bounded prefix so huge frames don't end up in logs
        self.line = line[:200] if line else ""
        self.position = position


# ==================== Hooks ====================


class HookError(AgentWireError):
    """A hook handler misbehaved."""

    pass


class HookTimeoutError(HookError):
    """A hook handler exceeded its timeout."""

    def __init__(self, event: str, timeout: float):
        super().__init__(f"Hook handler for {event} timed out after {timeout}s")
        self.event = event
        self.timeout = timeout


class HookHandlerError(HookError):
    """A hook handler raised or returned an invalid value."""

    pass


# ==================== Queue ====================


class QueueError(AgentWireError):
    """Base class for queue operation failures."""

    pass


class NotFoundError(QueueError):
    """No queued message with the given identifier."""

    def __init__(self, session_id: str, message_id: str):
        super().__init__(f"Message {message_id} not found in queue for session {session_id}")
        self.session_id = session_id
        self.message_id = message_id


class AlreadyDispatchedError(QueueError):
    """The message has already left the pending state."""

    def __init__(self, session_id: str, message_id: str, status: str):
        super().__init__(
            f"Message {message_id} in session {session_id} cannot be removed (status: {status})"
        )
        self.session_id = session_id
        self.message_id = message_id
        self.status = status


class QueueClosedError(QueueError):
    """The queue manager has been closed."""

    pass


# ==================== Session ====================


class SessionError(AgentWireError):
    """Base class for session lifecycle failures."""

    pass


class SessionStateError(SessionError):
    """The operation is not valid in the session's current state."""

    pass


class NotConnectedError(SessionStateError):
    """The session is not connected."""

    pass


class SessionClosedError(SessionError):
    """The session was disconnected while the operation was waiting."""

    pass


# ==================== Control ====================


class ControlError(AgentWireError):
    """A control command failed."""

    pass


class ControlTimeoutError(ControlError):
    """No acknowledgement arrived for a control command in time."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"No acknowledgement for {command} within {timeout}s")
        self.command = command
        self.timeout = timeout


class RewindTimeoutError(ControlTimeoutError):
    """No acknowledgement arrived for a rewind in time."""

    def __init__(self, checkpoint_id: str, timeout: float):
        super().__init__("rewind", timeout)
        self.checkpoint_id = checkpoint_id


class InvalidCheckpointError(ControlError):
    """The checkpoint identifier was never observed by this session."""

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Unknown checkpoint: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


__all__ = [
    "AgentWireError",
    "SpawnError",
    "CLINotFoundError",
    "TransportError",
    "StreamClosedError",
    "PipeClosedError",
    "ProcessError",
    "ProtocolError",
    "HookError",
    "HookTimeoutError",
    "HookHandlerError",
    "QueueError",
    "NotFoundError",
    "AlreadyDispatchedError",
    "QueueClosedError",
    "SessionError",
    "SessionStateError",
    "NotConnectedError",
    "SessionClosedError",
    "ControlError",
    "ControlTimeoutError",
    "RewindTimeoutError",
    "InvalidCheckpointError",
]
