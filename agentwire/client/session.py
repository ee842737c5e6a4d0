"""Session: the stateful client for one agent process.

A Session owns exactly one ProcessTransport and one read loop task. The
read loop is the only reader of the agent's stdout. It decodes each frame
and routes it:

- system / assistant / user / result / stream_event / unrecognized:
  pushed, in arrival order, onto the consumer-visible message stream.
  User messages also feed the CheckpointTracker.
- control_request: evaluated by the HookDispatcher; the resulting
  control_response is written back before the next frame is read, so hook
  evaluation is strictly sequential.
- control_response: resolves the pending control command future with the
  same request_id.

Every write (user turns, control commands, hook responses) goes through a
single asyncio.Lock so frames are never interleaved.

State machine:

    IDLE -> CONNECTING -> CONNECTED -> DISCONNECTING -> CLOSED
                 |            |
                 v            v
               IDLE        FAULTED -> DISCONNECTING -> CLOSED

A failed spawn rolls CONNECTING back to IDLE; a disconnect() that lands
while the process is still starting stops it and connect() raises
SessionClosedError. Transport failures, and a run of undecodable frames,
move CONNECTED to FAULTED. disconnect() is valid from every state and
idempotent.

Usage:
    async with Session(SessionOptions(model="sonnet")) as session:
        await session.send("List the files in this repo")
        async for message in session.receive_response():
            print(message)
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..errors import (
    AgentWireError,
    ControlError,
    ControlTimeoutError,
    InvalidCheckpointError,
    NotConnectedError,
    ProcessError,
    ProtocolError,
    RewindTimeoutError,
    SessionClosedError,
    SessionStateError,
    StreamClosedError,
    TransportError,
)
from ..events import (
    Command,
    ControlRequest,
    ControlResponse,
    InterruptCommand,
    Message,
    ResultMessage,
    RewindCommand,
    SetModelCommand,
    SetPermissionModeCommand,
    SystemMessage,
    UserCommand,
    UserMessage,
    decode_message,
    encode_command,
)
from .checkpoints import Checkpoint, CheckpointTracker
from .config import SessionConfig
from .discovery import build_command, find_cli
from .hooks import HookDispatcher, HookEvent, HookHandler, HookRegistration
from .options import PermissionMode, SessionOptions
from .transport import ProcessTransport

logger = logging.getLogger(__name__)

# Marks the end of the message stream in the consumer queue
_END = object()

_ControlCommand = Union[RewindCommand, InterruptCommand, SetModelCommand, SetPermissionModeCommand]


def new_message_id() -> str:
    """Generate a message identifier: ``msg_`` plus 32 hex characters."""
    return f"msg_{uuid.uuid4().hex}"


class SessionState(str, Enum):
    """Lifecycle states of a Session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    CLOSED = "closed"
    FAULTED = "faulted"


@dataclass
class SessionStatus:
    """Snapshot of a session and its agent process."""

    state: SessionState
    running: bool
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    results_seen: int = 0
    fault: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "results_seen": self.results_seen,
            "fault": self.fault,
        }


class Session:
    """Client for one long-lived agent process.

    Args:
        options: How to launch the agent process.
        config: Runtime tunables (timeouts, limits).
        hooks: Hook dispatcher. A new one is created when None.
        transport: Transport to use instead of a ProcessTransport. It must
            provide start/stop/wait/write_line/read_line.
    """

    def __init__(
        self,
        options: Optional[SessionOptions] = None,
        config: Optional[SessionConfig] = None,
        hooks: Optional[HookDispatcher] = None,
        transport: Optional[Any] = None,
    ):
        self._options = options or SessionOptions()
        self._config = config or SessionConfig()
        self._hooks = hooks or HookDispatcher(default_timeout=self._config.hook_timeout)
        self._checkpoints = CheckpointTracker()
        self._transport_override = transport
        self._transport: Optional[Any] = None

        self._state = SessionState.IDLE
        self._fault: Optional[AgentWireError] = None
        self._server_info: Optional[Dict[str, Any]] = None
        self._last_pid: Optional[int] = None
        self._exit_code: Optional[int] = None

        self._read_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._disconnect_lock = asyncio.Lock()

        # Consumer-visible message stream
        self._messages: asyncio.Queue = asyncio.Queue(maxsize=self._config.message_buffer_size)
        self._stream_ended = False
        self._consumer_waiting = False

        # Control requests awaiting an acknowledgement, keyed by request_id
        self._pending: Dict[str, asyncio.Future] = {}
        self._request_counter = 0

        # Turn completion tracking
        self._results_seen = 0
        self._result_waiters: List[Tuple[int, asyncio.Future]] = []

    # ==================== Properties ====================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    @property
    def fault(self) -> Optional[AgentWireError]:
        """The error that moved the session to FAULTED, if any."""
        return self._fault

    @property
    def server_info(self) -> Optional[Dict[str, Any]]:
        """Payload of the agent's system init message."""
        return self._server_info

    @property
    def hooks(self) -> HookDispatcher:
        return self._hooks

    @property
    def checkpoints(self) -> CheckpointTracker:
        return self._checkpoints

    @property
    def options(self) -> SessionOptions:
        return self._options

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def results_seen(self) -> int:
        """Number of Result messages received so far."""
        return self._results_seen

    @property
    def stderr_tail(self) -> str:
        if self._transport is None:
            return ""
        return getattr(self._transport, "stderr_tail", "")

    def status(self) -> SessionStatus:
        """Report the session state and whether the agent process is alive."""
        transport = self._transport
        if transport is None:
            return SessionStatus(
                state=self._state,
                running=False,
                pid=self._last_pid,
                exit_code=self._exit_code,
                results_seen=self._results_seen,
                fault=str(self._fault) if self._fault else None,
            )
        return SessionStatus(
            state=self._state,
            running=getattr(transport, "is_running", self._state == SessionState.CONNECTED),
            pid=getattr(transport, "pid", None),
            exit_code=getattr(transport, "returncode", None),
            results_seen=self._results_seen,
            fault=str(self._fault) if self._fault else None,
        )

    def register_hook(
        self,
        event: Union[HookEvent, str],
        tool_filter: Optional[str],
        handler: HookHandler,
        timeout: Optional[float] = None,
    ) -> HookRegistration:
        """Shortcut for ``session.hooks.register(...)``."""
        return self._hooks.register(event, tool_filter, handler, timeout)

    # ==================== Lifecycle ====================

    async def connect(self) -> None:
        """Start the agent process and the read loop.

        Raises:
            SessionStateError: If the session is not IDLE.
            SpawnError: If the process cannot be started. The session is
                back in IDLE and connect() may be retried.
            SessionClosedError: If disconnect() was called before the
                process finished starting. The process is stopped.
            ValueError: If the options are invalid.
        """
        if self._state != SessionState.IDLE:
            raise SessionStateError(f"Cannot connect a session in state {self._state.value}")

        self._state = SessionState.CONNECTING
        try:
            self._options.validate()
            cli_path = find_cli(self._options.cli_path)
            argv = build_command(cli_path, self._options)
            transport = self._transport_override or ProcessTransport(
                max_line_bytes=self._config.max_line_bytes,
                stop_grace_period=self._config.stop_grace_period,
                stderr_callback=self._options.stderr_callback,
                stderr_tail_lines=self._config.stderr_tail_lines,
            )
            await transport.start(
                argv[0],
                argv[1:],
                env=self._options.build_env(),
                cwd=self._options.resolve_cwd(),
            )
        except BaseException:
            if self._state == SessionState.CONNECTING:
                self._state = SessionState.IDLE
            raise

        if self._state != SessionState.CONNECTING:
            # disconnect() ran while the process was starting
            logger.info("Session disconnected while connecting, stopping agent process")
            try:
                await transport.stop()
            except OSError as e:
                logger.warning(f"Error stopping agent process: {e}")
            raise SessionClosedError("Session disconnected while connecting")

        self._transport = transport
        self._state = SessionState.CONNECTED
        self._read_task = asyncio.create_task(self._read_loop(), name="agentwire-read-loop")
        logger.info(f"Session connected ({cli_path})")

    async def disconnect(self) -> None:
        """Tear the session down.

        Cancels the read loop, fails every pending control request with
        SessionClosedError, stops the process and ends the message stream.
        Calling it again is a no-op.
        """
        async with self._disconnect_lock:
            if self._state == SessionState.CLOSED:
                return

            logger.info(f"Disconnecting session (state={self._state.value})")
            self._state = SessionState.DISCONNECTING

            read_task, self._read_task = self._read_task, None
            if read_task is not None and read_task is not asyncio.current_task():
                read_task.cancel()
                await asyncio.gather(read_task, return_exceptions=True)

            closed = SessionClosedError("Session disconnected")
            self._fail_pending(closed)
            self._fail_result_waiters(closed)

            transport, self._transport = self._transport, None
            if transport is not None:
                self._last_pid = getattr(transport, "pid", None)
                try:
                    self._exit_code = await transport.stop()
                except OSError as e:
                    logger.warning(f"Error stopping agent process: {e}")

            self._end_stream()
            self._state = SessionState.CLOSED
            logger.info("Session closed")

    async def __aenter__(self) -> "Session":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # ==================== Sending ====================

    async def send(
        self,
        content: Union[str, List[Dict[str, Any]]],
        session_id: str = "default",
        message_id: Optional[str] = None,
        parent_tool_use_id: Optional[str] = None,
    ) -> str:
        """Write a user turn to the agent.

        Returns once the frame is written; responses arrive through
        receive_messages(). Turns are not serialized here; the agent
        queues them, and QueueManager exists for callers that want one
        turn in flight at a time.

        Returns:
            The message identifier (generated when not supplied).

        Raises:
            NotConnectedError: If the session is not CONNECTED.
            PipeClosedError: If the agent closed its input. The session
                moves to FAULTED.
        """
        self._require_connected()
        message_id = message_id or new_message_id()
        command = UserCommand(
            content=content,
            session_id=session_id,
            parent_tool_use_id=parent_tool_use_id,
            message_id=message_id,
        )
        # Noted before the write; the echo can race the end of drain()
        self._checkpoints.note_dispatched(message_id)
        try:
            await self._write(command)
        except BaseException:
            self._checkpoints.forget_dispatched(message_id)
            raise
        logger.debug(f"Sent user message {message_id} (session_id={session_id})")
        return message_id

    async def send_stream(
        self,
        contents: Union[AsyncIterable[Any], Iterable[Any]],
        session_id: str = "default",
    ) -> List[str]:
        """Send every item of an iterable as its own user turn, in order.

        Accepts a plain or an async iterable, so turns can be produced
        while earlier ones are already being answered. Stops at the first
        failed write.

        Returns:
            The message identifiers, in sending order.
        """
        message_ids: List[str] = []
        if hasattr(contents, "__aiter__"):
            async for content in contents:
                message_ids.append(await self.send(content, session_id=session_id))
        else:
            for content in contents:
                message_ids.append(await self.send(content, session_id=session_id))
        return message_ids

    async def _write(self, command: Command) -> None:
        frame = encode_command(command)
        async with self._write_lock:
            transport = self._transport
            if transport is None or self._state != SessionState.CONNECTED:
                raise NotConnectedError(f"Session is {self._state.value}")
            try:
                await transport.write_line(frame)
            except TransportError as e:
                self._enter_fault(e)
                raise

    # ==================== Receiving ====================

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Yield decoded messages in the order the agent emitted them.

        The stream has a single consumer: two tasks iterating at the same
        time would split messages between them, so a second concurrent
        waiter raises SessionStateError. The stream ends when the session
        leaves CONNECTED. After a fault, buffered messages are delivered
        first and then the fault error is raised.
        """
        if self._state in (SessionState.IDLE, SessionState.CONNECTING):
            raise NotConnectedError(f"Session is {self._state.value}")

        while True:
            if self._stream_ended and self._messages.empty():
                break
            if self._consumer_waiting:
                raise SessionStateError("receive_messages() already has a waiting consumer")
            self._consumer_waiting = True
            try:
                item = await self._messages.get()
            finally:
                self._consumer_waiting = False
            if item is _END:
                break
            yield item

        if self._state == SessionState.FAULTED and self._fault is not None:
            raise self._fault

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next Result."""
        messages = self.receive_messages()
        try:
            async for message in messages:
                yield message
                if isinstance(message, ResultMessage):
                    return
        finally:
            await messages.aclose()

    async def wait_for_results(self, count: int, timeout: Optional[float] = None) -> int:
        """Wait until at least ``count`` Result messages have arrived.

        Returns:
            The number of results seen.

        Raises:
            asyncio.TimeoutError: If timeout elapses first.
            SessionClosedError: If the session is disconnected meanwhile.
            TransportError: The fault error, if the session faults.
        """
        if self._results_seen >= count:
            return self._results_seen
        self._require_live()

        waiter = asyncio.get_running_loop().create_future()
        entry = (count, waiter)
        self._result_waiters.append(entry)
        try:
            await asyncio.wait_for(waiter, timeout)
        finally:
            if entry in self._result_waiters:
                self._result_waiters.remove(entry)
        return self._results_seen

    # ==================== Control commands ====================

    async def rewind(self, checkpoint_id: str, timeout: Optional[float] = None) -> Checkpoint:
        """Ask the agent to revert file changes made after a checkpoint.

        Args:
            checkpoint_id: Identifier from a user message this session saw.
            timeout: Seconds to wait for the acknowledgement.

        Returns:
            The checkpoint that was rewound to.

        Raises:
            InvalidCheckpointError: If this session never saw the id.
            RewindTimeoutError: If no acknowledgement arrives in time.
            ControlError: If the agent rejects the rewind.
        """
        self._require_connected()
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise InvalidCheckpointError(checkpoint_id)

        wait = timeout if timeout is not None else self._config.rewind_timeout
        response = await self._control(
            RewindCommand(checkpoint_id=checkpoint_id, request_id=self._next_request_id()),
            wait,
            lambda: RewindTimeoutError(checkpoint_id, wait),
        )
        if response.success is False:
            raise ControlError(f"Rewind to {checkpoint_id} failed: {response.error or 'unknown error'}")
        logger.info(f"Rewound to checkpoint {checkpoint_id}")
        return checkpoint

    async def interrupt(self, timeout: Optional[float] = None) -> None:
        """Ask the agent to stop the turn in progress.

        Raises:
            ControlTimeoutError: If no acknowledgement arrives in time.
            ControlError: If the agent rejects the interrupt.
        """
        self._require_connected()
        await self._acknowledged(
            InterruptCommand(request_id=self._next_request_id()),
            "interrupt",
            timeout if timeout is not None else self._config.interrupt_timeout,
        )

    async def set_model(self, model: Optional[str], timeout: Optional[float] = None) -> None:
        """Switch the model for the following turns.

        Args:
            model: Model name, or None for the agent's default model.
            timeout: Seconds to wait for the acknowledgement.

        Raises:
            ControlTimeoutError: If no acknowledgement arrives in time.
            ControlError: If the agent rejects the model.
        """
        self._require_connected()
        await self._acknowledged(
            SetModelCommand(model=model, request_id=self._next_request_id()),
            "set_model",
            timeout if timeout is not None else self._config.control_timeout,
        )
        logger.info(f"Model set to {model or 'default'}")

    async def set_permission_mode(
        self,
        mode: Union[PermissionMode, str],
        timeout: Optional[float] = None,
    ) -> None:
        """Change how tool permissions are granted for the rest of the session.

        Raises:
            ValueError: If mode is not a known permission mode.
            ControlTimeoutError: If no acknowledgement arrives in time.
            ControlError: If the agent rejects the mode.
        """
        mode = PermissionMode(mode).value
        self._require_connected()
        await self._acknowledged(
            SetPermissionModeCommand(mode=mode, request_id=self._next_request_id()),
            "set_permission_mode",
            timeout if timeout is not None else self._config.control_timeout,
        )
        logger.info(f"Permission mode set to {mode}")

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"req_{self._request_counter}_{secrets.token_hex(4)}"

    async def _acknowledged(self, command: _ControlCommand, name: str, wait: float) -> None:
        response = await self._control(command, wait, lambda: ControlTimeoutError(name, wait))
        if response.success is False:
            raise ControlError(f"{name} failed: {response.error or 'unknown error'}")

    async def _control(
        self,
        command: _ControlCommand,
        timeout: float,
        timeout_error: Callable[[], ControlTimeoutError],
    ) -> ControlResponse:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[command.request_id] = future
        try:
            await self._write(command)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise timeout_error() from None
        finally:
            self._pending.pop(command.request_id, None)
            if not future.done():
                future.cancel()
            elif not future.cancelled():
                # A failed write also fails the future; the caller already has that error
                future.exception()

    # ==================== Read loop ====================

    async def _read_loop(self) -> None:
        try:
            await self._pump()
        except asyncio.CancelledError:
            raise
        except AgentWireError as e:
            self._enter_fault(e)
        except Exception as e:
            logger.exception("Unexpected error in read loop")
            error = TransportError(f"Read loop failed: {e}")
            error.__cause__ = e
            self._enter_fault(error)

    async def _pump(self) -> None:
        consecutive_errors = 0
        while True:
            try:
                line = await self._transport.read_line()
            except ProtocolError as e:
                consecutive_errors = self._count_decode_error(e, consecutive_errors)
                continue

            if line is None:
                await self._handle_eof()
                return
            if not line.strip():
                continue

            try:
                message = decode_message(line)
            except ProtocolError as e:
                consecutive_errors = self._count_decode_error(e, consecutive_errors)
                continue

            consecutive_errors = 0
            await self._route(message)

    def _count_decode_error(self, error: ProtocolError, consecutive: int) -> int:
        consecutive += 1
        logger.warning(f"Skipping undecodable frame ({consecutive} in a row): {error}")
        if consecutive >= self._config.max_decode_errors:
            raise ProtocolError(
                f"{consecutive} consecutive undecodable frames, stream is desynchronized",
                error.line,
            )
        return consecutive

    async def _handle_eof(self) -> None:
        if self._state != SessionState.CONNECTED:
            return
        exit_code = await self._transport.wait(timeout=1.0)
        if exit_code:
            raise ProcessError("Agent process exited", exit_code, self.stderr_tail)
        raise StreamClosedError("Agent closed its output stream")

    async def _route(self, message: Message) -> None:
        if isinstance(message, ControlRequest):
            response = await self._hooks.dispatch(message)
            await self._write(response)
            return

        if isinstance(message, ControlResponse):
            future = self._pending.get(message.request_id)
            if future is None:
                logger.warning(f"Acknowledgement for unknown request_id {message.request_id}, dropped")
            elif not future.done():
                future.set_result(message)
            return

        if isinstance(message, UserMessage):
            self._checkpoints.record(message)
        elif isinstance(message, SystemMessage):
            if message.subtype == "init" and self._server_info is None:
                self._server_info = message.data

        await self._messages.put(message)

        if isinstance(message, ResultMessage):
            self._results_seen += 1
            for count, waiter in list(self._result_waiters):
                if count <= self._results_seen and not waiter.done():
                    waiter.set_result(self._results_seen)

    # ==================== Teardown helpers ====================

    def _require_connected(self) -> None:
        if self._state == SessionState.CONNECTED:
            return
        if self._state == SessionState.FAULTED and self._fault is not None:
            raise NotConnectedError(f"Session faulted: {self._fault}") from self._fault
        raise NotConnectedError(f"Session is {self._state.value}")

    def _require_live(self) -> None:
        if self._state == SessionState.FAULTED and self._fault is not None:
            raise self._fault
        if self._state in (SessionState.DISCONNECTING, SessionState.CLOSED):
            raise SessionClosedError("Session disconnected")
        if self._state != SessionState.CONNECTED:
            raise NotConnectedError(f"Session is {self._state.value}")

    def _enter_fault(self, error: AgentWireError) -> None:
        if self._state != SessionState.CONNECTED:
            return
        logger.error(f"Session faulted: {error}")
        self._fault = error
        self._state = SessionState.FAULTED
        self._fail_pending(error)
        self._fail_result_waiters(error)
        self._end_stream()

    def _fail_pending(self, error: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _fail_result_waiters(self, error: BaseException) -> None:
        waiters, self._result_waiters = self._result_waiters, []
        for _, waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

    def _end_stream(self) -> None:
        if self._stream_ended:
            return
        self._stream_ended = True
        try:
            self._messages.put_nowait(_END)
        except asyncio.QueueFull:
            # Consumer will see the end once it drains the buffer
            pass


__all__ = ["Session", "SessionState", "SessionStatus", "new_message_id"]
