"""Subprocess transport for the agent process.

Owns the process and its three standard streams:

- stdin: outbound frames, one per line
- stdout: inbound frames, one per line
- stderr: diagnostic output, drained continuously by a background task so
  a chatty agent can never block on a full pipe

The transport knows nothing about message types. Framing is a single
newline per frame; decoding belongs to the codec and ordering of writes to
the session's writer lock.
"""

import asyncio
import logging
import os
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from ..errors import (
    CLINotFoundError,
    PipeClosedError,
    ProtocolError,
    SpawnError,
)
from ..trace import trace
from .config import DEFAULT_MAX_LINE_BYTES

logger = logging.getLogger(__name__)

LINE_TERMINATOR = b"\n"


class ProcessTransport:
    """Line-framed byte channel to a child process.

    Args:
        max_line_bytes: Longest frame read from stdout. Longer frames are
            discarded and reported as ProtocolError.
        stop_grace_period: Seconds stop() waits after closing stdin, and
            again after SIGTERM, before escalating.
        stderr_callback: Called with each decoded stderr line.
        stderr_tail_lines: Number of recent stderr lines kept for error
            reports.
    """

    def __init__(
        self,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        stop_grace_period: float = 5.0,
        stderr_callback: Optional[Callable[[str], None]] = None,
        stderr_tail_lines: int = 100,
    ):
        self._max_line_bytes = max_line_bytes
        self._stop_grace_period = stop_grace_period
        self._stderr_callback = stderr_callback
        self._stderr_tail: Deque[str] = deque(maxlen=max(stderr_tail_lines, 1))

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stdin_closed = False

    # ==================== Properties ====================

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def stderr_tail(self) -> str:
        """Most recent stderr lines, newline-joined."""
        return "\n".join(self._stderr_tail)

    # ==================== Lifecycle ====================

    async def start(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> None:
        """Spawn the process and return once its streams are ready.

        Args:
            command: Executable path.
            args: Arguments after the executable.
            env: Variables added to the parent environment.
            cwd: Working directory. Must exist and be a directory.

        Raises:
            CLINotFoundError: If the executable does not exist.
            SpawnError: If the process cannot be launched.
        """
        if self._process is not None:
            raise SpawnError("Transport already started")

        if cwd is not None:
            if not os.path.exists(cwd):
                raise SpawnError(f"Working directory does not exist: {cwd}")
            if not os.path.isdir(cwd):
                raise SpawnError(f"Working directory is not a directory: {cwd}")

        full_env = dict(os.environ)
        if env:
            full_env.update(env)

        argv = [command, *(args or [])]
        logger.debug(f"Spawning agent: {' '.join(argv[:5])}... cwd={cwd}")
        trace("transport", f"spawn {argv}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=cwd,
                limit=self._max_line_bytes,
            )
        except FileNotFoundError as e:
            raise CLINotFoundError("Agent executable not found", command) from e
        except PermissionError as e:
            raise SpawnError(f"Permission denied launching {command}: {e}") from e
        except OSError as e:
            raise SpawnError(f"Failed to launch {command}: {e}") from e

        self._stdin_closed = False
        self._stderr_task = asyncio.create_task(
            self._drain_stderr(), name=f"agentwire-stderr-{self._process.pid}"
        )
        logger.debug(f"Agent process started (pid={self._process.pid})")

    async def stop(self) -> Optional[int]:
        """Terminate the process and reclaim its exit status.

        Closes stdin and waits for a voluntary exit, then sends SIGTERM,
        then SIGKILL, waiting stop_grace_period between steps. Safe to call
        more than once.

        Returns:
            The process exit code, or None if it was never started.
        """
        process = self._process
        if process is None:
            return None

        self._close_stdin()

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), self._stop_grace_period)
            except asyncio.TimeoutError:
                logger.debug(f"Agent did not exit after stdin closed, terminating (pid={process.pid})")
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), self._stop_grace_period)
                except asyncio.TimeoutError:
                    logger.warning(f"Agent ignored SIGTERM, killing (pid={process.pid})")
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        stderr_task, self._stderr_task = self._stderr_task, None
        if stderr_task is not None:
            # stderr hits EOF once the process is gone; give it a moment to flush
            try:
                await asyncio.wait_for(stderr_task, 1.0)
            except asyncio.TimeoutError:
                logger.debug("stderr drain did not finish, cancelled")

        logger.debug(f"Agent process stopped (pid={process.pid}, exit={process.returncode})")
        return process.returncode

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the process to exit.

        Returns:
            The exit code, or None if it is still running after timeout.
        """
        if self._process is None:
            return None
        try:
            return await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            return None

    def _close_stdin(self) -> None:
        if self._stdin_closed or self._process is None or self._process.stdin is None:
            return
        self._stdin_closed = True
        try:
            self._process.stdin.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Error closing agent stdin: {e}")

    # ==================== I/O ====================

    async def write_line(self, data: bytes) -> None:
        """Write one frame followed by the line terminator.

        Waits for the pipe to drain, so a slow reader applies back-pressure.

        Raises:
            ValueError: If the frame contains a line terminator.
            PipeClosedError: If the process has closed its input.
        """
        if LINE_TERMINATOR in data:
            raise ValueError("Frame must not contain a line terminator")
        process = self._process
        if process is None or process.stdin is None or self._stdin_closed:
            raise PipeClosedError("Agent stdin is not open")
        if process.stdin.is_closing():
            raise PipeClosedError("Agent closed its input")

        trace("transport", f"-> {data[:2000].decode('utf-8', 'replace')}")
        try:
            process.stdin.write(data + LINE_TERMINATOR)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise PipeClosedError("Agent closed its input") from e

    async def read_line(self) -> Optional[bytes]:
        """Read the next frame from stdout.

        Cancelling the awaiting task abandons the read cleanly; the stream
        stays usable.

        Returns:
            The frame without its terminator, or None at end of stream.

        Raises:
            ProtocolError: If the frame exceeds max_line_bytes. The
                oversized frame is discarded and the next read continues
                after it.
        """
        process = self._process
        if process is None or process.stdout is None:
            return None
        try:
            line = await process.stdout.readline()
        except ValueError as e:
            # StreamReader drops the oversized data before raising
            raise ProtocolError(
                f"Frame exceeds {self._max_line_bytes} bytes"
            ) from e
        if not line:
            trace("transport", "<- EOF")
            return None
        line = line.rstrip(b"\r\n")
        trace("transport", f"<- {line[:2000].decode('utf-8', 'replace')}")
        return line

    async def _drain_stderr(self) -> None:
        """Consume stderr until EOF so the process can never block on it."""
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                # Overlong stderr line; its data was already dropped
                continue
            if not raw:
                return
            line = raw.decode("utf-8", "replace").rstrip("\r\n")
            self._stderr_tail.append(line)
            trace("stderr", line)
            if self._stderr_callback is not None:
                try:
                    self._stderr_callback(line)
                except Exception as e:
                    logger.warning(f"stderr callback failed: {e}")


__all__ = ["LINE_TERMINATOR", "ProcessTransport"]
