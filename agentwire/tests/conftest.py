"""Shared fixtures for agentwire tests."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

from agentwire.client.config import SessionConfig
from agentwire.client.options import SessionOptions
from agentwire.errors import PipeClosedError

FAKE_AGENT = str(Path(__file__).parent / "fake_agent.py")


class FakeTransport:
    """In-memory stand-in for ProcessTransport.

    Frames written by the session are decoded into ``written``. Frames
    for the session to read are queued with feed(); None marks EOF.
    ``responder`` is called with each written frame and may feed replies.
    """

    def __init__(self, responder=None):
        self.written: List[Dict[str, Any]] = []
        self.raw_written: List[bytes] = []
        self.responder = responder
        self.start_error: Optional[Exception] = None
        self.broken = False
        self.started_with: Optional[Dict[str, Any]] = None
        self.stop_calls = 0
        self.exit_code: Optional[int] = None
        self.stderr_tail = ""
        self._lines: asyncio.Queue = asyncio.Queue()

    async def start(self, command, args=None, env=None, cwd=None):
        if self.start_error is not None:
            raise self.start_error
        self.started_with = {"command": command, "args": args, "env": env, "cwd": cwd}

    async def write_line(self, data: bytes) -> None:
        if self.broken:
            raise PipeClosedError("Agent closed its input")
        self.raw_written.append(data)
        frame = json.loads(data)
        self.written.append(frame)
        if self.responder is not None:
            self.responder(self, frame)

    async def read_line(self) -> Optional[bytes]:
        return await self._lines.get()

    async def stop(self) -> Optional[int]:
        self.stop_calls += 1
        return self.exit_code

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return self.exit_code

    def feed(self, frame: Union[Dict[str, Any], str, bytes, None]) -> None:
        if frame is None:
            self._lines.put_nowait(None)
        elif isinstance(frame, dict):
            self._lines.put_nowait(json.dumps(frame).encode())
        elif isinstance(frame, str):
            self._lines.put_nowait(frame.encode())
        else:
            self._lines.put_nowait(frame)

    def written_of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [f for f in self.written if f.get("type") == kind]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true; fail the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def echo_responder(transport: FakeTransport, frame: Dict[str, Any]) -> None:
    """Behave like a minimal agent: echo user turns and acknowledge controls."""
    kind = frame.get("type")
    if kind == "user":
        message_id = frame.get("client_message_id") or "anon"
        transport.feed({
            "type": "user",
            "uuid": f"chk_{message_id}",
            "client_message_id": frame.get("client_message_id"),
            "session_id": frame.get("session_id"),
            "message": frame["message"],
        })
        transport.feed({
            "type": "assistant",
            "message": {"model": "fake", "content": [{"type": "text", "text": "ok"}]},
        })
        transport.feed({"type": "result", "subtype": "success", "is_error": False, "num_turns": 1})
    elif kind in ("rewind", "interrupt", "set_model", "set_permission_mode"):
        transport.feed({"type": "control_response", "request_id": frame["request_id"], "success": True})


@pytest.fixture
def fast_config():
    """Session config with short timeouts so failures surface quickly."""
    return SessionConfig(
        hook_timeout=1.0,
        control_timeout=2.0,
        rewind_timeout=2.0,
        interrupt_timeout=2.0,
        stop_grace_period=2.0,
        max_decode_errors=3,
    )


@pytest.fixture
def transport():
    """A FakeTransport that echoes user turns and acknowledges controls."""
    return FakeTransport(responder=echo_responder)


@pytest.fixture
def fake_options(tmp_path):
    """Options for a session driven by an in-memory transport."""
    return SessionOptions(cli_path=sys.executable, cwd=str(tmp_path))


@pytest.fixture
def agent_options(tmp_path):
    """Options that launch the scripted fake agent as a real subprocess."""
    return SessionOptions(
        cli_path=sys.executable,
        launcher_args=[FAKE_AGENT],
        cwd=str(tmp_path),
        model="test-model",
    )
