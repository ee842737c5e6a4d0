"""Tests for the one-shot query() helper."""

import asyncio
import logging

import pytest

from agentwire import query
from agentwire.client.hooks import HookDispatcher, HookEvent, HookOutput
from agentwire.errors import CLINotFoundError
from agentwire.events import AssistantMessage, ResultMessage


async def _run(prompt, options, **kwargs):
    return [message async for message in query(prompt, options, **kwargs)]


class TestQuery:
    """query() against the fake agent process."""

    @pytest.mark.asyncio
    async def test_single_turn(self, agent_options):
        messages = await asyncio.wait_for(_run("hi", agent_options), 10)
        assert isinstance(messages[-1], ResultMessage)
        assert messages[-1].result == "echo: hi"

    @pytest.mark.asyncio
    async def test_hooks_are_applied(self, agent_options):
        hooks = HookDispatcher()
        hooks.register(HookEvent.PRE_TOOL_USE, "Bash", lambda i: HookOutput.block("read-only"))
        messages = await asyncio.wait_for(_run("tool:Bash:make", agent_options, hooks=hooks), 10)
        assistant = [m for m in messages if isinstance(m, AssistantMessage)]
        assert assistant[-1].text == "Tool Bash blocked: read-only"

    @pytest.mark.asyncio
    async def test_early_exit_still_disconnects(self, agent_options):
        stream = query("hi", agent_options)
        first = await asyncio.wait_for(stream.__anext__(), 10)
        assert first is not None
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_missing_cli(self, agent_options, tmp_path):
        agent_options.cli_path = str(tmp_path / "missing")
        with pytest.raises(CLINotFoundError):
            await _run("hi", agent_options)

    @pytest.mark.asyncio
    async def test_lifecycle_is_logged(self, agent_options, caplog):
        caplog.set_level(logging.DEBUG, logger="agentwire.query")
        await asyncio.wait_for(_run("hi", agent_options), 10)
        assert "One-shot query sent as msg_" in caplog.text
        assert "One-shot query finished after" in caplog.text
