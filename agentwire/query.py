"""One-shot queries.

For a single prompt with no follow-up, query() hides the session
lifecycle: it connects, sends the prompt, yields every message up to and
including the Result, and always disconnects.

Usage:
    from agentwire import query

    async for message in query("What is 2 + 2?"):
        print(message)
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .client.config import SessionConfig
from .client.hooks import HookDispatcher
from .client.options import SessionOptions
from .client.session import Session
from .events import Message

logger = logging.getLogger(__name__)


async def query(
    prompt: Union[str, List[Dict[str, Any]]],
    options: Optional[SessionOptions] = None,
    config: Optional[SessionConfig] = None,
    hooks: Optional[HookDispatcher] = None,
) -> AsyncIterator[Message]:
    """Run one prompt in a fresh session.

    Args:
        prompt: Text, or a list of content block dicts.
        options: Launch options for the agent process.
        config: Runtime tunables.
        hooks: Hooks evaluated during the turn.

    Yields:
        Every message of the turn, ending with the Result.
    """
    session = Session(options, config=config, hooks=hooks)
    await session.connect()
    try:
        message_id = await session.send(prompt)
        logger.debug(f"One-shot query sent as {message_id}")
        count = 0
        async for message in session.receive_response():
            count += 1
            yield message
        logger.debug(f"One-shot query finished after {count} message(s)")
    finally:
        await session.disconnect()
