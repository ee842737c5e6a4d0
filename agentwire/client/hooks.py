"""Hook dispatch for remote callback requests.

The agent process asks the client to evaluate hooks at lifecycle events
(before a tool runs, after it runs, when a prompt is submitted, ...). Each
request arrives as a ControlRequest on the read loop; the dispatcher runs
the matching handlers and produces the ControlResponse that goes back
with the same request_id.

Evaluation rules:
- Registrations match on event kind, and on tool name when a filter is
  set (exact match; an empty filter matches every tool).
- Matching handlers run one at a time in registration order.
- The first handler that returns a "block" decision stops evaluation.
- Additional context from handlers is accumulated and attached to the
  response for events that accept it.

Failure policy is fail-open: a handler that raises or exceeds its timeout
is logged and treated as "allow". Blocking only ever happens because a
handler explicitly asked for it. Changing this to fail-closed would change
which tool calls the agent is allowed to make, so it is deliberately not
configurable.

Example:
    dispatcher = HookDispatcher()

    def no_rm(hook_input):
        if "rm -rf" in hook_input.tool_input.get("command", ""):
            return HookOutput.block("destructive command")
        return None

    dispatcher.register(HookEvent.PRE_TOOL_USE, "Bash", no_rm)
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..errors import HookError, HookHandlerError, HookTimeoutError
from ..events import ControlRequest, ControlResponse

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Lifecycle events the agent can ask hooks about."""

    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    PRE_COMPACT = "PreCompact"
    NOTIFICATION = "Notification"


class HookDecision(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


# Events whose response may carry additional context for the model
CONTEXT_EVENTS = frozenset({
    HookEvent.PRE_TOOL_USE.value,
    HookEvent.POST_TOOL_USE.value,
    HookEvent.USER_PROMPT_SUBMIT.value,
})


@dataclass
class HookInput:
    """What a handler sees about the event being evaluated."""

    event: str
    tool_name: str = ""
    tool_input: Dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None
    request_id: str = ""

    @classmethod
    def from_request(cls, request: ControlRequest) -> "HookInput":
        tool_input = request.input.get("tool_input")
        return cls(
            event=request.hook_event,
            tool_name=request.tool_name,
            tool_input=tool_input if isinstance(tool_input, dict) else dict(request.input),
            tool_use_id=request.tool_use_id,
            request_id=request.request_id,
        )


@dataclass
class HookOutput:
    """A handler's verdict.

    Attributes:
        decision: "allow", "block", or None for no opinion.
        reason: Explanation shown to the model when blocking.
        additional_context: Text injected into the model's context.
        hook_specific_output: Extra event-specific keys sent verbatim.
    """

    decision: Optional[HookDecision] = None
    reason: Optional[str] = None
    additional_context: Optional[str] = None
    hook_specific_output: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_block(self) -> bool:
        return self.decision == HookDecision.BLOCK

    @classmethod
    def allow(cls, additional_context: Optional[str] = None) -> "HookOutput":
        return cls(decision=HookDecision.ALLOW, additional_context=additional_context)

    @classmethod
    def block(cls, reason: str) -> "HookOutput":
        return cls(decision=HookDecision.BLOCK, reason=reason)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HookOutput":
        """Build from a handler's dict return value.

        Accepts ``decision``, ``reason``, ``additional_context`` (or
        ``additionalContext``) and ``hook_specific_output``.
        """
        decision = data.get("decision")
        if decision is not None:
            try:
                decision = HookDecision(decision)
            except ValueError as e:
                raise HookHandlerError(f"Invalid hook decision: {decision!r}") from e
        hook_specific = data.get("hook_specific_output") or {}
        if not isinstance(hook_specific, dict):
            raise HookHandlerError("hook_specific_output must be a dict")
        return cls(
            decision=decision,
            reason=data.get("reason"),
            additional_context=data.get("additional_context", data.get("additionalContext")),
            hook_specific_output=dict(hook_specific),
        )


HookResult = Union[HookOutput, Dict[str, Any], None]
HookHandler = Callable[[HookInput], Union[HookResult, Awaitable[HookResult]]]


@dataclass
class HookRegistration:
    """One registered handler.

    Attributes:
        event: Event kind to match.
        tool_filter: Tool name to match exactly; empty matches all tools.
        handler: Sync or async callable taking a HookInput.
        timeout: Per-handler timeout override in seconds.
    """

    event: str
    tool_filter: str
    handler: HookHandler
    timeout: Optional[float] = None

    def matches(self, event: str, tool_name: str) -> bool:
        if self.event != event:
            return False
        return not self.tool_filter or self.tool_filter == tool_name


class HookDispatcher:
    """Evaluates registered hooks for incoming control requests.

    Args:
        default_timeout: Per-handler timeout in seconds when a registration
            does not set its own.
    """

    def __init__(self, default_timeout: float = 60.0):
        self._default_timeout = default_timeout
        self._registrations: List[HookRegistration] = []

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    @default_timeout.setter
    def default_timeout(self, value: float) -> None:
        if value <= 0:
            raise ValueError("default_timeout must be positive")
        self._default_timeout = value

    def register(
        self,
        event: Union[HookEvent, str],
        tool_filter: Optional[str],
        handler: HookHandler,
        timeout: Optional[float] = None,
    ) -> HookRegistration:
        """Add a handler for an event kind.

        Args:
            event: Event kind; a HookEvent or the raw event name.
            tool_filter: Tool name to match; None or "" matches all.
            handler: Sync or async callable taking a HookInput.
            timeout: Per-handler timeout override.

        Returns:
            The registration, usable with unregister().
        """
        if not callable(handler):
            raise TypeError("handler must be callable")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        registration = HookRegistration(
            event=event.value if isinstance(event, HookEvent) else str(event),
            tool_filter=tool_filter or "",
            handler=handler,
            timeout=timeout,
        )
        self._registrations.append(registration)
        logger.debug(
            f"Registered hook for {registration.event} "
            f"(tool={registration.tool_filter or '*'})"
        )
        return registration

    def unregister(self, registration: HookRegistration) -> bool:
        """Remove a registration. Returns False if it was not registered."""
        try:
            self._registrations.remove(registration)
            return True
        except ValueError:
            return False

    def registrations(self, event: Optional[Union[HookEvent, str]] = None) -> List[HookRegistration]:
        if event is None:
            return list(self._registrations)
        name = event.value if isinstance(event, HookEvent) else event
        return [r for r in self._registrations if r.event == name]

    def matching(self, event: str, tool_name: str) -> List[HookRegistration]:
        """Registrations that apply to an event, in registration order."""
        return [r for r in self._registrations if r.matches(event, tool_name)]

    async def dispatch(self, request: ControlRequest) -> ControlResponse:
        """Evaluate all matching hooks for a control request.

        Never raises for handler failures; those are logged and count as
        "allow". Task cancellation still propagates.

        Returns:
            The response to write back, with the request's request_id.
        """
        hook_input = HookInput.from_request(request)
        matched = self.matching(request.hook_event, request.tool_name)
        logger.debug(
            f"Dispatching {request.hook_event} for tool={request.tool_name or '-'} "
            f"to {len(matched)} handler(s) (request_id={request.request_id})"
        )

        contexts: List[str] = []
        extra: Dict[str, Any] = {}
        decision: Optional[HookDecision] = None
        reason: Optional[str] = None

        for registration in matched:
            try:
                output = await self._invoke(registration, hook_input)
            except HookError as e:
                logger.warning(f"Hook failed, allowing (fail-open): {e}")
                continue

            if output is None:
                continue
            if output.additional_context:
                contexts.append(output.additional_context)
            extra.update(output.hook_specific_output)

            if output.is_block:
                decision = HookDecision.BLOCK
                reason = output.reason
                logger.info(
                    f"Hook blocked {request.hook_event} for tool={request.tool_name or '-'}: {reason}"
                )
                break
            if output.decision == HookDecision.ALLOW:
                decision = HookDecision.ALLOW
                reason = output.reason or reason

        return ControlResponse(
            request_id=request.request_id,
            decision=decision.value if decision else None,
            reason=reason,
            hook_specific_output=self._attached_output(request.hook_event, contexts, extra),
        )

    def _attached_output(
        self, event: str, contexts: List[str], extra: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if not contexts and not extra:
            return None
        if event not in CONTEXT_EVENTS:
            logger.debug(f"Dropping hook output for {event}: event takes no attached context")
            return None
        output: Dict[str, Any] = {"hookEventName": event}
        output.update(extra)
        if contexts:
            output["additionalContext"] = "\n".join(contexts)
        return output

    async def _invoke(self, registration: HookRegistration, hook_input: HookInput) -> Optional[HookOutput]:
        """Run one handler under its timeout.

        Sync handlers run in the default executor so they cannot stall the
        event loop. A sync handler that overruns keeps its thread until it
        returns; only the wait is abandoned.

        Raises:
            HookTimeoutError: If the handler exceeds its timeout.
            HookHandlerError: If the handler raises or returns garbage.
        """
        timeout = registration.timeout or self._default_timeout
        handler = registration.handler

        if inspect.iscoroutinefunction(handler):
            awaitable = handler(hook_input)
        else:
            loop = asyncio.get_running_loop()
            awaitable = loop.run_in_executor(None, handler, hook_input)

        try:
            result = await asyncio.wait_for(awaitable, timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout)
        except asyncio.TimeoutError as e:
            raise HookTimeoutError(hook_input.event, timeout) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise HookHandlerError(
                f"Hook handler {getattr(handler, '__name__', handler)!r} raised: {e}"
            ) from e

        return self._coerce(result)

    @staticmethod
    def _coerce(result: Any) -> Optional[HookOutput]:
        if result is None or isinstance(result, HookOutput):
            return result
        if isinstance(result, dict):
            return HookOutput.from_dict(result)
        raise HookHandlerError(f"Hook handler returned {type(result).__name__}, expected HookOutput")


__all__ = [
    "CONTEXT_EVENTS",
    "HookDecision",
    "HookDispatcher",
    "HookEvent",
    "HookHandler",
    "HookInput",
    "HookOutput",
    "HookRegistration",
]
