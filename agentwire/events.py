"""Message codec for the agent control protocol.

The remote agent process speaks newline-delimited JSON over its standard
streams. Each inbound line is one message object with a ``type``
discriminator; each outbound command is encoded the same way.

Inbound (remote -> local):
    system, assistant, user, result, stream_event, control_request,
    control_response (acknowledgement of rewind/interrupt)

Outbound (local -> remote):
    user, control_response (hook decision), rewind, interrupt

Unknown discriminators decode to UnrecognizedMessage carrying the raw
payload, so a newer agent never breaks an older client. Unknown fields
are ignored and missing optional fields take their defaults.

Usage:
    from agentwire.events import decode_message, encode_command, UserCommand

    message = decode_message(line)
    frame = encode_command(UserCommand(content="hello"))
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ProtocolError


class MessageType(str, Enum):
    """Discriminators of the wire protocol."""

    SYSTEM = "system"
    """Session metadata (e.g. the init message)."""

    ASSISTANT = "assistant"
    """Model-generated turn content."""

    USER = "user"
    """User input or its echo; carries the checkpoint identifier."""

    RESULT = "result"
    """Terminal status of a turn."""

    STREAM_EVENT = "stream_event"
    """Incremental delta for partial-output consumers."""

    CONTROL_REQUEST = "control_request"
    """Remote-to-local callback invocation."""

    CONTROL_RESPONSE = "control_response"
    """Callback reply, or acknowledgement of a control command."""

    REWIND = "rewind"
    """Request to revert file changes back to a checkpoint."""

    INTERRUPT = "interrupt"
    """Request to stop the current turn."""

    SET_MODEL = "set_model"
    """Request to switch the model for subsequent turns."""

    SET_PERMISSION_MODE = "set_permission_mode"
    """Request to change how tool permissions are granted."""

    UNRECOGNIZED = "unrecognized"
    """Any discriminator this client does not know."""


class ContentBlockType(str, Enum):
    """Types of content blocks within assistant and user messages."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    UNRECOGNIZED = "unrecognized"


def _dict_or_empty(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


# ==================== Content Blocks ====================


@dataclass
class TextBlock:
    """Plain text content."""

    text: str

    @property
    def type(self) -> ContentBlockType:
        return ContentBlockType.TEXT

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextBlock":
        return cls(text=data.get("text") or "")


@dataclass
class ThinkingBlock:
    """Extended thinking content."""

    thinking: str
    signature: str = ""

    @property
    def type(self) -> ContentBlockType:
        return ContentBlockType.THINKING

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "thinking", "thinking": self.thinking, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThinkingBlock":
        return cls(
            thinking=data.get("thinking") or "",
            signature=data.get("signature") or "",
        )


@dataclass
class ToolUseBlock:
    """Tool invocation request."""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> ContentBlockType:
        return ContentBlockType.TOOL_USE

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolUseBlock":
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            input=_dict_or_empty(data.get("input")),
        )


@dataclass
class ToolResultBlock:
    """Result of a tool execution.

    ``content`` is either text or structured data (a list of blocks or an
    object), exactly as the remote sent it.
    """

    tool_use_id: str
    content: Any = None
    is_error: bool = False

    @property
    def type(self) -> ContentBlockType:
        return ContentBlockType.TOOL_RESULT

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            result["is_error"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResultBlock":
        return cls(
            tool_use_id=data.get("tool_use_id") or "",
            content=data.get("content"),
            is_error=bool(data.get("is_error", False)),
        )


@dataclass
class UnrecognizedBlock:
    """A content block of a type this client does not know."""

    raw: Dict[str, Any]

    @property
    def type(self) -> ContentBlockType:
        return ContentBlockType.UNRECOGNIZED

    @property
    def raw_type(self) -> str:
        return str(self.raw.get("type", ""))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, UnrecognizedBlock]

_BLOCK_CLASSES = {
    "text": TextBlock,
    "thinking": ThinkingBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}


def parse_content_block(data: Any) -> ContentBlock:
    """Parse a content block from its dict representation."""
    if not isinstance(data, dict):
        return UnrecognizedBlock(raw={"value": data})
    block_class = _BLOCK_CLASSES.get(data.get("type", ""))
    if block_class is None:
        return UnrecognizedBlock(raw=data)
    return block_class.from_dict(data)


def _parse_blocks(content: Any) -> List[ContentBlock]:
    if isinstance(content, list):
        return [parse_content_block(b) for b in content]
    if isinstance(content, str):
        return [TextBlock(text=content)]
    return []


# ==================== Messages ====================


@dataclass
class SystemMessage:
    """Session metadata. ``data`` keeps the full payload."""

    subtype: str
    session_id: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> MessageType:
        return MessageType.SYSTEM

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.data)
        result.update({"type": "system", "subtype": self.subtype})
        if self.session_id:
            result["session_id"] = self.session_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemMessage":
        return cls(
            subtype=data.get("subtype") or "",
            session_id=data.get("session_id") or "",
            data=data,
        )


@dataclass
class AssistantMessage:
    """Model-generated turn content."""

    content: List[ContentBlock]
    model: str = ""
    session_id: str = ""
    parent_tool_use_id: Optional[str] = None

    @property
    def type(self) -> MessageType:
        return MessageType.ASSISTANT

    @property
    def text(self) -> str:
        """Concatenate all text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "model": self.model,
                "content": [b.to_dict() for b in self.content],
            },
        }
        if self.session_id:
            result["session_id"] = self.session_id
        if self.parent_tool_use_id:
            result["parent_tool_use_id"] = self.parent_tool_use_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssistantMessage":
        # Handle both formats:
        # 1. Direct content: {"type":"assistant","content":[...]}
        # 2. Nested message: {"type":"assistant","message":{"content":[...]}}
        inner = _dict_or_empty(data.get("message"))
        content_data = data.get("content")
        if content_data is None:
            content_data = inner.get("content")
        return cls(
            content=_parse_blocks(content_data),
            model=data.get("model") or inner.get("model") or "",
            session_id=data.get("session_id") or "",
            parent_tool_use_id=_str_or_none(data.get("parent_tool_use_id")),
        )


@dataclass
class UserMessage:
    """User input, or the remote's echo of it.

    The remote stamps each user message it accepts with a ``uuid``; that
    value is the checkpoint identifier a later rewind can reference.
    """

    content: Union[str, List[ContentBlock]]
    checkpoint_id: Optional[str] = None
    session_id: str = ""
    parent_tool_use_id: Optional[str] = None
    client_message_id: Optional[str] = None

    @property
    def type(self) -> MessageType:
        return MessageType.USER

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def is_tool_result(self) -> bool:
        """True when this message only carries tool output back to the model."""
        if isinstance(self.content, str):
            return False
        return any(isinstance(b, ToolResultBlock) for b in self.content)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [b.to_dict() for b in self.content]
        result: Dict[str, Any] = {
            "type": "user",
            "message": {"role": "user", "content": content},
        }
        if self.checkpoint_id:
            result["uuid"] = self.checkpoint_id
        if self.session_id:
            result["session_id"] = self.session_id
        if self.parent_tool_use_id:
            result["parent_tool_use_id"] = self.parent_tool_use_id
        if self.client_message_id:
            result["client_message_id"] = self.client_message_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserMessage":
        inner = _dict_or_empty(data.get("message"))
        content_data = data.get("content")
        if content_data is None:
            content_data = inner.get("content")
        content: Union[str, List[ContentBlock]]
        if isinstance(content_data, str):
            content = content_data
        else:
            content = _parse_blocks(content_data)
        return cls(
            content=content,
            checkpoint_id=_str_or_none(data.get("uuid") or data.get("checkpoint_id")),
            session_id=data.get("session_id") or "",
            parent_tool_use_id=_str_or_none(data.get("parent_tool_use_id")),
            client_message_id=_str_or_none(data.get("client_message_id")),
        )


@dataclass
class Usage:
    """Token usage statistics."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Usage":
        def _int(key: str) -> int:
            value = data.get(key)
            return value if isinstance(value, int) else 0

        return cls(
            input_tokens=_int("input_tokens"),
            output_tokens=_int("output_tokens"),
            cache_read_input_tokens=_int("cache_read_input_tokens"),
            cache_creation_input_tokens=_int("cache_creation_input_tokens"),
        )


@dataclass
class ResultMessage:
    """Terminal status of a turn.

    ``is_error`` marks a remote-reported failure. It ends the turn, not the
    session.
    """

    subtype: str
    session_id: str = ""
    duration_ms: int = 0
    duration_api_ms: int = 0
    is_error: bool = False
    num_turns: int = 0
    total_cost_usd: Optional[float] = None
    usage: Optional[Usage] = None
    result: Optional[str] = None
    structured_output: Any = None

    @property
    def type(self) -> MessageType:
        return MessageType.RESULT

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": "result",
            "subtype": self.subtype,
            "session_id": self.session_id,
            "duration_ms": self.duration_ms,
            "duration_api_ms": self.duration_api_ms,
            "is_error": self.is_error,
            "num_turns": self.num_turns,
        }
        if self.total_cost_usd is not None:
            result["total_cost_usd"] = self.total_cost_usd
        if self.usage:
            result["usage"] = self.usage.to_dict()
        if self.result is not None:
            result["result"] = self.result
        if self.structured_output is not None:
            result["structured_output"] = self.structured_output
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultMessage":
        usage_data = data.get("usage")
        cost = data.get("total_cost_usd")
        return cls(
            subtype=data.get("subtype") or "",
            session_id=data.get("session_id") or "",
            duration_ms=data.get("duration_ms") or 0,
            duration_api_ms=data.get("duration_api_ms") or 0,
            is_error=bool(data.get("is_error", False)),
            num_turns=data.get("num_turns") or 0,
            total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
            usage=Usage.from_dict(usage_data) if isinstance(usage_data, dict) else None,
            result=_str_or_none(data.get("result")),
            structured_output=data.get("structured_output"),
        )


@dataclass
class StreamEvent:
    """Incremental output event (sent with --include-partial-messages)."""

    event: Dict[str, Any]
    session_id: str = ""
    uuid: str = ""
    parent_tool_use_id: Optional[str] = None

    @property
    def type(self) -> MessageType:
        return MessageType.STREAM_EVENT

    @property
    def event_type(self) -> str:
        """message_start, content_block_delta, etc."""
        return str(self.event.get("type", ""))

    @property
    def delta_text(self) -> Optional[str]:
        if self.event_type != "content_block_delta":
            return None
        delta = _dict_or_empty(self.event.get("delta"))
        if delta.get("type") != "text_delta":
            return None
        return delta.get("text", "")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": "stream_event", "event": self.event}
        if self.session_id:
            result["session_id"] = self.session_id
        if self.uuid:
            result["uuid"] = self.uuid
        if self.parent_tool_use_id:
            result["parent_tool_use_id"] = self.parent_tool_use_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamEvent":
        return cls(
            event=_dict_or_empty(data.get("event")),
            session_id=data.get("session_id") or "",
            uuid=data.get("uuid") or "",
            parent_tool_use_id=_str_or_none(data.get("parent_tool_use_id")),
        )


@dataclass
class ControlRequest:
    """A callback request from the remote, referencing a lifecycle event.

    ``request_id`` must be echoed unchanged in the ControlResponse.
    """

    request_id: str
    hook_event: str
    tool_name: str = ""
    input: Dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None

    @property
    def type(self) -> MessageType:
        return MessageType.CONTROL_REQUEST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "control_request",
            "request_id": self.request_id,
            "hook_event": self.hook_event,
            "tool_name": self.tool_name,
            "input": self.input,
            "tool_use_id": self.tool_use_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlRequest":
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolError("control_request without request_id", json.dumps(data))

        # Some agents nest the payload under "request"; flat fields win.
        nested = _dict_or_empty(data.get("request"))
        nested_input = _dict_or_empty(nested.get("input"))

        def _pick(key: str, *fallbacks: Any) -> Any:
            if data.get(key) is not None:
                return data[key]
            for value in fallbacks:
                if value is not None:
                    return value
            return None

        return cls(
            request_id=request_id,
            hook_event=str(_pick("hook_event", nested.get("hook_event"),
                                 nested_input.get("hook_event_name")) or ""),
            tool_name=str(_pick("tool_name", nested.get("tool_name"),
                                nested_input.get("tool_name")) or ""),
            input=_dict_or_empty(_pick("input", nested.get("input"))),
            tool_use_id=_str_or_none(_pick("tool_use_id", nested.get("tool_use_id"))),
        )


@dataclass
class ControlResponse:
    """Reply on the control channel.

    Outbound it carries a hook decision. Inbound it acknowledges a rewind
    or interrupt command, reporting ``success`` and an optional ``error``.
    """

    request_id: str
    decision: Optional[str] = None
    reason: Optional[str] = None
    hook_specific_output: Optional[Dict[str, Any]] = None
    success: Optional[bool] = None
    error: Optional[str] = None

    @property
    def type(self) -> MessageType:
        return MessageType.CONTROL_RESPONSE

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": "control_response",
            "request_id": self.request_id,
            "decision": self.decision,
            "reason": self.reason,
            "hook_specific_output": self.hook_specific_output,
        }
        if self.success is not None:
            result["success"] = self.success
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlResponse":
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolError("control_response without request_id", json.dumps(data))
        success = data.get("success")
        hook_output = data.get("hook_specific_output")
        return cls(
            request_id=request_id,
            decision=_str_or_none(data.get("decision")),
            reason=_str_or_none(data.get("reason")),
            hook_specific_output=hook_output if isinstance(hook_output, dict) else None,
            success=bool(success) if success is not None else None,
            error=_str_or_none(data.get("error")),
        )


@dataclass
class UnrecognizedMessage:
    """A message whose discriminator this client does not know."""

    raw_type: str
    raw: Dict[str, Any]

    @property
    def type(self) -> MessageType:
        return MessageType.UNRECOGNIZED

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


Message = Union[
    SystemMessage,
    AssistantMessage,
    UserMessage,
    ResultMessage,
    StreamEvent,
    ControlRequest,
    ControlResponse,
    UnrecognizedMessage,
]

_MESSAGE_CLASSES = {
    MessageType.SYSTEM.value: SystemMessage,
    MessageType.ASSISTANT.value: AssistantMessage,
    MessageType.USER.value: UserMessage,
    MessageType.RESULT.value: ResultMessage,
    MessageType.STREAM_EVENT.value: StreamEvent,
    MessageType.CONTROL_REQUEST.value: ControlRequest,
    MessageType.CONTROL_RESPONSE.value: ControlResponse,
}


# ==================== Outbound Commands ====================


@dataclass
class UserCommand:
    """Submit a user turn."""

    content: Union[str, List[Dict[str, Any]]]
    session_id: str = "default"
    parent_tool_use_id: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def type(self) -> MessageType:
        return MessageType.USER

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": "user",
            "message": {"role": "user", "content": self.content},
            "parent_tool_use_id": self.parent_tool_use_id,
            "session_id": self.session_id,
        }
        if self.message_id:
            result["client_message_id"] = self.message_id
        return result


@dataclass
class RewindCommand:
    """Ask the remote to revert file changes made after a checkpoint."""

    checkpoint_id: str
    request_id: str

    @property
    def type(self) -> MessageType:
        return MessageType.REWIND

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "rewind",
            "checkpoint_id": self.checkpoint_id,
            "request_id": self.request_id,
        }


@dataclass
class InterruptCommand:
    """Ask the remote to stop the turn in progress."""

    request_id: str

    @property
    def type(self) -> MessageType:
        return MessageType.INTERRUPT

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "interrupt", "request_id": self.request_id}


@dataclass
class SetModelCommand:
    """Switch the model used for subsequent turns.

    A model of None asks the remote to fall back to its default.
    """

    model: Optional[str]
    request_id: str

    @property
    def type(self) -> MessageType:
        return MessageType.SET_MODEL

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "set_model", "model": self.model, "request_id": self.request_id}


@dataclass
class SetPermissionModeCommand:
    """Change the permission mode of the running session."""

    mode: str
    request_id: str

    @property
    def type(self) -> MessageType:
        return MessageType.SET_PERMISSION_MODE

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "set_permission_mode", "mode": self.mode, "request_id": self.request_id}


Command = Union[
    UserCommand,
    RewindCommand,
    InterruptCommand,
    SetModelCommand,
    SetPermissionModeCommand,
    ControlResponse,
]


# ==================== Codec ====================


def parse_message(data: Dict[str, Any]) -> Message:
    """Parse a message from its dict representation.

    Raises:
        ProtocolError: If the discriminator is missing or not a string, or
            a control envelope lacks its request_id.
    """
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Message has no type discriminator", json.dumps(data)[:200])

    message_class = _MESSAGE_CLASSES.get(msg_type)
    if message_class is None:
        return UnrecognizedMessage(raw_type=msg_type, raw=data)
    return message_class.from_dict(data)


def decode_message(line: Union[str, bytes]) -> Message:
    """Decode one wire frame into a typed message.

    Args:
        line: A single frame, with or without its trailing newline.

    Returns:
        The decoded message. Unknown discriminators yield UnrecognizedMessage.

    Raises:
        ProtocolError: If the frame is not valid UTF-8 JSON, is not an
            object, or has no discriminator.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}", repr(line[:200])) from e

    text = line.strip()
    if not text:
        raise ProtocolError("Empty frame")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e.msg}", text, e.pos) from e
    except RecursionError as e:
        raise ProtocolError("Frame nests too deeply", text) from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}", text)

    try:
        return parse_message(data)
    except ProtocolError:
        raise
    except RecursionError as e:
        raise ProtocolError(f"{data.get('type')} message nests too deeply", text) from e
    except (TypeError, ValueError, AttributeError) as e:
        raise ProtocolError(f"Malformed {data.get('type')} message: {e}", text) from e


def encode_command(command: Command) -> bytes:
    """Encode an outbound command as one wire frame (without the newline).

    The output is compact and deterministic. JSON escapes control
    characters inside strings, so the payload never contains a raw line
    terminator.
    """
    return json.dumps(
        command.to_dict(), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


__all__ = [
    "MessageType",
    "ContentBlockType",
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "UnrecognizedBlock",
    "ContentBlock",
    "parse_content_block",
    "SystemMessage",
    "AssistantMessage",
    "UserMessage",
    "Usage",
    "ResultMessage",
    "StreamEvent",
    "ControlRequest",
    "ControlResponse",
    "UnrecognizedMessage",
    "Message",
    "UserCommand",
    "RewindCommand",
    "InterruptCommand",
    "SetModelCommand",
    "SetPermissionModeCommand",
    "Command",
    "parse_message",
    "decode_message",
    "encode_command",
]
