"""agentwire - client for agent processes speaking the stream-json control protocol.

Usage:
    from agentwire import Session, SessionOptions
    from agentwire.events import AssistantMessage, ResultMessage
"""

from agentwire.client import (
    Checkpoint,
    CheckpointTracker,
    HookDecision,
    HookDispatcher,
    HookEvent,
    HookInput,
    HookOutput,
    PermissionMode,
    QueueManager,
    Session,
    SessionConfig,
    SessionOptions,
    SessionState,
    SessionStatus,
    load_client_config,
)
from agentwire.errors import (
    AgentWireError,
    AlreadyDispatchedError,
    CLINotFoundError,
    ControlError,
    InvalidCheckpointError,
    NotFoundError,
    ProcessError,
    ProtocolError,
    RewindTimeoutError,
    SessionClosedError,
    SpawnError,
    StreamClosedError,
)
from agentwire.events import (
    AssistantMessage,
    Message,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    UnrecognizedMessage,
    UserMessage,
    decode_message,
    encode_command,
)
from agentwire.query import query

__version__ = "0.1.0"

__all__ = [
    # Client
    "Checkpoint",
    "CheckpointTracker",
    "HookDecision",
    "HookDispatcher",
    "HookEvent",
    "HookInput",
    "HookOutput",
    "PermissionMode",
    "QueueManager",
    "Session",
    "SessionConfig",
    "SessionOptions",
    "SessionState",
    "SessionStatus",
    "load_client_config",
    "query",
    # Errors
    "AgentWireError",
    "AlreadyDispatchedError",
    "CLINotFoundError",
    "ControlError",
    "InvalidCheckpointError",
    "NotFoundError",
    "ProcessError",
    "ProtocolError",
    "RewindTimeoutError",
    "SessionClosedError",
    "SpawnError",
    "StreamClosedError",
    # Messages
    "AssistantMessage",
    "Message",
    "ResultMessage",
    "StreamEvent",
    "SystemMessage",
    "UnrecognizedMessage",
    "UserMessage",
    "decode_message",
    "encode_command",
]
