"""agentwire client implementations."""

from agentwire.client.checkpoints import Checkpoint, CheckpointTracker
from agentwire.client.config import ClientConfig, SessionConfig, load_client_config, get_session_config
from agentwire.client.discovery import build_command, find_cli
from agentwire.client.hooks import (
    HookDecision,
    HookDispatcher,
    HookEvent,
    HookInput,
    HookOutput,
    HookRegistration,
)
from agentwire.client.options import PermissionMode, SessionOptions
from agentwire.client.queue import MessageStatus, QueueManager, QueueStatus, QueuedMessage
from agentwire.client.session import Session, SessionState, SessionStatus
from agentwire.client.transport import ProcessTransport

__all__ = [
    "Checkpoint",
    "CheckpointTracker",
    "ClientConfig",
    "SessionConfig",
    "load_client_config",
    "get_session_config",
    "build_command",
    "find_cli",
    "HookDecision",
    "HookDispatcher",
    "HookEvent",
    "HookInput",
    "HookOutput",
    "HookRegistration",
    "PermissionMode",
    "SessionOptions",
    "MessageStatus",
    "QueueManager",
    "QueueStatus",
    "QueuedMessage",
    "Session",
    "SessionState",
    "SessionStatus",
    "ProcessTransport",
]
