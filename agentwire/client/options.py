"""Launch options for the remote agent process.

SessionOptions describes how the agent CLI is started: which executable,
which model and tools, which working directory and environment. The
session passes these through to the process opaquely; none of them change
how the wire protocol is handled.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

ENTRYPOINT = "sdk-py"


class PermissionMode(str, Enum):
    """How the agent asks for permission before acting."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"


@dataclass
class SessionOptions:
    """Options for launching the agent process.

    Attributes:
        cli_path: Agent executable. Discovered automatically when None.
        launcher_args: Arguments placed between the executable and the
            protocol flags, e.g. a script path when cli_path is an
            interpreter.
        cwd: Working directory for the process. Must exist.
        env: Extra environment variables (highest precedence).
        env_file: A dotenv file whose values are added to the environment.
        model: Model name passed with --model.
        fallback_model: Model used when the primary is overloaded.
        system_prompt: Replaces the agent's system prompt.
        append_system_prompt: Appended to the agent's system prompt.
        allowed_tools: Tools the agent may use without asking.
        disallowed_tools: Tools the agent may not use.
        permission_mode: One of PermissionMode.
        max_turns: Limit on agentic turns per prompt.
        max_thinking_tokens: Budget for extended thinking.
        continue_conversation: Continue the most recent conversation.
        resume: Session ID to resume.
        fork_session: Resume into a new session ID instead of reusing it.
        settings: Path or JSON string of agent settings.
        add_dirs: Additional directories the agent may access.
        mcp_config: Path or JSON string of tool server configuration.
        include_partial_messages: Request stream_event messages.
        enable_file_checkpointing: Ask the agent to track file changes so
            rewind() can revert them.
        extra_args: Arbitrary extra flags. A None value emits a bare flag.
        stderr_callback: Called with each line of agent stderr.
    """
    cli_path: Optional[str] = None
    launcher_args: List[str] = field(default_factory=list)
    cwd: Optional[Union[str, Path]] = None
    env: Dict[str, str] = field(default_factory=dict)
    env_file: Optional[Union[str, Path]] = None
    model: Optional[str] = None
    fallback_model: Optional[str] = None
    system_prompt: Optional[str] = None
    append_system_prompt: Optional[str] = None
    allowed_tools: List[str] = field(default_factory=list)
    disallowed_tools: List[str] = field(default_factory=list)
    permission_mode: Optional[Union[PermissionMode, str]] = None
    max_turns: Optional[int] = None
    max_thinking_tokens: Optional[int] = None
    continue_conversation: bool = False
    resume: Optional[str] = None
    fork_session: bool = False
    settings: Optional[str] = None
    add_dirs: List[Union[str, Path]] = field(default_factory=list)
    mcp_config: Optional[str] = None
    include_partial_messages: bool = False
    enable_file_checkpointing: bool = False
    extra_args: Dict[str, Optional[str]] = field(default_factory=dict)
    stderr_callback: Optional[Callable[[str], None]] = None

    def validate(self) -> None:
        """Reject option combinations the agent would refuse.

        Raises:
            ValueError: If any option is invalid.
        """
        if self.max_turns is not None and self.max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if self.max_thinking_tokens is not None and self.max_thinking_tokens < 0:
            raise ValueError("max_thinking_tokens must not be negative")
        if self.permission_mode is not None:
            valid = {m.value for m in PermissionMode}
            mode = self.permission_mode
            value = mode.value if isinstance(mode, PermissionMode) else mode
            if value not in valid:
                raise ValueError(
                    f"Invalid permission_mode {value!r}, expected one of {sorted(valid)}"
                )
        if self.continue_conversation and self.resume:
            raise ValueError("continue_conversation and resume are mutually exclusive")
        if self.fork_session and not self.resume:
            raise ValueError("fork_session requires resume")
        conflicting = set(self.allowed_tools) & set(self.disallowed_tools)
        if conflicting:
            raise ValueError(f"Tools both allowed and disallowed: {sorted(conflicting)}")
        for flag in self.extra_args:
            if not flag or flag.startswith("-"):
                raise ValueError(f"extra_args keys are bare flag names, got {flag!r}")

    def resolve_cwd(self) -> Optional[str]:
        return str(self.cwd) if self.cwd is not None else None

    def build_env(self) -> Dict[str, str]:
        """Environment additions for the agent process.

        Precedence, lowest first: entrypoint marker, checkpointing switch,
        env_file values, explicit env.
        """
        env: Dict[str, str] = {"CLAUDE_CODE_ENTRYPOINT": ENTRYPOINT}
        if self.enable_file_checkpointing:
            env["CLAUDE_CODE_ENABLE_SDK_FILE_CHECKPOINTING"] = "true"

        if self.env_file:
            from dotenv import dotenv_values

            env_path = os.path.expanduser(str(self.env_file))
            if os.path.exists(env_path):
                file_values = dotenv_values(env_path)
                env.update({k: v for k, v in file_values.items() if v is not None})
                logger.debug(f"Loaded {len(file_values)} env values from {env_path}")
            else:
                logger.warning(f"env_file not found: {env_path}")

        env.update(self.env)
        return env


__all__ = ["ENTRYPOINT", "PermissionMode", "SessionOptions"]
