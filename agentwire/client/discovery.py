"""Agent CLI discovery and command line construction."""

import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

from ..errors import CLINotFoundError
from .options import PermissionMode, SessionOptions

logger = logging.getLogger(__name__)

CLI_NAME = "claude"
CLI_PATH_ENV_VAR = "AGENTWIRE_CLI_PATH"

INSTALL_HINT = (
    "Install the agent CLI with:\n"
    "  npm install -g @anthropic-ai/claude-code\n"
    f"or set {CLI_PATH_ENV_VAR} / SessionOptions.cli_path to its location."
)

# Protocol flags; every session speaks stream-json in both directions.
PROTOCOL_FLAGS = [
    "--output-format", "stream-json",
    "--verbose",
    "--input-format", "stream-json",
]


def _fallback_locations() -> List[Path]:
    home = Path.home()
    return [
        home / ".npm-global" / "bin" / CLI_NAME,
        Path("/usr/local/bin") / CLI_NAME,
        home / ".local" / "bin" / CLI_NAME,
        home / "node_modules" / ".bin" / CLI_NAME,
        home / ".yarn" / "bin" / CLI_NAME,
        Path("/opt/homebrew/bin") / CLI_NAME,
        Path("/usr/local/homebrew/bin") / CLI_NAME,
    ]


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_cli(explicit_path: Optional[str] = None) -> str:
    """Locate the agent CLI executable.

    Search order: the explicit path, the AGENTWIRE_CLI_PATH environment
    variable, PATH, then well-known install locations.

    Args:
        explicit_path: A path supplied by the caller. When given, it is the
            only candidate considered.

    Returns:
        Absolute path to the executable.

    Raises:
        CLINotFoundError: If no executable is found.
    """
    if explicit_path:
        candidate = Path(os.path.expanduser(explicit_path))
        if not candidate.is_absolute() and candidate.parent == Path("."):
            found = shutil.which(str(candidate))
            if found:
                return found
        if _is_executable(candidate):
            return str(candidate)
        raise CLINotFoundError("Agent CLI not found or not executable", str(candidate))

    env_path = os.environ.get(CLI_PATH_ENV_VAR)
    if env_path:
        candidate = Path(os.path.expanduser(env_path))
        if _is_executable(candidate):
            logger.debug(f"Using agent CLI from {CLI_PATH_ENV_VAR}: {candidate}")
            return str(candidate)
        logger.warning(f"{CLI_PATH_ENV_VAR} points to a missing executable: {env_path}")

    found = shutil.which(CLI_NAME)
    if found:
        return found

    for location in _fallback_locations():
        if _is_executable(location):
            logger.debug(f"Found agent CLI at fallback location: {location}")
            return str(location)

    raise CLINotFoundError(f"Agent CLI not found. {INSTALL_HINT}")


def build_command(cli_path: str, options: Optional[SessionOptions] = None) -> List[str]:
    """Build the full command line for the agent process.

    Args:
        cli_path: The executable, as returned by find_cli().
        options: Launch options. Defaults apply when None.

    Returns:
        The argv list, executable first.
    """
    options = options or SessionOptions()
    args = [cli_path, *options.launcher_args, *PROTOCOL_FLAGS]

    if options.model:
        args.extend(["--model", options.model])
    if options.fallback_model:
        args.extend(["--fallback-model", options.fallback_model])
    if options.system_prompt is not None:
        args.extend(["--system-prompt", options.system_prompt])
    if options.append_system_prompt:
        args.extend(["--append-system-prompt", options.append_system_prompt])
    if options.allowed_tools:
        args.extend(["--allowed-tools", ",".join(options.allowed_tools)])
    if options.disallowed_tools:
        args.extend(["--disallowed-tools", ",".join(options.disallowed_tools)])
    if options.permission_mode:
        mode = options.permission_mode
        args.extend(["--permission-mode", mode.value if isinstance(mode, PermissionMode) else mode])
    if options.max_turns is not None:
        args.extend(["--max-turns", str(options.max_turns)])
    if options.max_thinking_tokens is not None:
        args.extend(["--max-thinking-tokens", str(options.max_thinking_tokens)])
    if options.continue_conversation:
        args.append("--continue")
    if options.resume:
        args.extend(["--resume", options.resume])
    if options.fork_session:
        args.append("--fork-session")
    if options.settings:
        args.extend(["--settings", options.settings])
    if options.mcp_config:
        args.extend(["--mcp-config", options.mcp_config])
    for directory in options.add_dirs:
        args.extend(["--add-dir", str(directory)])
    if options.include_partial_messages:
        args.append("--include-partial-messages")

    for flag, value in options.extra_args.items():
        args.append(f"--{flag}")
        if value is not None:
            args.append(value)

    logger.debug(f"Agent flags: {[a for a in args if a.startswith('--')]}")
    return args


__all__ = ["CLI_NAME", "CLI_PATH_ENV_VAR", "PROTOCOL_FLAGS", "build_command", "find_cli"]
