"""Session configuration loading with layered precedence.

Runtime tunables for a Session: timeouts, fault thresholds and buffer
limits. Process launch options (model, tools, working directory) live in
SessionOptions instead.

Configuration precedence (highest wins):
1. Environment variables (AGENTWIRE_*)
2. Project config (.agentwire/client.json)
3. User config (~/.agentwire/client.json)
4. Built-in defaults

Usage:
    from agentwire.client.config import load_client_config

    config = load_client_config(workspace_path=Path.cwd())
    session = Session(options, config=config.session)

Environment Variables:
    AGENTWIRE_HOOK_TIMEOUT: Per-handler hook timeout seconds (default: 60.0)
    AGENTWIRE_CONTROL_TIMEOUT: Control command ack timeout seconds (default: 30.0)
    AGENTWIRE_REWIND_TIMEOUT: Rewind ack timeout seconds (default: 30.0)
    AGENTWIRE_INTERRUPT_TIMEOUT: Interrupt ack timeout seconds (default: 5.0)
    AGENTWIRE_STOP_GRACE_PERIOD: Seconds to wait at each shutdown step (default: 5.0)
    AGENTWIRE_MAX_DECODE_ERRORS: Consecutive bad frames before faulting (default: 5)
    AGENTWIRE_MAX_LINE_BYTES: Longest accepted frame in bytes (default: 10 MiB)
    AGENTWIRE_MESSAGE_BUFFER_SIZE: Undelivered message limit, 0 = unbounded (default: 0)
    AGENTWIRE_STDERR_TAIL_LINES: Stderr lines kept for error reports (default: 100)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, get_type_hints

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 10 * 1024 * 1024


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    # Extract inner type from Optional
    args = getattr(target_type, '__args__', ())
    if args and type(None) in args:
        inner_types = [a for a in args if a is not type(None)]
        if inner_types:
            target_type = inner_types[0]

    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class SessionConfig:
    """Runtime tunables for a Session.

    Attributes:
        hook_timeout: Default per-handler timeout for hook callbacks, in
            seconds. A handler that runs longer is treated as "allow".
        control_timeout: Default wait for the acknowledgement of a control
            command.
        rewind_timeout: Wait for the acknowledgement of a rewind.
        interrupt_timeout: Wait for the acknowledgement of an interrupt.
        stop_grace_period: How long stop() waits after closing stdin, and
            again after SIGTERM, before escalating.
        max_decode_errors: Consecutive undecodable frames tolerated before
            the stream is considered desynchronized and the session faults.
        max_line_bytes: Longest frame accepted from the agent.
        message_buffer_size: Maximum decoded messages held for the consumer.
            0 means unbounded. When full, the read loop waits, which in turn
            applies back-pressure to the agent's output pipe.
        stderr_tail_lines: Lines of agent stderr kept for error reports.
    """
    hook_timeout: float = 60.0
    control_timeout: float = 30.0
    rewind_timeout: float = 30.0
    interrupt_timeout: float = 5.0
    stop_grace_period: float = 5.0
    max_decode_errors: int = 5
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    message_buffer_size: int = 0
    stderr_tail_lines: int = 100

    def __post_init__(self):
        """Validate configuration values."""
        for name in ("hook_timeout", "control_timeout", "rewind_timeout", "interrupt_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.stop_grace_period < 0:
            raise ValueError("stop_grace_period must not be negative")
        if self.max_decode_errors < 1:
            raise ValueError("max_decode_errors must be at least 1")
        if self.max_line_bytes < 1024:
            raise ValueError("max_line_bytes must be at least 1024")
        if self.message_buffer_size < 0:
            raise ValueError("message_buffer_size must not be negative")
        if self.stderr_tail_lines < 0:
            raise ValueError("stderr_tail_lines must not be negative")


@dataclass
class ClientConfig:
    """Root client configuration.

    Attributes:
        session: Runtime tunables applied to every Session.
    """
    session: SessionConfig = field(default_factory=SessionConfig)


# Maps "section.field" paths to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "session.hook_timeout": "AGENTWIRE_HOOK_TIMEOUT",
    "session.control_timeout": "AGENTWIRE_CONTROL_TIMEOUT",
    "session.rewind_timeout": "AGENTWIRE_REWIND_TIMEOUT",
    "session.interrupt_timeout": "AGENTWIRE_INTERRUPT_TIMEOUT",
    "session.stop_grace_period": "AGENTWIRE_STOP_GRACE_PERIOD",
    "session.max_decode_errors": "AGENTWIRE_MAX_DECODE_ERRORS",
    "session.max_line_bytes": "AGENTWIRE_MAX_LINE_BYTES",
    "session.message_buffer_size": "AGENTWIRE_MESSAGE_BUFFER_SIZE",
    "session.stderr_tail_lines": "AGENTWIRE_STDERR_TAIL_LINES",
}


def _find_config_files(workspace_path: Optional[Path] = None) -> List[Path]:
    """Find configuration files in order of precedence (lowest first).

    Args:
        workspace_path: Path to project workspace. If None, only user config
            is searched.

    Returns:
        List of existing config file paths, ordered from lowest to highest
        precedence.
    """
    files = []

    user_config = Path.home() / ".agentwire" / "client.json"
    if user_config.exists():
        files.append(user_config)

    if workspace_path:
        project_config = workspace_path / ".agentwire" / "client.json"
        if project_config.exists():
            files.append(project_config)

    return files


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base, returning new dict.

    Nested dictionaries are merged; lists and other values are replaced.
    """
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _get_field_type(dataclass_type: Type, field_name: str) -> Type:
    """Get the type of a dataclass field, or str as fallback."""
    try:
        hints = get_type_hints(dataclass_type)
        return hints.get(field_name, str)
    except Exception:
        return str


def _apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict.

    Args:
        config_dict: Configuration dictionary to modify.

    Returns:
        New dictionary with environment overrides applied.
    """
    result = config_dict.copy()

    for path, env_var in ENV_VAR_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue

        parts = path.split(".")
        current = result
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            else:
                current[part] = dict(current[part])
            current = current[part]

        field_name = parts[-1]
        target_type = _get_field_type(SessionConfig, field_name)

        try:
            current[field_name] = _parse_env_value(env_value, target_type)
            logger.debug(f"Applied env override: {env_var}={env_value}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid value for {env_var}: {env_value} ({e})")

    return result


def _dict_to_session_config(data: Dict[str, Any]) -> SessionConfig:
    """Convert dict to SessionConfig, ignoring unknown keys.

    Invalid values fall back to the defaults with a warning.
    """
    valid_fields = {f.name for f in fields(SessionConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    unknown = set(data.keys()) - valid_fields
    if unknown:
        logger.warning(f"Unknown session config keys (ignored): {unknown}")

    try:
        return SessionConfig(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid session config values, using defaults: {e}")
        return SessionConfig()


def _dict_to_config(data: Dict[str, Any]) -> ClientConfig:
    session_data = data.get("session", {})
    if not isinstance(session_data, dict):
        logger.warning("Invalid 'session' config (expected dict), using defaults")
        session_data = {}

    return ClientConfig(session=_dict_to_session_config(session_data))


def load_client_config(workspace_path: Optional[Path] = None) -> ClientConfig:
    """Load client configuration with layered precedence.

    Configuration is merged from, lowest precedence first: built-in
    defaults, ~/.agentwire/client.json, <workspace>/.agentwire/client.json,
    then AGENTWIRE_* environment variables.

    Args:
        workspace_path: Path to project workspace for project-level config.
            If None, only user config and environment variables are used.

    Returns:
        Merged ClientConfig instance.
    """
    merged: Dict[str, Any] = {}

    for config_file in _find_config_files(workspace_path):
        try:
            with open(config_file) as f:
                file_config = json.load(f)

            if not isinstance(file_config, dict):
                logger.warning(f"Invalid config format in {config_file} (expected object)")
                continue

            merged = _deep_merge(merged, file_config)
            logger.debug(f"Loaded config from {config_file}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {config_file}: {e}")
        except PermissionError:
            logger.warning(f"Permission denied reading {config_file}")
        except OSError as e:
            logger.warning(f"Failed to load {config_file}: {e}")

    merged = _apply_env_overrides(merged)

    return _dict_to_config(merged)


def get_session_config(workspace_path: Optional[Path] = None) -> SessionConfig:
    """Convenience function to get just the session config."""
    return load_client_config(workspace_path).session


def get_config_paths(workspace_path: Optional[Path] = None) -> Dict[str, Path]:
    """Get the paths where config files are searched.

    Returns:
        Dict with 'user' and optionally 'project' paths.
    """
    paths = {
        "user": Path.home() / ".agentwire" / "client.json",
    }
    if workspace_path:
        paths["project"] = workspace_path / ".agentwire" / "client.json"
    return paths


__all__ = [
    "ClientConfig",
    "DEFAULT_MAX_LINE_BYTES",
    "ENV_VAR_MAPPING",
    "SessionConfig",
    "get_config_paths",
    "get_session_config",
    "load_client_config",
]
