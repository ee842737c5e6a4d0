"""Wire trace logging.

Appends every frame crossing the process boundary, plus the agent's
diagnostic output, to a plain text file. Useful when the remote agent
misbehaves and the normal log level hides frame contents.

Tracing is opt-in: set AGENTWIRE_TRACE_LOG to a file path. An unset or
empty variable disables it.

Usage:
    from agentwire.trace import trace

    trace("transport", "-> {...}")
"""

import os
from datetime import datetime
from typing import Optional, Set

TRACE_ENV_VAR = "AGENTWIRE_TRACE_LOG"

# Directories already created, to avoid an os.makedirs call per write.
_ensured_dirs: Set[str] = set()


def _ensure_parent_dirs(file_path: str) -> None:
    """Create parent directories for a file path if they don't exist."""
    parent = os.path.dirname(os.path.abspath(file_path))
    if parent not in _ensured_dirs:
        os.makedirs(parent, exist_ok=True)
        _ensured_dirs.add(parent)


def resolve_trace_path() -> Optional[str]:
    """Return the trace file path, or None if tracing is disabled."""
    return os.environ.get(TRACE_ENV_VAR) or None


def trace_write(component: str, msg: str, trace_path: Optional[str]) -> None:
    """Write a trace line to the given path.

    Never raises; tracing errors must not break the session.
    """
    if not trace_path:
        return
    try:
        _ensure_parent_dirs(trace_path)
        with open(trace_path, "a") as f:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            f.write(f"[{ts}] [{component}] {msg}\n")
            f.flush()
    except Exception:
        pass


def trace(component: str, msg: str) -> None:
    """Write a trace line to the file named by AGENTWIRE_TRACE_LOG."""
    trace_write(component, msg, resolve_trace_path())


__all__ = ["TRACE_ENV_VAR", "resolve_trace_path", "trace", "trace_write"]
