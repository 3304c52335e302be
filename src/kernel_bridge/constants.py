"""Constants for kernel-bridge configuration and limits."""

from typing import Final

# ============================================================================
# Shared State / Queue Bounds
# ============================================================================

DEFAULT_STATE_CAPACITY: Final[int] = 500
"""Default maximum number of entries held in the shared state."""

DEFAULT_MAX_PENDING_SUBMISSIONS: Final[int] = 500
"""Default maximum number of submissions awaiting a result."""

# ============================================================================
# Process Lifecycle Timeouts
# ============================================================================

DEFAULT_STARTUP_TIMEOUT_SECONDS: Final[float] = 30.0
"""Time allowed between spawn and the child's hello message."""

DEFAULT_STOP_GRACE_SECONDS: Final[float] = 3.0
"""Time allowed for a graceful exit after the shutdown directive, before SIGTERM."""

DEFAULT_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Time allowed after SIGTERM (and again after SIGKILL) before giving up."""

LOOP_THREAD_JOIN_TIMEOUT_SECONDS: Final[float] = 5.0
"""Time allowed for the supervisor thread to exit after its loop stops."""

DEFAULT_LAUNCH_ATTEMPTS: Final[int] = 3
"""Spawn attempts on transient fork failures (EAGAIN) before LaunchError."""

# ============================================================================
# Side Channel
# ============================================================================

STREAM_BUFFER_LIMIT: Final[int] = 16 * 1024 * 1024
"""StreamReader limit for one JSON line from the child (16MB)."""

MAX_CODE_SIZE: Final[int] = 1024 * 1024
"""Maximum size in characters for one code submission."""

PROTOCOL_VERSION: Final[str] = "1"
"""Side-channel protocol version announced in hello."""

INCOMPLETE_INPUT_MESSAGE: Final[str] = "incomplete input"
"""Failure detail for Incomplete results."""
