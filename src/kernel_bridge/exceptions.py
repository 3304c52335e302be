"""Exception hierarchy for kernel-bridge.

All exceptions inherit from BridgeError.

Hierarchy:
    BridgeError (base)
    ├── TransientError (retryable marker base)
    │   ├── QueueFullError              ← pending table at capacity, retry later
    │   └── StartupError                ← child never reported ready
    ├── PermanentError (non-retryable marker base)
    │   ├── LaunchError                 ← runtime binary missing / not executable
    │   ├── ProcessTerminatedError      ← child died with no restart configured
    │   ├── InterpreterStoppedError     ← submission cancelled by stop()
    │   ├── UnsupportedOperationError   ← facade operation with no safe default
    │   └── CapacityExceededError       ← shared state full
    ├── ProtocolError                   ← malformed or out-of-order side-channel traffic
    ├── CallbackError
    │   ├── UnknownCallbackError        ← name not in the registry
    │   └── CallbackArgumentError       ← arguments rejected by the handler signature
    ├── StateKeyNotFoundError           ← also a KeyError
    ├── InvalidStateTransitionError     ← supervisor state machine guard
    └── InterpretTimeoutError           ← optional interpret() wait bound elapsed

Submission-level failures (syntax errors, runtime errors inside the child)
are not exceptions: they arrive as Error / Incomplete results.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(BridgeError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(BridgeError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Transient Errors (retryable)
# =============================================================================


class QueueFullError(TransientError):
    """Pending submission table at capacity.

    Backpressure is surfaced to the caller instead of blocking; the caller
    should retry once earlier submissions have resolved.
    """


class StartupError(TransientError):
    """Child process did not reach the ready state within the startup timeout.

    Also raised when the child exits before announcing itself.  Often caused
    by a slow interpreter start under load and may succeed on retry.
    """


# =============================================================================
# Permanent Errors (non-retryable)
# =============================================================================


class LaunchError(PermanentError):
    """Child runtime could not be started.

    Raised when the runtime binary cannot be found or executed.  Requires a
    configuration change (runtime_command, PATH, permissions).
    """


class ProcessTerminatedError(PermanentError):
    """Child process died and no restart was configured (or the restart failed).

    Every submission pending at that moment fails with this error.  The
    interpreter stays in a failed state until stop() is called.

    Attributes:
        exit_code: Exit status of the child, if known
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, exit_code: int | None = None):
        super().__init__(message, context)
        self.exit_code = exit_code


class InterpreterStoppedError(PermanentError):
    """Submission cancelled because the interpreter was stopped.

    Raised for submissions still pending when stop() runs and for
    submissions attempted while stop() is in progress.
    """


class UnsupportedOperationError(PermanentError):
    """Facade operation that this interpreter deliberately does not implement."""


class CapacityExceededError(PermanentError):
    """Shared state holds its configured maximum number of entries.

    Signaled to whichever side attempted the write.  Nothing is evicted.

    Attributes:
        capacity: Configured maximum entry count
    """

    def __init__(self, message: str, capacity: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"capacity": capacity})
        super().__init__(message, ctx)
        self.capacity = capacity


# =============================================================================
# Side channel / internal errors
# =============================================================================


class ProtocolError(BridgeError):
    """Side-channel traffic was malformed or arrived out of order."""


class CallbackError(BridgeError):
    """Base for callback dispatch failures."""


class UnknownCallbackError(CallbackError):
    """Callback name not present in the registry."""


class CallbackArgumentError(CallbackError):
    """Arguments sent by the child do not match the handler's signature."""


class StateKeyNotFoundError(BridgeError, KeyError):
    """Key not present in the shared state."""

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.message


class InvalidStateTransitionError(BridgeError):
    """Supervisor attempted a transition the state machine does not allow."""


class InterpretTimeoutError(BridgeError):
    """interpret() waited longer than the configured bound.

    Only raised when interpret_timeout_seconds is set.  The submission is
    not abandoned: it stays queued and its result is still recorded.
    """
