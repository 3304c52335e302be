"""Bridge: the single object the child's side channel talks to.

Couples the shared state, the callback registry and the host kernel API.
Its lifetime is the interpreter's, not any one child process's: a relaunched
child sees the same state and callbacks as the one it replaced.

Submission traffic (``next`` / ``complete``) is forwarded to the attached
SubmissionSource, which the SubmissionService provides.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from kernel_bridge._logging import get_logger
from kernel_bridge.callbacks import CallbackBackend
from kernel_bridge.exceptions import ProtocolError
from kernel_bridge.models import OutputStatus, RawOutput, Submission
from kernel_bridge.protocol import (
    ChildMessage,
    CompleteRequest,
    ExecuteDirective,
    GetRequest,
    HelloRequest,
    InvokeRequest,
    KeysRequest,
    NextRequest,
    PutRequest,
    RemoveRequest,
)
from kernel_bridge.shared_state import SharedState

logger = get_logger(__name__)


@runtime_checkable
class KernelLike(Protocol):
    """Host kernel API handed to the bridge.

    The bridge only carries the reference; callbacks registered by the host
    decide which parts of it the child may reach.
    """

    def display(self, content: str, mime_type: str = "text/plain") -> None:
        """Show content in the host's output area."""
        ...


class SubmissionSource(Protocol):
    """Queue side of the submission flow, as seen by the bridge."""

    async def next_submission(self) -> Submission:
        """Return the submission the child should run next (waits if none)."""
        ...

    def complete_submission(self, submission_id: str, output: RawOutput) -> None:
        """Record the child's output for the in-flight submission."""
        ...


class Bridge:
    """Shared channel object between host and child.

    Attributes:
        state: Bounded shared key/value store
        callbacks: Host-exposed callback registry
        kernel: Host kernel API reference (may be None)
    """

    def __init__(
        self,
        state: SharedState,
        callbacks: CallbackBackend | None = None,
        kernel: KernelLike | None = None,
    ) -> None:
        self.state = state
        self.callbacks = callbacks if callbacks is not None else CallbackBackend()
        self.kernel = kernel
        self._source: SubmissionSource | None = None

    def attach(self, source: SubmissionSource) -> None:
        """Attach the queue that answers ``next`` / ``complete``."""
        self._source = source

    def fail_submission(self, submission_id: str, reason: str) -> None:
        """Resolve a delivered submission with an error the child never reported.

        Used when the child's own completion can't be read.

        Raises:
            ProtocolError: No queue attached, or the submission is no longer in flight.
        """
        logger.warning("Failing delivered submission", extra={"submission_id": submission_id, "reason": reason})
        self._require_source().complete_submission(submission_id, RawOutput(text=reason, status=OutputStatus.ERROR))

    async def handle(self, request: ChildMessage) -> Any:
        """Serve one side-channel request and return the reply payload.

        Bridge errors (capacity, unknown callback, ...) propagate to the
        caller, which reports them back to the child.

        Raises:
            ProtocolError: Submission traffic with no queue attached, or a
                request this bridge does not serve.
        """
        match request:
            case NextRequest():
                submission = await self._require_source().next_submission()
                return ExecuteDirective(id=submission.id, code=submission.code, silent=submission.silent).model_dump()
            case CompleteRequest(id=submission_id, status=status, text=text):
                self._require_source().complete_submission(submission_id, RawOutput(text=text, status=status))
                return {}
            case GetRequest(key=key):
                found, value = self.state.lookup(key)
                return {"found": found, "value": value}
            case PutRequest(key=key, value=value):
                self.state.put(key, value)
                return {}
            case RemoveRequest(key=key):
                return {"removed": self.state.remove(key)}
            case KeysRequest():
                return {"keys": self.state.keys()}
            case InvokeRequest(name=name, args=args, kwargs=kwargs):
                logger.debug("Child invoking callback", extra={"callback": name})
                # Handlers may block; keep the side channel responsive
                value = await asyncio.to_thread(self.callbacks.invoke, name, args, kwargs)
                return {"value": value}
            case HelloRequest():
                raise ProtocolError("hello is only valid as the first message")
            case _:
                raise ProtocolError(f"Unsupported side-channel operation: {request.op}")

    def _require_source(self) -> SubmissionSource:
        if self._source is None:
            raise ProtocolError("No submission queue attached to the bridge")
        return self._source
