"""Host end of the side channel over the child's stdio.

Reads one JSON request per line from the child's stdout, serves it through
the Bridge and writes the reply to the child's stdin.  Requests are served
strictly one at a time: the child blocks on every reply, so a held ``next``
request is how the host paces the single-threaded runtime.
"""

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from kernel_bridge._logging import get_logger
from kernel_bridge.bridge import Bridge
from kernel_bridge.constants import PROTOCOL_VERSION
from kernel_bridge.exceptions import BridgeError, ProtocolError
from kernel_bridge.platform_utils import ProcessWrapper
from kernel_bridge.protocol import (
    CHILD_MESSAGE_ADAPTER,
    ChildMessage,
    CompleteRequest,
    HelloRequest,
    NextRequest,
    Reply,
    ShutdownDirective,
)

logger = get_logger(__name__)


def _peek(line: bytes) -> dict[str, Any]:
    """Decode a line that failed validation, as far as plain JSON allows."""
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def _recover_seq(line: bytes) -> int | None:
    """Best-effort seq extraction from a request that failed validation."""
    seq = _peek(line).get("seq")
    if isinstance(seq, int) and not isinstance(seq, bool) and seq >= 0:
        return seq
    return None


class ProcessChannel:
    """Side channel to one child process instance.

    Lifecycle:
        - start() launches the serve loop as a background task
        - wait_ready() resolves with the child's hello
        - request_shutdown() answers the current/next ``next`` with a shutdown directive
        - close() stops the serve loop and closes the child's stdin

    When framing is lost (a line longer than the stream buffer limit) the
    submission the child was working on is resolved with an error output and
    ``on_fatal`` is awaited; the supervisor uses it to terminate the child.
    """

    def __init__(
        self,
        process: ProcessWrapper,
        bridge: Bridge,
        *,
        context_id: str,
        on_fatal: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._process = process
        self._bridge = bridge
        self._context_id = context_id
        self._on_fatal = on_fatal
        self._ready: asyncio.Future[HelloRequest] = asyncio.get_running_loop().create_future()
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        # Submission handed to the child and not yet completed
        self._delivered: str | None = None

    @property
    def ready(self) -> bool:
        return self._ready.done() and not self._ready.cancelled()

    def start(self) -> None:
        """Start the serve loop as a background task."""
        self._task = asyncio.create_task(self._serve(), name=f"side-channel-{self._context_id}")

    async def wait_ready(self) -> HelloRequest:
        """Wait for the child's hello (the caller applies the timeout)."""
        return await asyncio.shield(self._ready)

    def request_shutdown(self) -> None:
        """Ask the child to exit at its next pull."""
        self._shutdown.set()

    async def close(self) -> None:
        """Stop serving and close the child's stdin. Idempotent."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if not self._ready.done():
            self._ready.cancel()
        writer = self._process.stdin
        if writer is not None and not writer.is_closing():
            writer.close()
            with contextlib.suppress(ConnectionResetError, BrokenPipeError):
                await writer.wait_closed()

    # -------------------------------------------------------------------------
    # Serve loop
    # -------------------------------------------------------------------------

    async def _serve(self) -> None:
        reader = self._process.stdout
        if reader is None:
            raise ProtocolError("Child stdout is not piped", context={"context_id": self._context_id})
        framing_lost = False
        try:
            while True:
                try:
                    line = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as e:
                    if e.partial.strip():
                        logger.warning(
                            "Side channel closed mid-message",
                            extra={"context_id": self._context_id, "raw": e.partial[:200]},
                        )
                    break
                except asyncio.LimitOverrunError:
                    logger.error(
                        "Side-channel message exceeds stream buffer limit, terminating runtime",
                        extra={"context_id": self._context_id},
                    )
                    framing_lost = True
                    break

                if not line.strip():
                    continue
                reply = await self._dispatch(line)
                if reply is not None:
                    await self._send(reply)
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("Side channel closed by child", extra={"context_id": self._context_id, "error": str(e)})

        if framing_lost:
            # Redelivery would overrun again, so the submission ends here
            self._fail_delivered("Runtime sent a side-channel message larger than the stream buffer limit")
            if self._on_fatal is not None:
                await self._on_fatal()
        logger.debug("Side channel serve loop finished", extra={"context_id": self._context_id})

    def _fail_delivered(self, reason: str) -> None:
        """Resolve the submission the child holds with an error output."""
        submission_id, self._delivered = self._delivered, None
        if submission_id is None:
            return
        try:
            self._bridge.fail_submission(submission_id, reason)
        except ProtocolError as e:
            logger.debug(
                "Delivered submission already resolved",
                extra={"context_id": self._context_id, "submission_id": submission_id, "error": e.message},
            )

    async def _dispatch(self, line: bytes) -> Reply | None:
        try:
            request = CHILD_MESSAGE_ADAPTER.validate_json(line)
        except ValidationError as e:
            seq = _recover_seq(line)
            logger.warning(
                "Malformed side-channel message",
                extra={"context_id": self._context_id, "raw": line[:200], "seq": seq},
            )
            if _peek(line).get("op") == "complete":
                # The child has finished with its submission but its output is unusable
                self._fail_delivered(f"Runtime sent an invalid completion: {e.error_count()} validation error(s)")
            if seq is None:
                return None
            return Reply.failure(seq, ProtocolError(f"Malformed request: {e.error_count()} validation error(s)"))

        if isinstance(request, HelloRequest):
            return self._accept_hello(request)
        if not self._ready.done():
            return Reply.failure(request.seq, ProtocolError("First message must be hello"))

        try:
            if isinstance(request, NextRequest):
                result = await self._next(request)
                if isinstance(result, dict) and "id" in result:
                    self._delivered = result["id"]
            else:
                result = await self._bridge.handle(request)
                if isinstance(request, CompleteRequest):
                    self._delivered = None
        except BridgeError as e:
            logger.debug(
                "Side-channel request failed",
                extra={"context_id": self._context_id, "op": request.op, "error_type": type(e).__name__},
            )
            return Reply.failure(request.seq, e)
        except Exception as e:  # noqa: BLE001 - host callback errors go back to the child
            logger.warning(
                "Host callback raised",
                extra={"context_id": self._context_id, "op": request.op, "error_type": type(e).__name__},
                exc_info=True,
            )
            return Reply.failure(request.seq, e)
        return Reply.success(request.seq, result)

    def _accept_hello(self, request: HelloRequest) -> Reply:
        if self._ready.done():
            return Reply.failure(request.seq, ProtocolError("Duplicate hello"))
        if request.version != PROTOCOL_VERSION:
            logger.warning(
                "Child speaks a different protocol version",
                extra={"context_id": self._context_id, "child_version": request.version, "host_version": PROTOCOL_VERSION},
            )
        self._ready.set_result(request)
        return Reply.success(request.seq)

    async def _next(self, request: ChildMessage) -> Any:
        """Serve ``next``: the queued submission, or shutdown if stopping first."""
        if self._shutdown.is_set():
            return ShutdownDirective().model_dump()

        next_task = asyncio.create_task(self._bridge.handle(request))
        shutdown_task = asyncio.create_task(self._shutdown.wait())
        try:
            done, _pending = await asyncio.wait({next_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (next_task, shutdown_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        # A submission already handed out must reach the child
        if next_task in done:
            return next_task.result()
        return ShutdownDirective().model_dump()

    async def _send(self, reply: Reply) -> None:
        writer = self._process.stdin
        if writer is None:
            raise ProtocolError("Child stdin is not piped", context={"context_id": self._context_id})
        try:
            data = reply.model_dump_json()
        except PydanticSerializationError as e:
            data = Reply.failure(reply.seq, ProtocolError(f"Reply is not JSON serializable: {e}")).model_dump_json()
        writer.write(data.encode() + b"\n")
        await writer.drain()
