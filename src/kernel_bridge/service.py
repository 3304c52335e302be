"""Submission service: FIFO dispatch of code to the supervised child.

Host-facing calls are synchronous and thread-safe.  Results arrive as
``concurrent.futures.Future`` objects.  The supervisor and side channel live
on a dedicated daemon thread running an asyncio event loop; host calls cross
into it with ``run_coroutine_threadsafe`` / ``call_soon_threadsafe``.

The child pulls work one submission at a time, so at most one submission is
in flight.  The head of the queue stays pending until its result arrives; if
the child dies mid-execution and is relaunched, the head is delivered again.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import Coroutine
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, TypeVar

from kernel_bridge._logging import get_logger
from kernel_bridge.bridge import Bridge
from kernel_bridge.config import BridgeConfig
from kernel_bridge.constants import LOOP_THREAD_JOIN_TIMEOUT_SECONDS, MAX_CODE_SIZE
from kernel_bridge.exceptions import (
    InterpreterStoppedError,
    ProcessTerminatedError,
    ProtocolError,
    QueueFullError,
)
from kernel_bridge.models import ProcessState, RawOutput, Submission
from kernel_bridge.supervisor import ProcessEvent, ProcessSupervisor

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class PendingEntry:
    """A submission and the future its result resolves."""

    submission: Submission
    future: Future[RawOutput]
    deliveries: int = 0


class _LoopThread:
    """Daemon thread running the event loop that hosts the supervisor."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def start(self) -> None:
        self._thread.start()
        self._started.wait()

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on the loop and block the calling thread for its result."""
        if threading.current_thread() is self._thread:
            coro.close()
            raise RuntimeError(f"{self._name}: blocking call from the loop thread would deadlock")
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def call_soon(self, callback: Any, *args: Any) -> None:
        self._loop.call_soon_threadsafe(callback, *args)

    def stop(self) -> None:
        if self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(LOOP_THREAD_JOIN_TIMEOUT_SECONDS)
        if self._thread.is_alive():
            logger.warning("Supervisor thread did not exit", extra={"thread": self._name})

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        try:
            self._loop.run_forever()
        finally:
            leftovers = asyncio.all_tasks(self._loop)
            for task in leftovers:
                task.cancel()
            if leftovers:
                self._loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.run_until_complete(self._loop.shutdown_default_executor())
            self._loop.close()


class SubmissionService:
    """Queue code for the child and hand back futures for the results.

    Thread-safety: submit_code(), start() and stop() may be called from any
    host thread.  next_submission() and complete_submission() are called by
    the Bridge on the loop thread.
    """

    def __init__(
        self,
        bridge: Bridge,
        config: BridgeConfig,
        *,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self._bridge = bridge
        self._config = config
        self._supervisor = supervisor if supervisor is not None else ProcessSupervisor(bridge, config)
        self._supervisor.add_monitor(self._on_process_event)

        # Guards the pending table and the stopping/failure flags
        self._lock = threading.Lock()
        # Serializes start()/stop() across host threads
        self._lifecycle_lock = threading.RLock()

        self._pending: deque[PendingEntry] = deque()
        self._in_flight: str | None = None
        self._stopping = False
        self._failure: ProcessTerminatedError | None = None

        self._loop_thread: _LoopThread | None = None
        self._work_available: asyncio.Event | None = None

        bridge.attach(self)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def bridge(self) -> Bridge:
        return self._bridge

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def is_running(self) -> bool:
        """True while the child is up and the service accepts work."""
        return self._failure is None and not self._stopping and self._supervisor.state is ProcessState.RUNNING

    @property
    def pending_count(self) -> int:
        """Submissions awaiting a result (including the one in flight)."""
        with self._lock:
            return len(self._pending)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Launch the child if it isn't running. Idempotent.

        Blocks until the child reports ready.

        Raises:
            ProcessTerminatedError: Service is in the failed state; call stop() first.
            InterpreterStoppedError: stop() is in progress.
            LaunchError: Runtime binary missing or not executable.
            StartupError: Child didn't report ready in time.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._failure is not None:
                    raise ProcessTerminatedError(
                        f"{self._failure.message}; call stop() before starting again",
                        context=self._failure.context,
                        exit_code=self._failure.exit_code,
                    )
                if self._stopping:
                    raise InterpreterStoppedError("Interpreter is stopping")
            if self.is_running:
                return

            created = self._loop_thread is None
            if created:
                self._loop_thread = _LoopThread(name="kernel-bridge-supervisor")
                self._loop_thread.start()
                self._work_available = self._loop_thread.run(_new_event())
            assert self._loop_thread is not None

            try:
                self._loop_thread.run(self._supervisor.start())
            except BaseException:
                with self._lock:
                    idle = not self._pending
                if created and idle:
                    self._shutdown_loop_thread()
                raise
            logger.info("Submission service started", extra={"launch_count": self._supervisor.launch_count})

    def stop(self) -> None:
        """Stop the child, cancel pending submissions and clear shared state. Idempotent.

        Every submission still pending fails with InterpreterStoppedError and
        no result is delivered for it afterwards.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._loop_thread is None and self._failure is None and not self._pending:
                    return
                self._stopping = True
                cancelled = list(self._pending)
                self._pending.clear()
                self._in_flight = None

            for entry in cancelled:
                entry.future.set_exception(
                    InterpreterStoppedError(
                        "Interpreter stopped before the submission completed",
                        context={"submission_id": entry.submission.id},
                    )
                )

            try:
                if self._loop_thread is not None:
                    self._loop_thread.run(self._supervisor.stop())
            finally:
                self._shutdown_loop_thread()
                self._bridge.state.clear()
                with self._lock:
                    self._stopping = False
                    self._failure = None
            logger.info("Submission service stopped", extra={"cancelled": len(cancelled)})

    def _shutdown_loop_thread(self) -> None:
        if self._loop_thread is not None:
            self._loop_thread.stop()
        self._loop_thread = None
        self._work_available = None

    # -------------------------------------------------------------------------
    # Host side
    # -------------------------------------------------------------------------

    def submit_code(self, code: str, *, silent: bool = False) -> Future[RawOutput]:
        """Queue code for execution and return a future for its raw output.

        Starts the service first if it isn't running (that start blocks until
        the child is ready).  The returned future cannot be cancelled.

        Raises:
            ValueError: Code exceeds the maximum submission size.
            QueueFullError: max_pending_submissions already awaiting results.
            InterpreterStoppedError: stop() is in progress.
            ProcessTerminatedError: Service is in the failed state.
        """
        if len(code) > MAX_CODE_SIZE:
            raise ValueError(f"Code exceeds maximum size of {MAX_CODE_SIZE} characters ({len(code)})")
        if not self.is_running:
            self.start()

        submission = Submission(code=code, silent=silent)
        future: Future[RawOutput] = Future()
        future.set_running_or_notify_cancel()

        with self._lock:
            if self._stopping:
                raise InterpreterStoppedError("Interpreter is stopping")
            if self._failure is not None:
                raise ProcessTerminatedError(
                    self._failure.message, context=self._failure.context, exit_code=self._failure.exit_code
                )
            if len(self._pending) >= self._config.max_pending_submissions:
                raise QueueFullError(
                    f"{len(self._pending)} submissions already pending",
                    context={"max_pending_submissions": self._config.max_pending_submissions},
                )
            self._pending.append(PendingEntry(submission=submission, future=future))
            depth = len(self._pending)
            loop_thread = self._loop_thread
            work_available = self._work_available

        if loop_thread is not None and work_available is not None:
            loop_thread.call_soon(work_available.set)
        logger.debug("Submission queued", extra={"submission_id": submission.id, "pending": depth})
        return future

    # -------------------------------------------------------------------------
    # Child side (loop thread, via Bridge)
    # -------------------------------------------------------------------------

    async def next_submission(self) -> Submission:
        """Hand the head of the queue to the child, waiting for one if empty."""
        while True:
            work_available = self._work_available
            if work_available is None:
                raise ProtocolError("Submission service is not running")
            with self._lock:
                if self._in_flight is not None:
                    raise ProtocolError(
                        "Child asked for work while a submission is in flight",
                        context={"in_flight": self._in_flight},
                    )
                if self._pending:
                    entry = self._pending[0]
                    entry.deliveries += 1
                    self._in_flight = entry.submission.id
                    if entry.deliveries > 1:
                        logger.info(
                            "Redelivering submission after relaunch",
                            extra={"submission_id": entry.submission.id, "deliveries": entry.deliveries},
                        )
                    return entry.submission
                # Cleared under the lock so a concurrent submit's set() is never lost
                work_available.clear()
            await work_available.wait()

    def complete_submission(self, submission_id: str, output: RawOutput) -> None:
        """Resolve the in-flight submission with the child's output."""
        with self._lock:
            head = self._pending[0] if self._pending else None
            if head is None or self._in_flight != submission_id or head.submission.id != submission_id:
                raise ProtocolError(
                    "Completion does not match the in-flight submission",
                    context={"submission_id": submission_id, "in_flight": self._in_flight},
                )
            self._pending.popleft()
            self._in_flight = None
        head.future.set_result(output)
        logger.debug(
            "Submission completed",
            extra={"submission_id": submission_id, "status": output.status.value},
        )

    # -------------------------------------------------------------------------
    # Process monitor (loop thread)
    # -------------------------------------------------------------------------

    def _on_process_event(self, event: ProcessEvent) -> None:
        if event.new_state is ProcessState.RUNNING:
            return
        with self._lock:
            # The in-flight head is delivered again to the next child
            self._in_flight = None
            if event.will_restart or self._stopping:
                return
            entries = list(self._pending)
            self._pending.clear()
            if event.new_state is ProcessState.CRASHED:
                self._failure = ProcessTerminatedError(
                    "Runtime process terminated and was not restarted",
                    context={"exit_code": event.exit_code, "generation": event.generation},
                    exit_code=event.exit_code,
                )

        if event.error is not None:
            message = f"Runtime relaunch failed: {event.error.message}"
        elif event.new_state is ProcessState.CRASHED:
            message = f"Runtime process crashed (exit code {event.exit_code})"
        else:
            message = "Runtime process exited"
        for entry in entries:
            entry.future.set_exception(
                ProcessTerminatedError(
                    message,
                    context={"submission_id": entry.submission.id, "generation": event.generation},
                    exit_code=event.exit_code,
                )
            )
        if entries:
            logger.warning("Failed pending submissions", extra={"count": len(entries), "reason": message})


async def _new_event() -> asyncio.Event:
    return asyncio.Event()
