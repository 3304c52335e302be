"""Process supervisor for the external runtime.

Owns the child process: launch, readiness, crash/exit detection, the
restart policy and teardown.  No other component signals or kills it.

State machine:

    NOT_STARTED ──start()──▶ RUNNING ──exit 0──▶ STOPPED ──restart_on_completion──▶ RUNNING
                               │                    ▲
                               │ exit != 0          │ stop()
                               ▼                    │
                            CRASHED ───────────────-┘
                               │
                               └──restart_on_failure──▶ RUNNING

Exactly one relaunch is attempted per crash/exit event.  A relaunch that
fails leaves the supervisor CRASHED and is reported to monitors with
``will_restart=False``; crash loops are not masked by silent retries.

All coroutines run on the service's event-loop thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import os
from collections.abc import Callable
from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from kernel_bridge._logging import get_logger
from kernel_bridge.bridge import Bridge
from kernel_bridge.channel import ProcessChannel
from kernel_bridge.config import BridgeConfig
from kernel_bridge.exceptions import BridgeError, InvalidStateTransitionError, LaunchError, StartupError
from kernel_bridge.models import ProcessState
from kernel_bridge.platform_utils import ProcessWrapper
from kernel_bridge.protocol import HelloRequest
from kernel_bridge.settings import Settings
from kernel_bridge.subprocess_utils import drain_stderr, log_task_exception

logger = get_logger(__name__)

VALID_STATE_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.NOT_STARTED: {ProcessState.RUNNING},
    ProcessState.RUNNING: {ProcessState.STOPPED, ProcessState.CRASHED},
    ProcessState.STOPPED: {ProcessState.RUNNING, ProcessState.CRASHED},
    ProcessState.CRASHED: {ProcessState.RUNNING, ProcessState.STOPPED},
}


@dataclass(frozen=True, slots=True)
class ProcessHandle:
    """Snapshot of the supervised process."""

    pid: int | None
    state: ProcessState
    restart_on_failure: bool
    restart_on_completion: bool
    generation: int
    launch_count: int
    exit_code: int | None


@dataclass(frozen=True, slots=True)
class ProcessEvent:
    """Emitted to monitors on every state transition.

    Attributes:
        old_state: State before the transition
        new_state: State after the transition
        generation: Launch generation the event refers to
        exit_code: Child exit status when the event is an exit
        will_restart: A relaunch follows this event
        error: Launch failure when a relaunch could not be completed
    """

    old_state: ProcessState
    new_state: ProcessState
    generation: int
    exit_code: int | None = None
    will_restart: bool = False
    error: BridgeError | None = None


ProcessMonitor = Callable[[ProcessEvent], None]


class ProcessSupervisor:
    """Supervises one external runtime process at a time.

    The child is launched with its stdin/stdout wired to a ProcessChannel
    serving the shared Bridge, and its stderr drained into the logger.
    """

    def __init__(self, bridge: Bridge, config: BridgeConfig, settings: Settings | None = None) -> None:
        self._bridge = bridge
        self._config = config
        self._settings = settings or Settings()
        self._state = ProcessState.NOT_STARTED
        self._process: ProcessWrapper | None = None
        self._channel: ProcessChannel | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._monitors: list[ProcessMonitor] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lifecycle_lock = asyncio.Lock()
        self._stopping = False
        self._generation = 0
        self._launch_count = 0
        self._exit_code: int | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        """Current process state."""
        return self._state

    @property
    def launch_count(self) -> int:
        """Number of successful launches (initial start plus relaunches)."""
        return self._launch_count

    @property
    def handle(self) -> ProcessHandle:
        return ProcessHandle(
            pid=self._process.pid if self._process is not None else None,
            state=self._state,
            restart_on_failure=self._config.restart_on_failure,
            restart_on_completion=self._config.restart_on_completion,
            generation=self._generation,
            launch_count=self._launch_count,
            exit_code=self._exit_code,
        )

    def add_monitor(self, monitor: ProcessMonitor) -> None:
        """Register a callback invoked (on the loop thread) for every transition."""
        self._monitors.append(monitor)

    def remove_monitor(self, monitor: ProcessMonitor) -> None:
        with contextlib.suppress(ValueError):
            self._monitors.remove(monitor)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the child if it isn't running.

        Raises:
            LaunchError: Runtime binary missing or not executable.
            StartupError: Child didn't say hello within the startup timeout.
        """
        self._bind_loop()
        async with self._lifecycle_lock:
            if self._state is ProcessState.RUNNING:
                return
            self._stopping = False
            await self._launch()

    async def stop(self) -> None:
        """Stop the child: shutdown directive, grace period, then SIGTERM -> SIGKILL.

        Forces STOPPED and suppresses any pending auto-restart. Idempotent.
        """
        if self._state is ProcessState.NOT_STARTED:
            return
        self._stopping = True
        if self._channel is not None:
            self._channel.request_shutdown()

        # The watcher may be mid-relaunch; cancelling it aborts the relaunch
        watch_task = self._watch_task
        self._watch_task = None
        if watch_task is not None and watch_task is not asyncio.current_task():
            watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch_task

        async with self._lifecycle_lock:
            process = self._process
            context_id = f"gen-{self._generation}"
            if process is not None and process.returncode is None:
                try:
                    await process.wait_with_timeout(self._config.stop_grace_seconds)
                    logger.debug("Runtime exited after shutdown directive", extra={"context_id": context_id})
                except TimeoutError:
                    logger.info(
                        "Runtime still running after grace period, terminating",
                        extra={"context_id": context_id, "grace_seconds": self._config.stop_grace_seconds},
                    )
                    await self._terminate(process, context_id)
            if process is not None:
                self._exit_code = process.returncode
            await self._teardown_instance()
            if self._state is not ProcessState.STOPPED:
                self._transition(ProcessState.STOPPED, exit_code=self._exit_code)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _bind_loop(self) -> None:
        """Re-create loop-affine primitives when started on a new event loop."""
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._lifecycle_lock = asyncio.Lock()

    async def _launch(self) -> None:
        """Spawn, wait for hello, transition to RUNNING. Caller holds the lifecycle lock."""
        generation = self._generation + 1
        context_id = f"gen-{generation}"
        process = await self._spawn(context_id)

        channel = ProcessChannel(
            process,
            self._bridge,
            context_id=context_id,
            on_fatal=functools.partial(self._terminate, process, context_id),
        )
        channel.start()
        stderr_task = asyncio.create_task(
            drain_stderr(process, process_name="runtime", context_id=context_id),
            name=f"runtime-stderr-{context_id}",
        )
        stderr_task.add_done_callback(log_task_exception)

        try:
            hello = await self._wait_ready(process, channel, context_id)
        except BaseException:
            await channel.close()
            await self._terminate(process, context_id)
            stderr_task.cancel()
            raise

        self._generation = generation
        self._launch_count += 1
        self._process = process
        self._channel = channel
        self._stderr_task = stderr_task
        self._exit_code = None
        logger.info(
            "Runtime ready",
            extra={"context_id": context_id, "pid": process.pid, "child_pid": hello.pid, "launch_count": self._launch_count},
        )
        self._transition(ProcessState.RUNNING)

        self._watch_task = asyncio.create_task(self._watch(process, generation), name=f"runtime-watch-{context_id}")
        self._watch_task.add_done_callback(log_task_exception)

    async def _spawn(self, context_id: str) -> ProcessWrapper:
        command = self._config.get_runtime_command()
        env = {**os.environ, **self._config.runtime_env}
        logger.debug("Spawning runtime", extra={"context_id": context_id, "command": command})
        try:
            # Fork can fail transiently with EAGAIN under process/thread pressure
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(BlockingIOError),
                stop=stop_after_attempt(self._settings.launch_attempts),
                wait=wait_random_exponential(multiplier=0.05, max=1.0),
                reraise=True,
            ):
                with attempt:
                    proc = await asyncio.create_subprocess_exec(
                        *command,
                        stdin=asyncio.subprocess.PIPE,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        env=env,
                        cwd=self._config.working_dir,
                        limit=self._settings.stream_buffer_limit,
                        start_new_session=True,
                    )
        except OSError as e:
            raise LaunchError(
                f"Cannot launch runtime {command[0]!r}: {e}",
                context={"context_id": context_id, "command": command, "errno": e.errno},
            ) from e
        return ProcessWrapper(proc)

    async def _wait_ready(self, process: ProcessWrapper, channel: ProcessChannel, context_id: str) -> HelloRequest:
        """Race the child's hello against its death, bounded by the startup timeout."""
        timeout = self._config.startup_timeout_seconds
        death_task = asyncio.create_task(process.wait())
        ready_task = asyncio.create_task(channel.wait_ready())
        try:
            async with asyncio.timeout(timeout):
                done, _pending = await asyncio.wait({death_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
        except TimeoutError:
            raise StartupError(
                f"Runtime did not report ready within {timeout}s",
                context={"context_id": context_id, "startup_timeout_seconds": timeout},
            ) from None
        finally:
            for task in (death_task, ready_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if ready_task in done:
            return ready_task.result()
        exit_code = death_task.result()
        raise StartupError(
            f"Runtime exited during startup (exit code {exit_code})",
            context={"context_id": context_id, "exit_code": exit_code},
        )

    async def _watch(self, process: ProcessWrapper, generation: int) -> None:
        """Wait for the child to exit and apply the restart policy."""
        exit_code = await process.wait()
        async with self._lifecycle_lock:
            if self._stopping or generation != self._generation:
                return
            self._exit_code = exit_code
            await self._teardown_instance()

            if exit_code == 0:
                will_restart = self._config.restart_on_completion
                logger.info(
                    "Runtime exited cleanly",
                    extra={"context_id": f"gen-{generation}", "will_restart": will_restart},
                )
                self._transition(ProcessState.STOPPED, exit_code=exit_code, will_restart=will_restart)
            else:
                will_restart = self._config.restart_on_failure
                logger.warning(
                    "Runtime crashed",
                    extra={"context_id": f"gen-{generation}", "exit_code": exit_code, "will_restart": will_restart},
                )
                self._transition(ProcessState.CRASHED, exit_code=exit_code, will_restart=will_restart)

            if not will_restart:
                return
            try:
                await self._launch()
            except (LaunchError, StartupError) as e:
                logger.error(
                    "Runtime relaunch failed",
                    extra={"context_id": f"gen-{generation + 1}", "error": e.message, "error_type": type(e).__name__},
                )
                self._relaunch_failed(e)

    async def _terminate(self, process: ProcessWrapper, context_id: str) -> None:
        """Signal the child until it exits: SIGTERM, then SIGKILL.

        Each signal gets ``kill_timeout_seconds`` to take effect.  The exit is
        reaped here; ``_watch`` sees it and applies the restart policy unless
        the supervisor is stopping.  Logs failures, never raises.
        """
        timeout = self._config.kill_timeout_seconds
        for signal_name, send in (("SIGTERM", process.terminate), ("SIGKILL", process.kill)):
            if process.returncode is not None:
                return
            try:
                await send()
                await process.wait_with_timeout(timeout)
            except ProcessLookupError:
                return
            except TimeoutError:
                logger.warning(
                    f"Runtime still alive after {signal_name}",
                    extra={"context_id": context_id, "pid": process.pid, "timeout_seconds": timeout},
                )
                continue
            except OSError as e:
                logger.error(
                    f"Cannot send {signal_name} to runtime",
                    extra={"context_id": context_id, "pid": process.pid, "error": str(e)},
                )
                return
            logger.debug(
                f"Runtime exited after {signal_name}",
                extra={"context_id": context_id, "returncode": process.returncode},
            )
            return
        logger.error("Runtime survived SIGKILL", extra={"context_id": context_id, "pid": process.pid})

    def _relaunch_failed(self, error: BridgeError) -> None:
        if self._state is ProcessState.CRASHED:
            self._emit(
                ProcessEvent(
                    old_state=ProcessState.CRASHED,
                    new_state=ProcessState.CRASHED,
                    generation=self._generation,
                    exit_code=self._exit_code,
                    error=error,
                )
            )
        else:
            self._transition(ProcessState.CRASHED, exit_code=self._exit_code, error=error)

    async def _teardown_instance(self) -> None:
        """Release the channel and stderr drain of the current child."""
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None
        self._process = None

    def _transition(
        self,
        new_state: ProcessState,
        *,
        exit_code: int | None = None,
        will_restart: bool = False,
        error: BridgeError | None = None,
    ) -> None:
        """Move to ``new_state`` (validated) and notify monitors.

        Raises:
            InvalidStateTransitionError: Transition not allowed from the current state
        """
        allowed = VALID_STATE_TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise InvalidStateTransitionError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                context={
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed),
                },
            )
        old_state = self._state
        self._state = new_state
        logger.debug(
            "Runtime state transition",
            extra={"old_state": old_state.value, "new_state": new_state.value, "generation": self._generation},
        )
        self._emit(
            ProcessEvent(
                old_state=old_state,
                new_state=new_state,
                generation=self._generation,
                exit_code=exit_code,
                will_restart=will_restart,
                error=error,
            )
        )

    def _emit(self, event: ProcessEvent) -> None:
        for monitor in list(self._monitors):
            try:
                monitor(event)
            except Exception:
                logger.error("Process monitor failed", extra={"event": event}, exc_info=True)
