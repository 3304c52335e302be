"""Bridge configuration for kernel-bridge.

BridgeConfig holds every option the interpreter needs: the shared-state
bound, the restart policy, queue backpressure and the child runtime command.

Example:
    ```python
    from kernel_bridge import BridgeConfig, BridgeInterpreter

    # Default configuration (bundled Python worker, restarts enabled)
    with BridgeInterpreter() as interp:
        result, payload = interp.interpret("1+1")

    # Custom configuration
    config = BridgeConfig(
        state_capacity=1000,
        restart_on_failure=False,
        runtime_command=("/opt/runtime/bin/repl", "--bridge"),
    )
    ```
"""

from __future__ import annotations

import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from kernel_bridge import constants


class BridgeConfig(BaseModel):
    """Configuration for BridgeInterpreter / SubmissionService.

    Attributes:
        state_capacity: Maximum entries in the shared state. A put beyond it
            fails with CapacityExceededError. Default: 500.
        restart_on_failure: Relaunch the child once per crash. Default: True.
        restart_on_completion: Relaunch the child once per clean exit. Default: True.
        max_pending_submissions: Submissions that may await a result at once.
            Beyond it submit_code() raises QueueFullError. Default: 500.
        startup_timeout_seconds: Time allowed for the child to say hello.
        stop_grace_seconds: Time allowed for a graceful exit on stop().
        kill_timeout_seconds: Time allowed after SIGTERM / SIGKILL.
        interpret_timeout_seconds: Optional bound on interpret()'s wait.
            None (default) waits indefinitely and never abandons a submission.
        runtime_command: argv of the child runtime. None resolves via
            KERNEL_BRIDGE_RUNTIME_COMMAND, then the bundled Python worker.
        runtime_env: Extra environment variables for the child.
        working_dir: Working directory for the child (None = inherit).
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Shared state / queue
    state_capacity: int = Field(
        default=constants.DEFAULT_STATE_CAPACITY,
        ge=1,
        description="Maximum entries in the shared state",
    )
    max_pending_submissions: int = Field(
        default=constants.DEFAULT_MAX_PENDING_SUBMISSIONS,
        ge=1,
        description="Maximum submissions awaiting a result",
    )

    # Restart policy
    restart_on_failure: bool = Field(default=True, description="Relaunch once per crash")
    restart_on_completion: bool = Field(default=True, description="Relaunch once per clean exit")

    # Timeouts
    startup_timeout_seconds: float = Field(
        default=constants.DEFAULT_STARTUP_TIMEOUT_SECONDS,
        gt=0,
        description="Spawn-to-hello timeout",
    )
    stop_grace_seconds: float = Field(
        default=constants.DEFAULT_STOP_GRACE_SECONDS,
        ge=0,
        description="Graceful exit window on stop()",
    )
    kill_timeout_seconds: float = Field(
        default=constants.DEFAULT_KILL_TIMEOUT_SECONDS,
        gt=0,
        description="Wait after SIGTERM / SIGKILL",
    )
    interpret_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Optional interpret() wait bound (None = wait indefinitely)",
    )

    # Child runtime
    runtime_command: tuple[str, ...] | None = Field(
        default=None,
        min_length=1,
        description="Child runtime argv (None = env override or bundled worker)",
    )
    runtime_env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the child",
    )
    working_dir: Path | None = Field(
        default=None,
        description="Child working directory (None = inherit)",
    )

    def get_runtime_command(self) -> list[str]:
        """Get the child runtime argv, resolving defaults.

        Resolution order:
        1. Explicit runtime_command from config
        2. KERNEL_BRIDGE_RUNTIME_COMMAND environment variable (JSON list)
        3. The bundled Python worker: ``<python> -m kernel_bridge.worker``

        Returns:
            argv list for asyncio.create_subprocess_exec
        """
        from kernel_bridge.settings import Settings  # noqa: PLC0415

        if self.runtime_command is not None:
            return list(self.runtime_command)
        if env_command := Settings().runtime_command:
            return list(env_command)
        return [sys.executable, "-u", "-m", "kernel_bridge.worker"]
