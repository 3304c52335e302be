"""Interpreter facade: the surface a notebook kernel calls.

Example:
    ```python
    from kernel_bridge import BridgeInterpreter, Result

    with BridgeInterpreter() as interp:
        result, payload = interp.interpret("1+1")
        assert result is Result.SUCCESS
        print(payload.text)  # 2
    ```
"""

from __future__ import annotations

from enum import Enum
from types import TracebackType
from typing import Any, Self

from kernel_bridge._logging import get_logger
from kernel_bridge.bridge import Bridge, KernelLike
from kernel_bridge.callbacks import CallbackBackend
from kernel_bridge.config import BridgeConfig
from kernel_bridge.exceptions import InterpretTimeoutError, UnsupportedOperationError
from kernel_bridge.models import ExecuteFailure, ExecuteOutput, Result
from kernel_bridge.service import SubmissionService
from kernel_bridge.shared_state import SharedState
from kernel_bridge.supervisor import ProcessSupervisor
from kernel_bridge.transformer import ResultTransformer

logger = get_logger(__name__)


class Capability(str, Enum):
    """Operations of the interpreter contract."""

    INTERPRET = "interpret"
    START = "start"
    STOP = "stop"
    CLASS_LOADER = "class_loader"
    LAST_EXECUTION_VARIABLE_NAME = "last_execution_variable_name"
    READ = "read"
    COMPLETION = "completion"
    BIND = "bind"
    DO_QUIETLY = "do_quietly"
    ADD_JARS = "add_jars"
    INTERRUPT = "interrupt"
    UPDATE_PRINT_STREAMS = "update_print_streams"
    CLASS_SERVER_URI = "class_server_uri"


class BridgeInterpreter:
    """Runs code in an external runtime process on behalf of a host kernel.

    Owns one SharedState, one Bridge and one SubmissionService (with its
    ProcessSupervisor) for its whole lifetime.  The shared state survives
    child relaunches and is only cleared by stop().

    Operations with no meaning for an external runtime either return a
    neutral value (read, completion, last_execution_variable_name) or raise
    UnsupportedOperationError; supports() reports which is which.
    """

    CAPABILITIES: frozenset[Capability] = frozenset(
        {Capability.INTERPRET, Capability.START, Capability.STOP, Capability.CLASS_LOADER}
    )

    def __init__(
        self,
        kernel: KernelLike | None = None,
        config: BridgeConfig | None = None,
        *,
        callbacks: CallbackBackend | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._state = SharedState(self._config.state_capacity)
        self._bridge = Bridge(self._state, callbacks, kernel)
        self._supervisor = ProcessSupervisor(self._bridge, self._config)
        self._service = SubmissionService(self._bridge, self._config, supervisor=self._supervisor)
        self._transformer = ResultTransformer()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def state(self) -> SharedState:
        """Shared state visible to host and child."""
        return self._state

    @property
    def callbacks(self) -> CallbackBackend:
        return self._bridge.callbacks

    @property
    def bridge(self) -> Bridge:
        return self._bridge

    @property
    def service(self) -> SubmissionService:
        return self._service

    @property
    def is_running(self) -> bool:
        return self._service.is_running

    @classmethod
    def supports(cls, capability: Capability) -> bool:
        """Whether ``capability`` is implemented rather than neutral or unsupported."""
        return capability in cls.CAPABILITIES

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def interpret(self, code: str, silent: bool = False) -> tuple[Result, ExecuteOutput | ExecuteFailure]:
        """Run ``code`` in the child and wait for its normalized result.

        Starts the interpreter first if needed.  Submissions from concurrent
        callers are executed in the order they were queued.

        Raises:
            InterpretTimeoutError: interpret_timeout_seconds elapsed (the
                submission stays queued).
            InterpreterStoppedError: stop() ran before the result arrived.
            ProcessTerminatedError: Child died with no restart configured.
        """
        if not self._service.is_running:
            self._service.start()
        future = self._transformer.transform_future(self._service.submit_code(code, silent=silent))
        timeout = self._config.interpret_timeout_seconds
        try:
            normalized = future.result(timeout=timeout)
        except TimeoutError:
            raise InterpretTimeoutError(
                f"No result within {timeout}s",
                context={"interpret_timeout_seconds": timeout},
            ) from None
        return normalized.as_tuple()

    def start(self) -> Self:
        """Start the child runtime if it isn't running."""
        self._service.start()
        return self

    def stop(self) -> Self:
        """Stop the child, cancel pending submissions and clear shared state."""
        self._service.stop()
        return self

    def __enter__(self) -> Self:
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()

    def class_loader(self) -> Any:
        """Loader of the interpreter's own module."""
        return __spec__.loader if __spec__ is not None else None

    # -------------------------------------------------------------------------
    # Neutral defaults
    # -------------------------------------------------------------------------

    def last_execution_variable_name(self) -> str | None:
        return None

    def read(self, variable_name: str) -> Any:
        return None

    def completion(self, code: str, pos: int) -> tuple[int, list[str]]:
        return pos, []

    # -------------------------------------------------------------------------
    # Unsupported
    # -------------------------------------------------------------------------

    def bind(self, variable_name: str, type_name: str, value: Any, modifiers: list[str] | None = None) -> None:
        self._unsupported(Capability.BIND)

    def do_quietly(self, code: str) -> Any:
        self._unsupported(Capability.DO_QUIETLY)

    def add_jars(self, *paths: str) -> None:
        self._unsupported(Capability.ADD_JARS)

    def interrupt(self) -> Self:
        self._unsupported(Capability.INTERRUPT)

    def update_print_streams(self, stdout: Any, stderr: Any) -> None:
        self._unsupported(Capability.UPDATE_PRINT_STREAMS)

    def class_server_uri(self) -> str:
        self._unsupported(Capability.CLASS_SERVER_URI)

    def _unsupported(self, capability: Capability) -> Any:
        raise UnsupportedOperationError(
            f"{capability.value} is not supported by {type(self).__name__}",
            context={"capability": capability.value},
        )
