"""kernel-bridge: Run code in an external runtime process on behalf of a notebook kernel.

The host queues code, a supervised child process pulls it one submission at
a time over a JSON-lines side channel on its stdio, and results come back as
normalized (Result, payload) pairs.  Host and child share a bounded key/value
store and a registry of host callbacks.

Quick Start:
    ```python
    from kernel_bridge import BridgeInterpreter

    with BridgeInterpreter() as interp:
        result, payload = interp.interpret("1+1")
        print(result, payload.text)  # Result.SUCCESS 2
    ```

Sharing state and callbacks with the child:
    ```python
    from kernel_bridge import BridgeConfig, BridgeInterpreter, CallbackBackend

    callbacks = CallbackBackend()

    @callbacks.register("greet")
    def greet(name: str) -> str:
        return f"hello {name}"

    with BridgeInterpreter(config=BridgeConfig(state_capacity=100), callbacks=callbacks) as interp:
        interp.state.put("rows", 3)
        interp.interpret("bridge.put('seen', bridge.get('rows') + 1)")
        interp.interpret("bridge.invoke('greet', 'child')")  # 'hello child'
    ```

Requirements:
    - Python 3.12+
    - A runtime speaking the side-channel protocol (the bundled
      ``kernel_bridge.worker`` is used by default)
"""

from kernel_bridge.bridge import Bridge, KernelLike
from kernel_bridge.callbacks import CallbackBackend
from kernel_bridge.config import BridgeConfig
from kernel_bridge.exceptions import (
    BridgeError,
    CallbackArgumentError,
    CallbackError,
    CapacityExceededError,
    InterpreterStoppedError,
    InterpretTimeoutError,
    InvalidStateTransitionError,
    LaunchError,
    PermanentError,
    ProcessTerminatedError,
    ProtocolError,
    QueueFullError,
    StartupError,
    StateKeyNotFoundError,
    TransientError,
    UnknownCallbackError,
    UnsupportedOperationError,
)
from kernel_bridge.interpreter import BridgeInterpreter, Capability
from kernel_bridge.models import (
    ExecuteFailure,
    ExecuteOutput,
    NormalizedResult,
    OutputStatus,
    ProcessState,
    RawOutput,
    Result,
    Submission,
)
from kernel_bridge.service import SubmissionService
from kernel_bridge.shared_state import SharedState
from kernel_bridge.supervisor import ProcessEvent, ProcessHandle, ProcessSupervisor
from kernel_bridge.transformer import ResultTransformer

__all__ = [
    "Bridge",
    "BridgeConfig",
    "BridgeError",
    "BridgeInterpreter",
    "CallbackArgumentError",
    "CallbackBackend",
    "CallbackError",
    "Capability",
    "CapacityExceededError",
    "ExecuteFailure",
    "ExecuteOutput",
    "InterpretTimeoutError",
    "InterpreterStoppedError",
    "InvalidStateTransitionError",
    "KernelLike",
    "LaunchError",
    "NormalizedResult",
    "OutputStatus",
    "PermanentError",
    "ProcessEvent",
    "ProcessHandle",
    "ProcessState",
    "ProcessSupervisor",
    "ProcessTerminatedError",
    "ProtocolError",
    "QueueFullError",
    "RawOutput",
    "Result",
    "ResultTransformer",
    "SharedState",
    "StartupError",
    "StateKeyNotFoundError",
    "Submission",
    "SubmissionService",
    "TransientError",
    "UnknownCallbackError",
    "UnsupportedOperationError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kernel-bridge")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
