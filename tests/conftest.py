"""Shared pytest fixtures for kernel-bridge tests.

Process tests launch the real bundled worker with the running interpreter
(``sys.executable -u -m kernel_bridge.worker``).  The source tree is put on
the child's PYTHONPATH so the worker imports without an installed package.
"""

import asyncio
import os
import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from kernel_bridge.bridge import Bridge
from kernel_bridge.config import BridgeConfig
from kernel_bridge.interpreter import BridgeInterpreter
from kernel_bridge.models import RawOutput, Submission
from kernel_bridge.shared_state import SharedState

SRC_DIR = Path(__file__).resolve().parent.parent / "src"

WORKER_COMMAND = (sys.executable, "-u", "-m", "kernel_bridge.worker")

# Generous bounds: process tests share CI runners with other jobs
RESULT_TIMEOUT_S = 30.0


def _child_env() -> dict[str, str]:
    pythonpath = os.pathsep.join(p for p in (str(SRC_DIR), os.environ.get("PYTHONPATH", "")) if p)
    return {"PYTHONPATH": pythonpath}


class IdleSource:
    """SubmissionSource that never hands out work (supervisor-only tests)."""

    def __init__(self) -> None:
        self.completed: list[tuple[str, RawOutput]] = []

    async def next_submission(self) -> Submission:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    def complete_submission(self, submission_id: str, output: RawOutput) -> None:
        self.completed.append((submission_id, output))


@pytest.fixture
def make_config() -> Callable[..., BridgeConfig]:
    """Factory for BridgeConfig wired to the bundled worker with short timeouts.

    Usage:
        def test_something(make_config) -> None:
            config = make_config(restart_on_failure=False)
    """

    def _make(**overrides: object) -> BridgeConfig:
        values: dict[str, object] = {
            "runtime_command": WORKER_COMMAND,
            "runtime_env": _child_env(),
            "startup_timeout_seconds": 30.0,
            "stop_grace_seconds": 2.0,
            "kill_timeout_seconds": 2.0,
        }
        values.update(overrides)
        return BridgeConfig(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def bridge_config(make_config: Callable[..., BridgeConfig]) -> BridgeConfig:
    return make_config()


@pytest.fixture
def idle_bridge() -> Bridge:
    """Bridge with an IdleSource attached: the child stays parked on ``next``."""
    bridge = Bridge(SharedState(10))
    bridge.attach(IdleSource())
    return bridge


@pytest.fixture
def interpreter(bridge_config: BridgeConfig) -> Iterator[BridgeInterpreter]:
    """Started BridgeInterpreter, stopped on teardown."""
    interp = BridgeInterpreter(config=bridge_config)
    interp.start()
    try:
        yield interp
    finally:
        interp.stop()


@pytest.fixture
def wait_until() -> Callable[..., None]:
    """Poll a predicate from a host thread until it holds or the timeout elapses."""

    def _wait(predicate: Callable[[], bool], timeout: float = RESULT_TIMEOUT_S, interval: float = 0.05) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError(f"condition not met within {timeout}s")
            time.sleep(interval)

    return _wait
