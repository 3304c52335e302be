"""Tests for SubmissionService: FIFO dispatch, backpressure, stop, crash handling.

Host calls are synchronous, so these tests are plain (non-async) functions
driving the service from the test thread.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from kernel_bridge.bridge import Bridge
from kernel_bridge.config import BridgeConfig
from kernel_bridge.constants import MAX_CODE_SIZE
from kernel_bridge.exceptions import InterpreterStoppedError, ProcessTerminatedError, ProtocolError, QueueFullError
from kernel_bridge.models import OutputStatus, ProcessState, RawOutput
from kernel_bridge.service import SubmissionService
from kernel_bridge.shared_state import SharedState

RESULT_TIMEOUT_S = 30.0


@pytest.fixture
def make_service(make_config: Callable[..., BridgeConfig]) -> Iterator[Callable[..., SubmissionService]]:
    """Factory for SubmissionService instances, all stopped on teardown."""
    services: list[SubmissionService] = []

    def _make(**overrides: object) -> SubmissionService:
        config = make_config(**overrides)
        service = SubmissionService(Bridge(SharedState(config.state_capacity)), config)
        services.append(service)
        return service

    yield _make
    for service in services:
        service.stop()


def crash_once_snippet(marker: Path) -> str:
    """Code that kills its runtime on first delivery and succeeds after relaunch."""
    return (
        "import os, pathlib\n"
        f"p = pathlib.Path({str(marker)!r})\n"
        "if not p.exists():\n"
        "    p.touch()\n"
        "    os._exit(1)\n"
        "'survived'"
    )


# Speaks the protocol by hand; answers the submission "bad" with a completion
# whose text is a JSON-escaped lone surrogate, which the host cannot accept.
INVALID_COMPLETION_RUNTIME = r'''
import json, sys

def call(line):
    sys.stdout.write(line + "\n")
    sys.stdout.flush()
    return json.loads(sys.stdin.readline())

call('{"op": "hello", "seq": 0, "pid": 0, "version": "1"}')
seq = 1
while True:
    result = call(json.dumps({"op": "next", "seq": seq}))["result"]
    seq += 1
    if result["action"] == "shutdown":
        break
    if result["code"] == "bad":
        line = '{"op": "complete", "seq": %d, "id": "%s", "status": "success", "text": "\\ud800"}' % (seq, result["id"])
    else:
        line = json.dumps({"op": "complete", "seq": seq, "id": result["id"], "status": "success", "text": "ok"})
    call(line)
    seq += 1
'''


def in_flight_snippet(started: Path) -> str:
    """Code that signals it is running, then keeps the runtime busy for a second."""
    return f"import pathlib, time; pathlib.Path({str(started)!r}).touch(); time.sleep(1)"


# ============================================================================
# Normal operation
# ============================================================================


class TestSubmissionNormal:
    """Happy path submissions."""

    def test_simple_expression(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        future = service.submit_code("1+1")
        assert future.result(timeout=RESULT_TIMEOUT_S) == RawOutput(text="2", status=OutputStatus.SUCCESS)

    def test_submit_starts_service(self, make_service: Callable[..., SubmissionService]) -> None:
        """submit_code() on a never-started service starts it first."""
        service = make_service()
        assert not service.is_running
        service.submit_code("x = 1").result(timeout=RESULT_TIMEOUT_S)
        assert service.is_running

    def test_fifo_order(self, make_service: Callable[..., SubmissionService]) -> None:
        """Five queued submissions run and resolve in submission order."""
        service = make_service()
        service.start()
        service.submit_code("log = []", silent=True)

        completed: list[int] = []
        futures = []
        for i in range(5):
            future = service.submit_code(f"log.append({i})")
            future.add_done_callback(lambda _f, i=i: completed.append(i))
            futures.append(future)

        for future in futures:
            assert future.result(timeout=RESULT_TIMEOUT_S).status is OutputStatus.SUCCESS
        assert completed == [0, 1, 2, 3, 4]
        assert service.submit_code("log").result(timeout=RESULT_TIMEOUT_S).text == "[0, 1, 2, 3, 4]"

    def test_incomplete_and_error_statuses(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        assert service.submit_code("def f():").result(timeout=RESULT_TIMEOUT_S).status is OutputStatus.INCOMPLETE
        error = service.submit_code("1/0").result(timeout=RESULT_TIMEOUT_S)
        assert error.status is OutputStatus.ERROR
        assert "ZeroDivisionError" in error.text

    def test_pending_count(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        service.start()
        assert service.pending_count == 0
        service.submit_code("import time; time.sleep(0.5)")
        last = service.submit_code("None")
        assert service.pending_count >= 1
        last.result(timeout=RESULT_TIMEOUT_S)
        assert service.pending_count == 0

    def test_oversized_code_rejected(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        with pytest.raises(ValueError, match="maximum size"):
            service.submit_code("x" * (MAX_CODE_SIZE + 1))

    def test_future_not_cancellable(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        future = service.submit_code("1")
        assert future.cancel() is False
        assert future.result(timeout=RESULT_TIMEOUT_S).text == "1"



# ============================================================================
# Side-channel guards
# ============================================================================


class TestSubmissionGuards:
    """Tests for completions and pulls that don't match the in-flight submission."""

    def test_second_pull_while_in_flight(
        self, make_service: Callable[..., SubmissionService], wait_until: Callable[..., None], tmp_path: Path
    ) -> None:
        """Only one submission is handed out at a time."""
        service = make_service()
        started = tmp_path / "started"
        future = service.submit_code(in_flight_snippet(started))
        service.submit_code("'queued'")
        wait_until(started.exists)

        with pytest.raises(ProtocolError, match="in flight"):
            asyncio.run(service.next_submission())
        assert future.result(timeout=RESULT_TIMEOUT_S).status is OutputStatus.SUCCESS

    def test_completion_for_other_submission_rejected(
        self, make_service: Callable[..., SubmissionService], wait_until: Callable[..., None], tmp_path: Path
    ) -> None:
        service = make_service()
        started = tmp_path / "started"
        future = service.submit_code(in_flight_snippet(started))
        wait_until(started.exists)

        with pytest.raises(ProtocolError, match="does not match"):
            service.complete_submission("not-in-flight", RawOutput(text="forged", status=OutputStatus.SUCCESS))
        assert future.result(timeout=RESULT_TIMEOUT_S) == RawOutput(text="", status=OutputStatus.SUCCESS)
        assert service.pending_count == 0

    def test_unreadable_completion_fails_submission(self, make_service: Callable[..., SubmissionService]) -> None:
        """A completion the host can't parse resolves that submission; the next one still runs."""
        service = make_service(runtime_command=(sys.executable, "-u", "-c", INVALID_COMPLETION_RUNTIME))
        bad = service.submit_code("bad").result(timeout=RESULT_TIMEOUT_S)
        assert bad.status is OutputStatus.ERROR
        assert "invalid completion" in bad.text

        assert service.submit_code("good").result(timeout=RESULT_TIMEOUT_S) == RawOutput(
            text="ok", status=OutputStatus.SUCCESS
        )
        assert service.supervisor.launch_count == 1


# ============================================================================
# Backpressure
# ============================================================================


class TestSubmissionBackpressure:
    """Tests for max_pending_submissions."""

    def test_queue_full(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service(max_pending_submissions=2)
        service.start()
        service.submit_code("import time; time.sleep(10)")
        service.submit_code("1")
        with pytest.raises(QueueFullError) as exc_info:
            service.submit_code("2")
        assert exc_info.value.context["max_pending_submissions"] == 2


# ============================================================================
# Stop
# ============================================================================


class TestSubmissionStop:
    """Tests for stop(): cancellation, idempotency, restart."""

    def test_stop_cancels_pending(self, make_service: Callable[..., SubmissionService]) -> None:
        """Submissions still pending at stop() fail with InterpreterStoppedError."""
        service = make_service()
        service.start()
        running = service.submit_code("import time; time.sleep(30)")
        queued = [service.submit_code("1"), service.submit_code("2")]

        service.stop()

        for future in [running, *queued]:
            with pytest.raises(InterpreterStoppedError):
                future.result(timeout=RESULT_TIMEOUT_S)
        assert not service.is_running
        assert service.supervisor.state is ProcessState.STOPPED

    def test_stop_idempotent(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        service.stop()
        service.start()
        service.stop()
        service.stop()
        assert not service.is_running

    def test_stop_clears_shared_state(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        service.start()
        service.bridge.state.put("x", 1)
        service.stop()
        assert len(service.bridge.state) == 0

    def test_submit_after_stop_restarts(self, make_service: Callable[..., SubmissionService]) -> None:
        service = make_service()
        service.submit_code("x = 1").result(timeout=RESULT_TIMEOUT_S)
        service.stop()
        result = service.submit_code("'x' in globals()").result(timeout=RESULT_TIMEOUT_S)
        assert result.text == "False"
        assert service.supervisor.launch_count == 2


# ============================================================================
# Crashes and exits
# ============================================================================


class TestSubmissionCrash:
    """Tests for child termination while work is pending."""

    def test_external_kill_relaunches(
        self, make_service: Callable[..., SubmissionService], wait_until: Callable[..., None]
    ) -> None:
        """Killing the child relaunches it; new submissions resolve on the new process."""
        service = make_service()
        service.start()
        pid = service.supervisor.handle.pid
        assert pid is not None

        os.kill(pid, signal.SIGKILL)
        wait_until(lambda: service.supervisor.launch_count == 2 and service.is_running)

        assert service.submit_code("40 + 2").result(timeout=RESULT_TIMEOUT_S).text == "42"

    def test_in_flight_submission_redelivered(
        self, make_service: Callable[..., SubmissionService], tmp_path: Path
    ) -> None:
        """A submission whose runtime died mid-execution runs again on the relaunched runtime."""
        service = make_service()
        future = service.submit_code(crash_once_snippet(tmp_path / "crashed"))
        result = future.result(timeout=RESULT_TIMEOUT_S)
        assert result == RawOutput(text="'survived'", status=OutputStatus.SUCCESS)
        assert service.supervisor.launch_count == 2

    def test_later_submissions_survive_crash(
        self, make_service: Callable[..., SubmissionService], tmp_path: Path
    ) -> None:
        service = make_service()
        service.start()
        first = service.submit_code(crash_once_snippet(tmp_path / "crashed"))
        second = service.submit_code("'after'")
        assert first.result(timeout=RESULT_TIMEOUT_S).text == "'survived'"
        assert second.result(timeout=RESULT_TIMEOUT_S).text == "'after'"

    def test_crash_without_restart_fails_pending(self, make_service: Callable[..., SubmissionService]) -> None:
        """With restart disabled, a crash fails pending work and the service stays failed until stop()."""
        service = make_service(restart_on_failure=False)
        service.start()
        crashing = service.submit_code("import os; os._exit(7)")
        queued = service.submit_code("1")

        for future in (crashing, queued):
            with pytest.raises(ProcessTerminatedError) as exc_info:
                future.result(timeout=RESULT_TIMEOUT_S)
            assert exc_info.value.exit_code == 7

        assert not service.is_running
        with pytest.raises(ProcessTerminatedError):
            service.submit_code("2")
        with pytest.raises(ProcessTerminatedError):
            service.start()

        service.stop()
        assert service.submit_code("3").result(timeout=RESULT_TIMEOUT_S).text == "3"

    def test_clean_exit_relaunches(
        self, make_service: Callable[..., SubmissionService], wait_until: Callable[..., None]
    ) -> None:
        """sys.exit(0) completes the submission, then the runtime is relaunched."""
        service = make_service()
        result = service.submit_code("print('bye'); import sys; sys.exit(0)").result(timeout=RESULT_TIMEOUT_S)
        assert result == RawOutput(text="bye", status=OutputStatus.SUCCESS)

        wait_until(lambda: service.supervisor.launch_count == 2 and service.is_running)
        assert service.submit_code("1").result(timeout=RESULT_TIMEOUT_S).text == "1"

    def test_clean_exit_without_restart(
        self, make_service: Callable[..., SubmissionService], wait_until: Callable[..., None]
    ) -> None:
        """Without restart_on_completion the service stops; the next submit starts it again."""
        service = make_service(restart_on_completion=False)
        service.submit_code("import sys; sys.exit(0)").result(timeout=RESULT_TIMEOUT_S)

        wait_until(lambda: service.supervisor.state is ProcessState.STOPPED)
        assert not service.is_running
        assert service.submit_code("'again'").result(timeout=RESULT_TIMEOUT_S).text == "'again'"
        assert service.supervisor.launch_count == 2
