"""Reference child runtime: a Python REPL that speaks the bridge side channel.

Run as ``python -u -m kernel_bridge.worker``.  The worker itself uses only
the standard library; any runtime speaking the same protocol can replace it.

The protocol pipes are moved off fds 0/1 at startup: user code reading
stdin sees EOF, and anything written straight to fd 1 (subprocesses,
os.write) lands on stderr instead of corrupting the side channel.
"""

from __future__ import annotations

import ast
import builtins
import codeop
import io
import json
import os
import sys
import traceback
from contextlib import redirect_stderr, redirect_stdout
from dataclasses import dataclass
from typing import IO, Any

from kernel_bridge.constants import PROTOCOL_VERSION

CELL_FILENAME = "<cell>"


class BridgeCallError(Exception):
    """Host rejected a bridge call made from user code.

    Attributes:
        error_type: Host-side error type (e.g. "CapacityExceededError")
        message: Host-side error message
    """

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message


class SideChannel:
    """Blocking request/reply client over the protocol pipes."""

    def __init__(self, reader: IO[bytes], writer: IO[bytes]) -> None:
        self._reader = reader
        self._writer = writer
        self._seq = 0

    def request(self, op: str, **fields: Any) -> Any:
        seq = self._seq
        self._seq += 1
        self._writer.write(json.dumps({"op": op, "seq": seq, **fields}).encode() + b"\n")
        self._writer.flush()

        line = self._reader.readline()
        if not line:
            raise EOFError("host closed the side channel")
        reply = json.loads(line)
        if reply.get("seq") != seq:
            raise RuntimeError(f"side channel out of sync: sent seq {seq}, got {reply.get('seq')}")
        if not reply.get("ok"):
            error = reply.get("error") or {}
            raise BridgeCallError(error.get("type", "Error"), error.get("message", ""))
        return reply.get("result")


class BridgeClient:
    """The ``bridge`` global available to user code."""

    CallError = BridgeCallError

    def __init__(self, channel: SideChannel) -> None:
        self._channel = channel

    def get(self, key: str, default: Any = None) -> Any:
        reply = self._channel.request("get", key=key)
        return reply["value"] if reply["found"] else default

    def put(self, key: str, value: Any) -> None:
        """Store a JSON-compatible value under ``key`` in the shared state."""
        self._channel.request("put", key=key, value=value)

    def remove(self, key: str) -> bool:
        return self._channel.request("remove", key=key)["removed"]

    def keys(self) -> list[str]:
        return self._channel.request("keys")["keys"]

    def invoke(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Call a host callback by name and return its result."""
        return self._channel.request("invoke", name=name, args=list(args), kwargs=kwargs)["value"]

    def __repr__(self) -> str:
        return "<kernel_bridge bridge>"


@dataclass(slots=True)
class CellOutcome:
    status: str
    text: str
    exit_code: int | None = None


def _is_incomplete(code: str) -> bool:
    try:
        return codeop.compile_command(code, CELL_FILENAME, "exec") is None
    except (SyntaxError, OverflowError, ValueError):
        return False


def _format_exception(exc: BaseException) -> str:
    # Drop run_cell's own frame
    tb = exc.__traceback__.tb_next if exc.__traceback__ is not None else None
    return "".join(traceback.format_exception(type(exc), exc, tb))


def _exit_status(code: object) -> int:
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    print(code, file=sys.stderr)
    return 1


def run_cell(code: str, namespace: dict[str, Any], *, silent: bool = False) -> CellOutcome:
    """Execute one submission and capture its output.

    A trailing expression is echoed as its repr unless ``silent``.
    SystemExit completes the cell first, then the worker exits with its code.
    """
    try:
        tree = ast.parse(code, CELL_FILENAME, "exec")
    except SyntaxError as e:
        if _is_incomplete(code):
            return CellOutcome("incomplete", "")
        return CellOutcome("error", "".join(traceback.format_exception_only(type(e), e)))

    echo: ast.Expression | None = None
    if not silent and tree.body and isinstance(tree.body[-1], ast.Expr):
        echo = ast.Expression(tree.body.pop().value)

    buffer = io.StringIO()
    with redirect_stdout(buffer), redirect_stderr(buffer):
        try:
            exec(compile(tree, CELL_FILENAME, "exec"), namespace)  # noqa: S102
            if echo is not None:
                value = eval(compile(echo, CELL_FILENAME, "eval"), namespace)  # noqa: S307
                if value is not None:
                    namespace["_"] = value
                    print(repr(value))
        except SystemExit as e:
            status = _exit_status(e.code)
            return CellOutcome("success" if status == 0 else "error", _strip(buffer.getvalue()), exit_code=status)
        except BaseException as e:  # noqa: BLE001
            return CellOutcome("error", buffer.getvalue() + _format_exception(e))
    return CellOutcome("success", _strip(buffer.getvalue()))


def _strip(text: str) -> str:
    return text.removesuffix("\n")


def _wire_text(text: str) -> str:
    """Escape lone surrogates, which the host's JSON parser rejects."""
    return text.encode("utf-8", "backslashreplace").decode("utf-8")


def _take_over_stdio() -> SideChannel:
    """Move the protocol onto private fds and neutralize 0/1 for user code."""
    reader = os.fdopen(os.dup(0), "rb")
    writer = os.fdopen(os.dup(1), "wb")

    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    os.dup2(2, 1)

    sys.stdin = open(os.devnull)  # noqa: SIM115, PTH123
    sys.stdout = io.TextIOWrapper(os.fdopen(1, "wb", closefd=False), line_buffering=True)
    return SideChannel(reader, writer)


def main() -> int:
    channel = _take_over_stdio()
    namespace: dict[str, Any] = {
        "__name__": "__main__",
        "__builtins__": builtins,
        "bridge": BridgeClient(channel),
    }
    worker_pid = os.getpid()

    channel.request("hello", pid=worker_pid, version=PROTOCOL_VERSION)
    while True:
        try:
            directive = channel.request("next")
        except EOFError:
            return 0
        if directive.get("action") == "shutdown":
            return 0

        outcome = run_cell(directive["code"], namespace, silent=directive.get("silent", False))

        # Forked children that fall out of user code must not talk to the host
        if os.getpid() != worker_pid:
            os._exit(outcome.exit_code or 0)

        try:
            channel.request("complete", id=directive["id"], status=outcome.status, text=_wire_text(outcome.text))
        except BridgeCallError as e:
            # Out of step with the host; a fresh process starts clean
            print(f"kernel_bridge.worker: completion rejected, exiting: {e}", file=sys.stderr)
            return 1
        if outcome.exit_code is not None:
            return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
