"""Map the child's raw output onto the host's result vocabulary."""

from __future__ import annotations

from concurrent.futures import Future
from typing import assert_never

from kernel_bridge.constants import INCOMPLETE_INPUT_MESSAGE
from kernel_bridge.models import ExecuteFailure, ExecuteOutput, NormalizedResult, OutputStatus, RawOutput, Result


class ResultTransformer:
    """Total mapping from RawOutput to NormalizedResult.

    success    -> (Result.SUCCESS, ExecuteOutput(text))
    error      -> (Result.ERROR, ExecuteFailure(text))
    incomplete -> (Result.INCOMPLETE, ExecuteFailure("incomplete input"))
    """

    def transform(self, raw: RawOutput) -> NormalizedResult:
        match raw.status:
            case OutputStatus.SUCCESS:
                return NormalizedResult(result=Result.SUCCESS, payload=ExecuteOutput(text=raw.text))
            case OutputStatus.ERROR:
                return NormalizedResult(result=Result.ERROR, payload=ExecuteFailure(detail=raw.text))
            case OutputStatus.INCOMPLETE:
                return NormalizedResult(result=Result.INCOMPLETE, payload=ExecuteFailure(detail=INCOMPLETE_INPUT_MESSAGE))
            case _:
                assert_never(raw.status)

    def transform_future(self, future: Future[RawOutput]) -> Future[NormalizedResult]:
        """Chain a transform onto a pending raw result.

        Failures of the raw future (stop, termination) propagate unchanged.
        """
        out: Future[NormalizedResult] = Future()
        out.set_running_or_notify_cancel()

        def _done(source: Future[RawOutput]) -> None:
            exc = source.exception()
            if exc is not None:
                out.set_exception(exc)
                return
            try:
                out.set_result(self.transform(source.result()))
            except Exception as e:
                out.set_exception(e)

        future.add_done_callback(_done)
        return out
