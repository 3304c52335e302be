"""Tests for ResultTransformer: total mapping of raw output to results."""

from concurrent.futures import Future

import pytest
from hypothesis import given
from hypothesis.strategies import sampled_from, text

from kernel_bridge.exceptions import InterpreterStoppedError
from kernel_bridge.models import ExecuteFailure, ExecuteOutput, OutputStatus, RawOutput, Result
from kernel_bridge.transformer import ResultTransformer


class TestTransform:
    """Tests for the status -> result mapping."""

    def test_success(self) -> None:
        normalized = ResultTransformer().transform(RawOutput(text="2", status=OutputStatus.SUCCESS))
        assert normalized.as_tuple() == (Result.SUCCESS, ExecuteOutput(text="2"))

    def test_error(self) -> None:
        normalized = ResultTransformer().transform(RawOutput(text="NameError: x", status=OutputStatus.ERROR))
        assert normalized.as_tuple() == (Result.ERROR, ExecuteFailure(detail="NameError: x"))

    def test_incomplete_uses_fixed_detail(self) -> None:
        """Incomplete input carries a fixed detail regardless of the child's text."""
        normalized = ResultTransformer().transform(RawOutput(text="anything", status=OutputStatus.INCOMPLETE))
        assert normalized.as_tuple() == (Result.INCOMPLETE, ExecuteFailure(detail="incomplete input"))

    @given(status=sampled_from(list(OutputStatus)), body=text(max_size=200))
    def test_total(self, status: OutputStatus, body: str) -> None:
        """Property: every status maps to exactly one result of the same name."""
        normalized = ResultTransformer().transform(RawOutput(text=body, status=status))
        assert normalized.result.value == status.value
        if status is OutputStatus.SUCCESS:
            assert normalized.payload == ExecuteOutput(text=body)
        else:
            assert isinstance(normalized.payload, ExecuteFailure)


class TestTransformFuture:
    """Tests for chaining the transform onto a pending result."""

    def test_result_transformed_on_completion(self) -> None:
        raw: Future[RawOutput] = Future()
        out = ResultTransformer().transform_future(raw)
        assert not out.done()

        raw.set_result(RawOutput(text="ok", status=OutputStatus.SUCCESS))
        assert out.result(timeout=1).as_tuple() == (Result.SUCCESS, ExecuteOutput(text="ok"))

    def test_already_completed_source(self) -> None:
        raw: Future[RawOutput] = Future()
        raw.set_result(RawOutput(status=OutputStatus.INCOMPLETE))
        out = ResultTransformer().transform_future(raw)
        assert out.result(timeout=1).result is Result.INCOMPLETE

    def test_failure_propagates_unchanged(self) -> None:
        raw: Future[RawOutput] = Future()
        out = ResultTransformer().transform_future(raw)
        raw.set_exception(InterpreterStoppedError("stopped"))
        with pytest.raises(InterpreterStoppedError, match="stopped"):
            out.result(timeout=1)

    def test_output_not_cancellable(self) -> None:
        out = ResultTransformer().transform_future(Future())
        assert out.cancel() is False
