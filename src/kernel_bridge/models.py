"""Data models for kernel-bridge."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class OutputStatus(str, Enum):
    """Per-submission status reported by the child runtime."""

    SUCCESS = "success"
    ERROR = "error"
    INCOMPLETE = "incomplete"


class Result(str, Enum):
    """Result vocabulary observed by the host kernel."""

    SUCCESS = "success"
    ERROR = "error"
    INCOMPLETE = "incomplete"


class ProcessState(str, Enum):
    """Lifecycle state of the supervised child process."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


class Submission(BaseModel):
    """One unit of code dispatched to the child, awaiting exactly one result."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex, description="Opaque unique token")
    code: str = Field(description="Code text to execute")
    silent: bool = Field(default=False, description="Advisory: child suppresses echo")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RawOutput(BaseModel):
    """Child's raw per-submission output, consumed once by the transformer."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(default="", description="Captured output or error detail")
    status: OutputStatus


class ExecuteOutput(BaseModel):
    """Payload of a successful execution."""

    model_config = ConfigDict(frozen=True)

    text: str


class ExecuteFailure(BaseModel):
    """Payload of a failed or incomplete execution."""

    model_config = ConfigDict(frozen=True)

    detail: str


class NormalizedResult(BaseModel):
    """Uniform (result, payload) shape presented to the calling kernel."""

    model_config = ConfigDict(frozen=True)

    result: Result
    payload: ExecuteOutput | ExecuteFailure

    def as_tuple(self) -> tuple[Result, ExecuteOutput | ExecuteFailure]:
        """Return the (Result, Output|Failure) pair interpret() hands back."""
        return self.result, self.payload
