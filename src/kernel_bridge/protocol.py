"""Side-channel protocol models.

Protocol: JSON newline-delimited over the child's stdio.  The child writes
requests to its stdout, the host answers on the child's stdin.  Every
exchange is child-initiated, so the child is the single-threaded puller:

    child                                   host
    {"op":"hello","seq":0,...}         ->
                                       <-   {"seq":0,"ok":true,"result":{}}
    {"op":"next","seq":1}              ->   (held until a submission is queued)
                                       <-   {"seq":1,"ok":true,"result":{"action":"execute",...}}
    {"op":"put","seq":2,"key":"x",...} ->
                                       <-   {"seq":2,"ok":false,"error":{"type":"CapacityExceededError",...}}
    {"op":"complete","seq":3,"id":...} ->
                                       <-   {"seq":3,"ok":true,"result":{}}

The bundled worker speaks this with the standard library only; these
models are the host's view of it.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, JsonValue, TypeAdapter

from kernel_bridge.constants import MAX_CODE_SIZE
from kernel_bridge.models import OutputStatus  # noqa: TC001 - Required at runtime for Pydantic

# ============================================================================
# Child -> Host Requests
# ============================================================================


class ChildRequest(BaseModel):
    """Base class for all child requests."""

    op: str = Field(description="Operation requested by the child")
    seq: int = Field(ge=0, description="Request sequence number, echoed in the reply")


class HelloRequest(ChildRequest):
    """First message after spawn; marks the child ready."""

    op: Literal["hello"] = Field(default="hello")  # type: ignore[assignment]
    pid: int = Field(description="Child process id as seen by the child")
    version: str = Field(description="Protocol version spoken by the child")


class NextRequest(ChildRequest):
    """Pull the next submission.

    Reply: ExecuteDirective, or ShutdownDirective when the host is stopping.
    """

    op: Literal["next"] = Field(default="next")  # type: ignore[assignment]


class CompleteRequest(ChildRequest):
    """Completion signal carrying the RawOutput of one submission."""

    op: Literal["complete"] = Field(default="complete")  # type: ignore[assignment]
    id: str = Field(min_length=1, description="Submission id from the ExecuteDirective")
    status: OutputStatus
    text: str = Field(default="", description="Captured output or error detail")


class GetRequest(ChildRequest):
    """Read a shared state entry. Reply: {"found": bool, "value": ...}."""

    op: Literal["get"] = Field(default="get")  # type: ignore[assignment]
    key: str = Field(min_length=1)


class PutRequest(ChildRequest):
    """Write a shared state entry. Fails with CapacityExceededError when full."""

    op: Literal["put"] = Field(default="put")  # type: ignore[assignment]
    key: str = Field(min_length=1)
    value: JsonValue = None


class RemoveRequest(ChildRequest):
    """Delete a shared state entry. Reply: {"removed": bool}."""

    op: Literal["remove"] = Field(default="remove")  # type: ignore[assignment]
    key: str = Field(min_length=1)


class KeysRequest(ChildRequest):
    """List shared state keys. Reply: {"keys": [...]}."""

    op: Literal["keys"] = Field(default="keys")  # type: ignore[assignment]


class InvokeRequest(ChildRequest):
    """Invoke a registered host callback. Reply: {"value": ...}."""

    op: Literal["invoke"] = Field(default="invoke")  # type: ignore[assignment]
    name: str = Field(min_length=1, description="Registered callback name")
    args: list[JsonValue] = Field(default_factory=list)
    kwargs: dict[str, JsonValue] = Field(default_factory=dict)


ChildMessage = Annotated[
    HelloRequest | NextRequest | CompleteRequest | GetRequest | PutRequest | RemoveRequest | KeysRequest | InvokeRequest,
    Field(discriminator="op"),
]

# Cached: TypeAdapter construction is expensive and this runs per line
CHILD_MESSAGE_ADAPTER: TypeAdapter[ChildMessage] = TypeAdapter(ChildMessage)


# ============================================================================
# Host -> Child Replies
# ============================================================================


class ExecuteDirective(BaseModel):
    """Result of a ``next`` request: run this code."""

    action: Literal["execute"] = "execute"
    id: str
    code: str = Field(max_length=MAX_CODE_SIZE)
    silent: bool = False


class ShutdownDirective(BaseModel):
    """Result of a ``next`` request when the host is stopping: exit cleanly."""

    action: Literal["shutdown"] = "shutdown"


class ReplyError(BaseModel):
    """Error detail sent back to the child."""

    type: str = Field(description="Host exception class name")
    message: str


class Reply(BaseModel):
    """Host reply to one child request."""

    seq: int
    ok: bool
    result: Any = None
    error: ReplyError | None = None

    @classmethod
    def success(cls, seq: int, result: Any = None) -> Reply:
        return cls(seq=seq, ok=True, result=result if result is not None else {})

    @classmethod
    def failure(cls, seq: int, exc: BaseException) -> Reply:
        message = getattr(exc, "message", None) or str(exc)
        return cls(seq=seq, ok=False, error=ReplyError(type=type(exc).__name__, message=message))
