"""Subprocess lifecycle utilities.

- drain_stderr: forward the child's stderr to the logger until EOF
- log_task_exception: done-callback that logs background task failures
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from kernel_bridge._logging import get_logger

if TYPE_CHECKING:
    from kernel_bridge.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def drain_stderr(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
) -> None:
    """Drain the child's stderr so a chatty runtime never blocks on a full pipe.

    stdout is owned by the side channel; stderr is free-form log output.

    Args:
        process: ProcessWrapper with a stderr pipe
        process_name: Process identifier for logging (e.g., "runtime")
        context_id: Context identifier (e.g., generation) for log correlation
    """
    stderr = process.stderr
    if not stderr:
        return

    while True:
        try:
            line = await stderr.readline()
        except ValueError:
            # readline() discards the overlong line before raising
            logger.warning(f"[{process_name} stderr] line over buffer limit dropped", extra={"context_id": context_id})
            continue
        if not line:
            return
        decoded = line.decode(errors="replace").rstrip()
        if decoded:
            logger.warning(f"[{process_name} stderr] {decoded}", extra={"context_id": context_id, "output": decoded})


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() so failures of
    fire-and-forget tasks are never silent.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
