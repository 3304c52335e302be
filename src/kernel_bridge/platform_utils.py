"""PID-reuse safe process handling for the supervised child.

Wraps asyncio.subprocess.Process with psutil.Process so liveness checks and
signals never hit an unrelated process that recycled the child's PID.
"""

import asyncio
import contextlib

import psutil


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        """Wrap asyncio process with psutil for PID-safe monitoring.

        Args:
            async_proc: asyncio subprocess.Process instance
        """
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        """Wait for process to complete.

        Returns:
            Process exit code
        """
        return await self.async_proc.wait()

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        """Process stdin stream (host -> child side channel)."""
        return self.async_proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        """Process stdout stream (child -> host side channel)."""
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        """Process stderr stream (child log output)."""
        return self.async_proc.stderr

    async def terminate(self) -> None:
        """Terminate process (SIGTERM) without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Kill process (SIGKILL) without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit with timeout.

        The side channel and the stderr drain task own the pipes, so this
        only waits for exit.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        return await asyncio.wait_for(self.wait(), timeout=timeout)
