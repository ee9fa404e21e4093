"""Handle for an external worldserver process.

The process is spawned with a stdin pipe that acts as its control channel;
stdout and stderr are inherited so the worker's console output reaches the
operator directly.
"""
from __future__ import annotations

import asyncio
import os
from collections.abc import Sequence
from enum import Enum
from pathlib import Path

from .errors import ExternalResourceError, UserInputError


class ProcessSpawnError(ExternalResourceError):
    """Raised when the worker executable cannot be launched."""


class ProcessState(str, Enum):
    """Lifecycle states of a worker process handle."""

    NOT_STARTED = "not started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class WorkerProcess:
    """A restartable handle around one ``asyncio`` subprocess."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.state = ProcessState.NOT_STARTED
        self.returncode: int | None = None
        self._process: asyncio.subprocess.Process | None = None

    def __repr__(self) -> str:
        return f"WorkerProcess(name={self.name!r}, state={self.state.value!r})"

    @property
    def pid(self) -> int | None:
        """PID of the running process, if any."""
        return self._process.pid if self._process is not None else None

    def is_running(self) -> bool:
        """Return whether the process has been spawned and has not exited."""
        process = self._process
        if process is None:
            return False
        if process.returncode is not None:
            self._mark_exited(process, process.returncode)
            return False
        return True

    async def start_in(
        self,
        cwd: Path,
        executable: Path,
        args: Sequence[str] = (),
        *,
        env: dict[str, str] | None = None,
    ) -> None:
        """Spawn *executable* with *args* inside *cwd*."""
        if self.is_running():
            raise UserInputError(f"{self.name} is already running (pid {self.pid}).")
        self.state = ProcessState.STARTING
        self.returncode = None
        try:
            self._process = await asyncio.create_subprocess_exec(
                str(executable),
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                env={**os.environ, **(env or {})},
            )
        except OSError as exc:
            self.state = ProcessState.FAILED
            self._process = None
            raise ProcessSpawnError(f"Failed to launch {executable} for {self.name}: {exc}") from exc
        self.state = ProcessState.RUNNING

    async def send(self, line: str, *, newline: bool = True) -> bool:
        """Write *line* to the control channel; return ``False`` if not running."""
        process = self._process
        if process is None or process.stdin is None or not self.is_running():
            return False
        payload = f"{line}\n" if newline else line
        try:
            process.stdin.write(payload.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    async def terminate(self) -> int | None:
        """Terminate the OS process immediately and wait for it to exit."""
        process = self._process
        if process is None or not self.is_running():
            return self.returncode
        self.state = ProcessState.STOPPING
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        return await self.wait()

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit code."""
        process = self._process
        if process is None:
            return self.returncode
        returncode = await process.wait()
        self._mark_exited(process, returncode)
        return returncode

    def mark_stopping(self) -> None:
        """Record that a graceful shutdown has been requested."""
        if self.is_running():
            self.state = ProcessState.STOPPING

    def _mark_exited(self, process: asyncio.subprocess.Process, returncode: int) -> None:
        if self._process is not process:
            return
        self.returncode = returncode
        if process.stdin is not None:
            process.stdin.close()
        self._process = None
        if self.state is ProcessState.STOPPING or returncode == 0:
            self.state = ProcessState.STOPPED
        else:
            self.state = ProcessState.FAILED


__all__ = ["ProcessSpawnError", "ProcessState", "WorkerProcess"]
