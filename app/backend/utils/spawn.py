"""Async subprocess helpers.

`spawn` starts a child process and returns a `ProcessHandle`. Standard output
can be consumed line by line through `ProcessHandle.lines()`; `wait()` joins
the process and returns the collected output. Cancellation is cooperative: a
`CancelToken` handed to `spawn` terminates the child once it is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Mapping, Optional, Sequence


logger = logging.getLogger(__name__)

STREAM_LIMIT = 4 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 5.0


class CancelToken:
    """One-shot cancellation signal shared between a caller and a subprocess."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class SpawnResult:
    exit_code: int
    stdout: str
    stderr: str


class ProcessHandle:
    """Handle to a running child process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        command: str,
        cancel: Optional[CancelToken] = None,
        stdin_data: Optional[str] = None,
        max_stdout_lines: Optional[int] = None,
    ) -> None:
        self.command = command
        self._process = process
        self._cancel = cancel
        self._stdout: Deque[str] = deque(maxlen=max_stdout_lines)
        self._stdout_taken = False
        self._stderr_task = asyncio.ensure_future(self._read_stderr())
        self._stdin_task = asyncio.ensure_future(self._write_stdin(stdin_data)) if stdin_data is not None else None
        self._cancel_task = asyncio.ensure_future(self._watch_cancel()) if cancel is not None else None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def _read_stderr(self) -> str:
        if self._process.stderr is None:
            return ""
        data = await self._process.stderr.read()
        return data.decode("utf-8", errors="replace")

    async def _write_stdin(self, data: str) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            stdin.write(data.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("%s closed stdin before input was written", self.command)
        finally:
            stdin.close()

    async def _watch_cancel(self) -> None:
        assert self._cancel is not None
        await self._cancel.wait()
        if self._process.returncode is None:
            logger.info("Terminating %s (pid=%s) on cancellation", self.command, self._process.pid)
            await self.terminate()

    async def terminate(self) -> None:
        """Send SIGTERM, then SIGKILL if the child does not exit in time."""

        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self.kill()

    def kill(self) -> None:
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines (without trailing newline) as they arrive."""

        if self._stdout_taken:
            raise RuntimeError("stdout of this process has already been consumed")
        self._stdout_taken = True

        stream = self._process.stdout
        if stream is None:
            return

        try:
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._stdout.append(line)
                yield line
        except asyncio.CancelledError:
            self.kill()
            raise

    async def _drain_stdout(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        if not self._stdout_taken:
            self._stdout_taken = True
        data = await stream.read()
        for line in data.decode("utf-8", errors="replace").splitlines():
            self._stdout.append(line)

    async def wait(self) -> SpawnResult:
        """Wait for the process to exit and collect its output.

        If the awaiting task is cancelled the child is killed before the
        cancellation propagates.
        """

        try:
            await self._drain_stdout()
            exit_code = await self._process.wait()
            stderr = await self._stderr_task
            if self._stdin_task is not None:
                await self._stdin_task
        except asyncio.CancelledError:
            self.kill()
            raise
        finally:
            if self._cancel_task is not None and not self._cancel_task.done():
                self._cancel_task.cancel()

        return SpawnResult(exit_code=exit_code, stdout="\n".join(self._stdout), stderr=stderr)


async def spawn(
    command: str,
    args: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    stdin: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    max_stdout_lines: Optional[int] = None,
) -> ProcessHandle:
    """Start `command` with `args`.

    Args:
        command: Executable name or path.
        args: Arguments.
        env: Extra environment variables layered over the current environment.
        stdin: Optional text written to the child's stdin.
        cancel: Token that terminates the child when cancelled.
        max_stdout_lines: Keep only the last N stdout lines in the result.

    Returns:
        ProcessHandle: Handle for streaming and joining.

    Raises:
        OSError: When the executable cannot be started.
    """

    full_env = {**os.environ, **env} if env is not None else None
    process = await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=full_env,
        limit=STREAM_LIMIT,
    )
    return ProcessHandle(
        process,
        command=command,
        cancel=cancel,
        stdin_data=stdin,
        max_stdout_lines=max_stdout_lines,
    )


async def run_command(
    command: str,
    args: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    stdin: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
) -> SpawnResult:
    """Run a command to completion and return its result."""

    handle = await spawn(command, args, env=env, stdin=stdin, cancel=cancel)
    return await handle.wait()
