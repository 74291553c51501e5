"""External process execution with line streaming and cancellation.

The runner launches an executable, delivers every stdout/stderr line to a
callback as soon as it is read, and honours a shared cancellation token by
terminating the whole process tree. It never raises for process-level
failures; callers get an ExitOutcome.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import psutil

from hvlab.config import settings

logger = logging.getLogger(__name__)

# Callback receiving (line, is_error) for every line the process writes
LineCallback = Callable[[str, bool], None]

STREAM_LIMIT = 1024 * 1024  # Longest line accepted before splitting
DRAIN_TIMEOUT = 5.0  # Max wait for pipes to close after the process exits


class CancellationToken:
    """Cooperative cancellation signal shared by an orchestrator and its runner.

    cancel() is idempotent; the first call records the reason.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Cancelled by request") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ExitStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ExitOutcome:
    """Result of running an external process."""
    status: ExitStatus
    exit_code: int | None = None
    reason: str | None = None
    stderr_lines: int = 0
    terminated: bool = True  # False when tree termination failed after cancel

    @property
    def success(self) -> bool:
        return self.status == ExitStatus.SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.status == ExitStatus.CANCELLED


def resolve_executable(executable: str) -> str | None:
    """Return an absolute path for executable, or None if it cannot be found.

    Paths containing a directory part must exist as files; bare names are
    looked up on PATH.
    """
    if os.path.dirname(executable):
        return executable if os.path.isfile(executable) else None
    return shutil.which(executable)


def terminate_process_tree(pid: int, grace: float) -> bool:
    """Terminate a process and all of its descendants.

    Sends terminate to every process in the tree, waits up to `grace`
    seconds, then kills survivors. Returns True when nothing is left alive.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return True

    try:
        procs = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = []
    procs.append(parent)

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        logger.warning(f"Process {proc.pid} ignored terminate, killing")
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    if alive:
        _, alive = psutil.wait_procs(alive, timeout=grace)
    return not alive


class ProcessRunner:
    """Runs external executables, streaming output line by line."""

    def __init__(
        self,
        poll_interval: float | None = None,
        kill_grace: float | None = None,
    ):
        self.poll_interval = poll_interval if poll_interval is not None else settings.process_poll_interval
        self.kill_grace = kill_grace if kill_grace is not None else settings.process_kill_grace

    async def run(
        self,
        executable: str,
        args: list[str],
        on_line: LineCallback,
        cancel_token: CancellationToken | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExitOutcome:
        """Run executable with args until it exits or is cancelled.

        Outcome is SUCCESS only when the exit code is zero and nothing was
        written to stderr.
        """
        token = cancel_token or CancellationToken()

        resolved = resolve_executable(executable)
        if resolved is None:
            return ExitOutcome(
                status=ExitStatus.FAILED,
                reason=f"Executable not found: {executable}",
            )

        if token.is_cancelled:
            return ExitOutcome(status=ExitStatus.CANCELLED, reason=token.reason)

        try:
            process = await asyncio.create_subprocess_exec(
                resolved,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            return ExitOutcome(
                status=ExitStatus.FAILED,
                reason=f"Failed to start {resolved}: {e}",
            )

        logger.debug(f"Started pid {process.pid}: {os.path.basename(resolved)}")

        stderr_count = 0

        def deliver(line: str, is_error: bool) -> None:
            nonlocal stderr_count
            if is_error:
                stderr_count += 1
            try:
                on_line(line, is_error)
            except Exception:
                logger.exception("Line callback raised")

        readers = [
            asyncio.create_task(self._pump(process.stdout, False, deliver, on_line)),
            asyncio.create_task(self._pump(process.stderr, True, deliver, on_line)),
        ]
        exit_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(token.wait())

        try:
            while not exit_task.done():
                await asyncio.wait(
                    {exit_task, cancel_task},
                    timeout=self.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if token.is_cancelled and not exit_task.done():
                    return await self._cancel(process, readers, exit_task, token)
        except asyncio.CancelledError:
            # The caller's task was cancelled: never leave the tree running
            await self._cancel(process, readers, exit_task, token)
            raise
        finally:
            cancel_task.cancel()

        await self._drain(readers)

        exit_code = process.returncode
        if exit_code == 0 and stderr_count == 0:
            return ExitOutcome(status=ExitStatus.SUCCESS, exit_code=0)

        if exit_code != 0:
            reason = f"Process exited with code {exit_code}"
        else:
            reason = f"Process wrote {stderr_count} line(s) to stderr"
        return ExitOutcome(
            status=ExitStatus.FAILED,
            exit_code=exit_code,
            reason=reason,
            stderr_lines=stderr_count,
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        is_error: bool,
        deliver: Callable[[str, bool], None],
        on_line: LineCallback,
    ) -> None:
        """Read one stream to EOF, delivering decoded lines."""
        if stream is None:
            return
        name = "stderr" if is_error else "stdout"
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                # Over-long line; the reader has already discarded it
                self._report_read_error(on_line, name, e)
                continue
            except OSError as e:
                self._report_read_error(on_line, name, e)
                return
            if not raw:
                return
            deliver(raw.decode("utf-8", errors="replace").rstrip("\r\n"), is_error)

    @staticmethod
    def _report_read_error(on_line: LineCallback, name: str, error: Exception) -> None:
        logger.warning(f"Error reading {name}: {error}")
        try:
            on_line(f"Error reading {name}: {error}", True)
        except Exception:
            logger.exception("Line callback raised")

    async def _cancel(
        self,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task],
        exit_task: asyncio.Task,
        token: CancellationToken,
    ) -> ExitOutcome:
        """Terminate the process tree and report a CANCELLED outcome."""
        logger.info(f"Cancelling pid {process.pid}: {token.reason or 'cancelled'}")
        terminated = True
        reason = token.reason or "Cancelled"
        try:
            terminated = await asyncio.to_thread(
                terminate_process_tree, process.pid, self.kill_grace
            )
            if not terminated:
                reason = f"{reason} (some processes did not exit)"
        except Exception as e:
            logger.warning(f"Error terminating process tree {process.pid}: {e}")
            terminated = False
            reason = f"{reason} (termination failed: {e})"

        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            terminated = False
            logger.warning(f"pid {process.pid} still running after cancellation")

        await self._drain(readers)

        return ExitOutcome(
            status=ExitStatus.CANCELLED,
            exit_code=process.returncode,
            reason=reason,
            terminated=terminated,
        )

    @staticmethod
    async def _drain(readers: list[asyncio.Task]) -> None:
        """Wait for reader tasks to hit EOF, abandoning them after a timeout.

        A surviving grandchild can hold a pipe open after its parent exited.
        """
        done, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if pending:
            logger.warning("Output pipes still open after process exit, stopped reading")
