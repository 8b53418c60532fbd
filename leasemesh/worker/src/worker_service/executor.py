import asyncio
import logging
import re
import shlex
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol

from models import Job

logger = logging.getLogger("worker")

ProgressCallback = Callable[[str, int | None, int | None], Awaitable[None]]

STEP_PATTERN = re.compile(r"\bStep\s+(\d+)\s*(?:/|of)\s*(\d+)\s*:?\s*(.*)", re.IGNORECASE)


class JobStopped(Exception):
    """Raised from a checkpoint once the worker has asked the job to stop."""

    def __init__(self, job_id: str, phase: str | None = None) -> None:
        where = f" at {phase}" if phase else ""
        super().__init__(f"Job '{job_id}' stopped{where}")
        self.job_id = job_id
        self.phase = phase


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    permanent: bool = False

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> "ExecutionResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, permanent: bool = False) -> "ExecutionResult":
        return cls(success=False, error=error, permanent=permanent)


@dataclass(slots=True)
class ExecutionContext:
    """Handed to an executor for one attempt of one job."""

    job: Job
    stop_event: asyncio.Event
    progress_callback: ProgressCallback | None = None

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def checkpoint(self, phase: str | None = None) -> None:
        """Call before each internal phase; raises ``JobStopped`` if asked to stop."""
        if self.stop_event.is_set():
            raise JobStopped(self.job.id, phase)

    async def report_progress(
        self,
        message: str,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> None:
        if self.progress_callback is not None:
            await self.progress_callback(message, current_step, total_steps)


class JobExecutor(Protocol):
    async def execute(self, context: ExecutionContext) -> ExecutionResult: ...


def parse_progress(line: str) -> tuple[str, int, int] | None:
    """Parse ``Step 3/10: message`` (or ``Step 3 of 10``) out of an output line."""

    match = STEP_PATTERN.search(line)
    if match is None:
        return None
    current, total = int(match.group(1)), int(match.group(2))
    message = match.group(3).strip() or f"Step {current}/{total}"
    return message, current, total


class SubprocessExecutor:
    """Runs ``payload["command"]`` as a child process.

    Payload keys: ``command`` (string or argv list), optional ``cwd``,
    ``env`` and ``timeout_seconds``. Output lines shaped like ``Step N/M: ...``
    are reported as progress. Setting the stop event terminates the child.
    """

    def __init__(
        self,
        default_timeout_seconds: float | None = None,
        output_lines: int = 200,
        terminate_grace_seconds: float = 10.0,
    ) -> None:
        self._default_timeout = default_timeout_seconds
        self._output_lines = output_lines
        self._grace = terminate_grace_seconds

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        payload = context.payload
        command = payload.get("command")
        if not command:
            return ExecutionResult.failed("Job payload has no command", permanent=True)

        if isinstance(command, str):
            argv = shlex.split(command)
        else:
            argv = [str(part) for part in command]
        timeout = payload.get("timeout_seconds", self._default_timeout)

        context.checkpoint("start")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=payload.get("cwd"),
                env=payload.get("env"),
            )
        except OSError as exc:
            return ExecutionResult.failed(
                f"Could not start command: {exc}", permanent=True
            )

        logger.info(
            "command_started",
            extra={"job_id": context.job.id, "pid": process.pid, "argv": argv},
        )
        output: deque[str] = deque(maxlen=self._output_lines)
        reader = asyncio.create_task(self._read_output(process, context, output))
        waiter = asyncio.create_task(process.wait())
        stopper = asyncio.create_task(context.stop_event.wait())

        try:
            done, _ = await asyncio.wait(
                {waiter, stopper},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if waiter not in done:
                await self._terminate(process)
                with suppress(asyncio.CancelledError):
                    await reader
                if stopper in done:
                    raise JobStopped(context.job.id, "command")
                return ExecutionResult.failed(f"Command timed out after {timeout}s")
            await reader
        finally:
            for task in (stopper, waiter, reader):
                if not task.done():
                    task.cancel()
            if process.returncode is None:
                await self._terminate(process)

        tail = "".join(output)
        if process.returncode == 0:
            return ExecutionResult.ok({"exit_code": 0, "output": tail})
        return ExecutionResult.failed(
            f"Command exited with status {process.returncode}: {tail[-500:]}".rstrip()
        )

    async def _read_output(
        self,
        process: asyncio.subprocess.Process,
        context: ExecutionContext,
        output: deque[str],
    ) -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode(errors="replace")
            output.append(line)
            parsed = parse_progress(line)
            if parsed is not None:
                await context.report_progress(*parsed)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        with suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), self._grace)
        except asyncio.TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
