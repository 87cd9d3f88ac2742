"""Spawning and supervising the external rpk process."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from .errors import invariant
from .schemas import DebugBundleStatus, WaitExited, WaitSignaled

LOGGER = logging.getLogger("debug_bundle.process")

EXIT_POLL_INTERVAL_SECONDS = 0.1
OUTPUT_DRAIN_TIMEOUT_SECONDS = 1.0

LineConsumer = Callable[[str], None]
WaitResult = Union[WaitExited, WaitSignaled]


class ProcessAlreadyCompleted(RuntimeError):
    """Raised when terminating a process that has already exited."""


class ExternalProcess:
    """
    Thin wrapper over :class:`asyncio.subprocess.Process`.

    Standard output and standard error are consumed line by line while the
    process runs; each decoded line is handed to the registered consumer.
    """

    def __init__(self, process: asyncio.subprocess.Process, command: Sequence[str]) -> None:
        self._process = process
        self._command = list(command)
        self._readers: List[asyncio.Task] = []

    @classmethod
    async def create(cls, command: Sequence[str]) -> "ExternalProcess":
        command_list = list(command)
        if not command_list:
            raise ValueError("cannot spawn an empty command")
        process = await asyncio.create_subprocess_exec(
            *command_list,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        LOGGER.debug("Spawned %s with pid %s", command_list[0], process.pid)
        return cls(process, command_list)

    @property
    def pid(self) -> int:
        return self._process.pid

    def set_stdout_consumer(self, consumer: LineConsumer) -> None:
        self._attach(self._process.stdout, consumer)

    def set_stderr_consumer(self, consumer: LineConsumer) -> None:
        self._attach(self._process.stderr, consumer)

    def is_running(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> WaitResult:
        """
        Wait for the process to exit, then drain its output.

        Children of the process may inherit its pipes and keep them open
        after it exits, so output is drained for at most
        ``OUTPUT_DRAIN_TIMEOUT_SECONDS`` before the readers are cancelled.
        """
        returncode = await self._wait_for_exit()
        await self._drain_readers()
        if returncode < 0:
            return WaitSignaled(signal=-returncode)
        return WaitExited(exit_code=returncode)

    async def terminate(self, timeout: float) -> None:
        """
        Send SIGTERM and escalate to SIGKILL if the process outlives *timeout*.

        Raises :class:`ProcessAlreadyCompleted` if the process is not running.
        """
        if not self.is_running():
            raise ProcessAlreadyCompleted(f"process {self.pid} already completed")
        try:
            self._process.terminate()
        except ProcessLookupError as exc:
            raise ProcessAlreadyCompleted(f"process {self.pid} already completed") from exc

        try:
            await asyncio.wait_for(self._wait_for_exit(), timeout)
        except asyncio.TimeoutError:
            if not self.is_running():
                return
            LOGGER.warning("Process %s ignored SIGTERM for %.1fs; sending SIGKILL", self.pid, timeout)
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def _wait_for_exit(self) -> int:
        # Process.wait() may not return until the pipes close; returncode is set at exit
        waiter = asyncio.ensure_future(self._process.wait())
        try:
            while self._process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL_SECONDS)
        finally:
            if not waiter.done():
                waiter.cancel()
        if self._process.returncode is not None:
            return self._process.returncode
        return waiter.result()

    async def _drain_readers(self) -> None:
        if not self._readers:
            return
        _, pending = await asyncio.wait(self._readers, timeout=OUTPUT_DRAIN_TIMEOUT_SECONDS)
        if not pending:
            return
        LOGGER.warning(
            "Output of process %s still open %.1fs after exit; dropping the rest",
            self.pid,
            OUTPUT_DRAIN_TIMEOUT_SECONDS,
        )
        for reader in pending:
            reader.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _attach(self, stream: Optional[asyncio.StreamReader], consumer: LineConsumer) -> None:
        if stream is None:
            return
        self._readers.append(asyncio.create_task(_consume_lines(stream, consumer)))


async def _consume_lines(stream: asyncio.StreamReader, consumer: LineConsumer) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        consumer(line.decode("utf-8", errors="replace").rstrip("\r\n"))


class BundleProcess:
    """One rpk debug bundle invocation and everything captured from it."""

    def __init__(
        self,
        job_id: str,
        process: ExternalProcess,
        output_file_path: Path,
        process_output_file_path: Path,
    ) -> None:
        self.job_id = job_id
        self.output_file_path = Path(output_file_path)
        self.process_output_file_path = Path(process_output_file_path)
        self.created_time = datetime.now(timezone.utc)
        self.cout: List[str] = []
        self.cerr: List[str] = []
        self._process = process
        self._wait_result: Optional[WaitResult] = None
        process.set_stdout_consumer(self.cout.append)
        process.set_stderr_consumer(self.cerr.append)

    async def wait(self) -> WaitResult:
        if self._wait_result is not None:
            return self._wait_result
        try:
            result = await self._process.wait()
        except Exception:
            self._wait_result = WaitExited(exit_code=1)
            raise
        self._wait_result = result
        return result

    async def terminate(self, timeout: float) -> None:
        await self._process.terminate(timeout)

    def is_running(self) -> bool:
        return self._process.is_running()

    def process_status(self) -> DebugBundleStatus:
        if self._wait_result is None:
            return DebugBundleStatus.RUNNING
        if isinstance(self._wait_result, WaitExited) and self._wait_result.exit_code == 0:
            return DebugBundleStatus.SUCCESS
        return DebugBundleStatus.ERROR

    @property
    def wait_result(self) -> WaitResult:
        invariant(self._wait_result is not None, "wait_result must have been set")
        return self._wait_result  # type: ignore[return-value]

    def release(self) -> None:
        """Drop the handle; the underlying process must already have exited."""
        invariant(
            not self._process.is_running(),
            "Destroying process struct without waiting for process to finish",
        )


__all__ = ["BundleProcess", "ExternalProcess", "ProcessAlreadyCompleted"]
